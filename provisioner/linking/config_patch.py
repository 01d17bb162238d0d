from collections import defaultdict
import os
import tempfile
import threading

import yaml
from loguru import logger

from provisioner.common.errors import ConfigIOFailure, InvalidExternalConfig
from provisioner.linking.document import ConfigDocument
from provisioner.packages.model import ConfigPatchSpec

logger = logger.bind(name="Config Patcher")

def resolve_entries(patch: ConfigPatchSpec, models_dir: str) -> dict[str, str]:
    """config key -> external path(s), several paths newline joined in declaration order"""
    return {
        key: "\n".join(os.path.join(models_dir, category.value) for category in categories)
        for key, categories in patch.keys.items()
    }

class ConfigPatcher:
    """
    Maintains the section this engine owns inside a package's native yaml config.

    Every read-modify-write cycle on one file holds a lock for that file, so two installs
    of the same package in this process can't interleave. Other processes are not covered.
    """

    def __init__(self):
        self._locks: dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_mu = threading.Lock()

    def _get_lock(self, path: str) -> threading.Lock:
        with self._locks_mu:
            return self._locks[os.path.abspath(path)]

    def apply(self, path: str, section: str, entries: dict[str, str]) -> None:
        """
        Upserts entries into the reserved section and rewrites the file.

        Keys already in the section keep their position, new keys are appended. Unrelated
        top-level sections are written back exactly as they were read.

        Raises:
            InvalidExternalConfig: the reserved section exists and is not a mapping, or the
                document root is not a mapping. The file is left untouched.
                Also raised, without writing, if the patched text would not read back as a
                single mapping holding the new section.
            ConfigIOFailure: the file could not be read or written.
        """
        with self._get_lock(path):
            doc = self._load(path)
            existing = doc.get(section)
            if existing is not None and existing.value is not None and not isinstance(existing.value, dict):
                raise InvalidExternalConfig(
                    f"Section '{section}' exists but is not a mapping",
                    path=path,
                    found=type(existing.value).__name__
                )

            merged = dict(existing.value or {}) if existing is not None else {}
            merged.update(entries)
            doc.upsert_section(section, merged)

            text = doc.render()
            self._verify(path, text, section, merged)
            self._write(path, text)
            logger.info("Updated model paths", extra={"path": path, "section": section, "keys": len(entries)})

    def remove(self, path: str, section: str) -> bool:
        """
        Deletes the reserved section. Returns False, without writing, if there was nothing
        to remove or the file can't be interpreted.
        """
        with self._get_lock(path):
            if not os.path.exists(path):
                return False
            text = self._read(path)
            try:
                doc = ConfigDocument.parse(text)
            except (yaml.YAMLError, InvalidExternalConfig) as e:
                logger.warning("Leaving unreadable config as is", extra={"path": path, "error": str(e)})
                return False

            if not doc.remove_section(section):
                return False

            text = doc.render()
            self._verify(path, text, section, None)
            self._write(path, text)
            logger.info("Removed model paths", extra={"path": path, "section": section})
            return True

    def _verify(self, path: str, text: str, section: str, expected: dict | None) -> None:
        """Refuses to write text that would not read back as one mapping with the intended section."""
        try:
            found = ConfigDocument.parse(text).get(section)
        except yaml.YAMLError as e:
            raise InvalidExternalConfig("Patched config would not be valid yaml", path=path, error=str(e)) from e
        if (found.value if found is not None else None) != expected:
            raise InvalidExternalConfig(f"Patched config would not contain the expected '{section}' section", path=path)

    def _load(self, path: str) -> ConfigDocument:
        if not os.path.exists(path):
            logger.info("Creating new config", extra={"path": path})
            return ConfigDocument()
        text = self._read(path)
        try:
            return ConfigDocument.parse(text)
        except yaml.YAMLError as e:
            logger.warning("Config is not valid yaml, starting from an empty document", extra={"path": path, "error": str(e)})
            return ConfigDocument()

    def _read(self, path: str) -> str:
        try:
            with open(path, "r", encoding="utf-8", newline="") as f:
                return f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigIOFailure(f"Failed to read config: {e}", path=path) from e

    def _write(self, path: str, text: str) -> None:
        """Writes the whole file or nothing."""
        dir_ = os.path.dirname(os.path.abspath(path))
        tmp_path = None
        try:
            os.makedirs(dir_, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w", dir=dir_, delete=False, suffix=".tmp", encoding="utf-8", newline=""
            ) as tmp:
                tmp_path = tmp.name
                tmp.write(text)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise ConfigIOFailure(f"Failed to write config: {e}", path=path) from e
