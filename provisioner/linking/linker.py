import os

from loguru import logger

from provisioner.linking import symlink
from provisioner.linking.config_patch import ConfigPatcher, resolve_entries
from provisioner.packages.model import ConfigPatchSpec, PackageSpec, SharedFolderMethod

logger = logger.bind(name="Shared Folder Linker")

class SharedFolderLinker:
    """
    Wires the shared model directories into an install, using the method chosen for it.
    """

    def __init__(self, patcher: ConfigPatcher | None = None):
        self.patcher = patcher or ConfigPatcher()

    def setup(self, spec: PackageSpec, install_root: str, method: SharedFolderMethod, models_dir: str) -> None:
        self._check_method(spec, method)
        if method == SharedFolderMethod.SYMLINK:
            symlink.setup_links(install_root, models_dir, spec.shared_folders)
        elif method == SharedFolderMethod.CONFIGURATION:
            patch = self._config_patch(spec)
            for category in dict.fromkeys(c for cats in patch.keys.values() for c in cats):
                os.makedirs(os.path.join(models_dir, category.value), exist_ok=True)
            self.patcher.apply(
                os.path.join(install_root, patch.filename),
                patch.section,
                resolve_entries(patch, models_dir)
            )
        else:
            logger.debug("Shared folders disabled", extra={"package": spec.name})

    def remove(self, spec: PackageSpec, install_root: str, method: SharedFolderMethod) -> None:
        self._check_method(spec, method)
        if method == SharedFolderMethod.SYMLINK:
            symlink.remove_links(install_root, spec.shared_folders)
        elif method == SharedFolderMethod.CONFIGURATION:
            patch = self._config_patch(spec)
            self.patcher.remove(os.path.join(install_root, patch.filename), patch.section)

    def setup_outputs(self, spec: PackageSpec, install_root: str, outputs_dir: str) -> None:
        """Links the package's image output folders into the shared outputs dir."""
        if spec.shared_outputs:
            symlink.setup_links(install_root, outputs_dir, spec.shared_outputs)

    def remove_outputs(self, spec: PackageSpec, install_root: str) -> None:
        if spec.shared_outputs:
            symlink.remove_links(install_root, spec.shared_outputs)

    def _check_method(self, spec: PackageSpec, method: SharedFolderMethod) -> None:
        if method not in spec.shared_folder_methods:
            raise ValueError(f"{spec.display_name} does not support the {method.value} shared folder method")

    def _config_patch(self, spec: PackageSpec) -> ConfigPatchSpec:
        if spec.config_patch is None:
            raise ValueError(f"{spec.display_name} has no model path config to patch")
        return spec.config_patch
