from enum import Enum
import filecmp
import os
import shutil

from loguru import logger

logger = logger.bind(name="Symlink Linker")

FolderMapping = dict[Enum, tuple[str, ...]]

def setup_links(install_root: str, shared_root: str, mapping: FolderMapping) -> list[str]:
    """
    Replaces each package-relative directory with a link to <shared_root>/<category>.

    Files already in a package directory are moved into the shared directory first. A file
    that already exists there with different content is left in place and that directory is
    not linked. Returns the paths that were linked.
    """
    linked = []
    for category, rel_paths in mapping.items():
        source = os.path.join(shared_root, category.value)
        os.makedirs(source, exist_ok=True)

        for rel_path in rel_paths:
            dest = os.path.join(install_root, rel_path)
            if _link_dir(source, dest):
                linked.append(dest)

    logger.info("Linked shared folders", extra={"install_root": install_root, "count": len(linked)})
    return linked

def remove_links(install_root: str, mapping: FolderMapping) -> None:
    """Deletes the links and leaves plain empty directories in their place."""
    for rel_paths in mapping.values():
        for rel_path in rel_paths:
            dest = os.path.join(install_root, rel_path)
            if os.path.islink(dest):
                os.unlink(dest)
                os.makedirs(dest, exist_ok=True)

def _link_dir(source: str, dest: str) -> bool:
    if os.path.islink(dest):
        if os.path.realpath(dest) == os.path.realpath(source):
            return True
        os.unlink(dest)
    elif os.path.isdir(dest):
        if not _move_contents(dest, source):
            logger.warning("Not linking directory with conflicting files", extra={"path": dest})
            return False
        shutil.rmtree(dest)
    elif os.path.exists(dest):
        logger.warning("Not linking over a regular file", extra={"path": dest})
        return False

    os.makedirs(os.path.dirname(dest), exist_ok=True)
    os.symlink(source, dest, target_is_directory=True)
    return True

def _move_contents(src_dir: str, dst_dir: str) -> bool:
    """Moves entries of src_dir into dst_dir. True if src_dir ended up empty."""
    clean = True
    for name in os.listdir(src_dir):
        src = os.path.join(src_dir, name)
        dst = os.path.join(dst_dir, name)
        if not os.path.exists(dst):
            shutil.move(src, dst)
        elif os.path.isfile(src) and os.path.isfile(dst) and filecmp.cmp(src, dst, shallow=False):
            # placeholder files ship with every install
            os.remove(src)
        else:
            clean = False
    return clean
