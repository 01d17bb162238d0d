from loguru import logger

from provisioner.common.errors import MissingResourceError
from provisioner.packages.a3webui import A3WEBUI
from provisioner.packages.comfyui import COMFYUI
from provisioner.packages.model import PackageSpec

logger = logger.bind(name="Package Registry")

BUILTIN_PACKAGES = (A3WEBUI, COMFYUI)

class PackageRegistry:
    """
    Look up package specs by name
    """

    def __init__(self, specs: tuple[PackageSpec, ...] = BUILTIN_PACKAGES):
        self._specs: dict[str, PackageSpec] = {}
        for spec in specs:
            self.register(spec)

    def register(self, spec: PackageSpec) -> None:
        if spec.name in self._specs:
            logger.warning(f"Replacing package spec {spec.name}")
        self._specs[spec.name] = spec

    def get(self, name: str) -> PackageSpec:
        spec = self._specs.get(name)
        if spec is None:
            raise MissingResourceError(f"Package {name} not found")
        return spec

    def packages(self) -> list[str]:
        """
        Returns the names of all known packages
        """
        return list(self._specs.keys())
