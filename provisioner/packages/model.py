from dataclasses import dataclass, field
from enum import Enum
from typing import Callable
import uuid

import dacite

from provisioner.launch.model import LaunchOptionDefinition, LaunchOverride
from provisioner.process.matchers import ReadyMatcher

class Backend(Enum):
    CPU = "cpu"
    CUDA = "cuda"
    ROCM = "rocm"
    DIRECTML = "directml"
    MPS = "mps"

class SharedFolderMethod(Enum):
    SYMLINK = "symlink"
    CONFIGURATION = "configuration"
    NONE = "none"

class SharedFolderType(Enum):
    """Model resource categories. The value is the directory name under the shared models dir."""
    StableDiffusion = "StableDiffusion"
    Lora = "Lora"
    LyCORIS = "LyCORIS"
    ESRGAN = "ESRGAN"
    RealESRGAN = "RealESRGAN"
    SwinIR = "SwinIR"
    GFPGAN = "GFPGAN"
    BSRGAN = "BSRGAN"
    Codeformer = "Codeformer"
    LDSR = "LDSR"
    VAE = "VAE"
    ApproxVAE = "ApproxVAE"
    TextualInversion = "TextualInversion"
    Hypernetwork = "Hypernetwork"
    ControlNet = "ControlNet"
    T2IAdapter = "T2IAdapter"
    IpAdapter = "IpAdapter"
    InvokeIpAdapters15 = "InvokeIpAdapters15"
    InvokeIpAdaptersXl = "InvokeIpAdaptersXl"
    InvokeClipVision = "InvokeClipVision"
    CLIP = "CLIP"
    Diffusers = "Diffusers"
    GLIGEN = "GLIGEN"
    DeepDanbooru = "DeepDanbooru"
    Karlo = "Karlo"
    AfterDetailer = "AfterDetailer"

class SharedOutputType(Enum):
    Text2Img = "Text2Img"
    Img2Img = "Img2Img"
    Extras = "Extras"
    Text2ImgGrids = "Text2ImgGrids"
    Img2ImgGrids = "Img2ImgGrids"
    Saved = "Saved"

TORCH_INDEX_ROOT = "https://download.pytorch.org/whl"

@dataclass(frozen=True)
class TorchRecipe:
    """
    How a package wants its tensor library installed on each backend.
    """
    # pip version specifiers, "" for unpinned
    torch: str = ""
    torchvision: str = ""
    # backend -> wheel index tag, e.g. Backend.CUDA -> "cu118"
    index_tags: dict[Backend, str] = field(default_factory=dict)
    # accelerator kernels, only installed for CUDA
    xformers: str | None = None
    # pass --upgrade on the torch step
    upgrade: bool = False
    directml_package: str = "torch-directml"
    mps_index_tag: str = "nightly/cpu"

    def index_url(self, tag: str) -> str:
        return f"{TORCH_INDEX_ROOT}/{tag}"

@dataclass(frozen=True)
class ConfigPatchSpec:
    """
    Describes the package-native document that holds model search paths.
    """
    # relative to the install root
    filename: str
    # top-level key owned exclusively by this engine
    section: str
    # config key -> categories, joined with newlines in this order
    keys: dict[str, tuple[SharedFolderType, ...]]

@dataclass(frozen=True)
class PackageSpec:
    name: str
    display_name: str
    author: str
    repository_url: str
    main_branch: str
    # relative to the install root
    entrypoint: str
    # ordered by preference
    backends: tuple[Backend, ...]
    shared_folders: dict[SharedFolderType, tuple[str, ...]]
    launch_options: tuple[LaunchOptionDefinition, ...]
    torch: TorchRecipe
    ready_matcher: ReadyMatcher
    shared_outputs: dict[SharedOutputType, tuple[str, ...]] = field(default_factory=dict)
    shared_folder_methods: tuple[SharedFolderMethod, ...] = (SharedFolderMethod.SYMLINK, SharedFolderMethod.NONE)
    recommended_method: SharedFolderMethod = SharedFolderMethod.SYMLINK
    config_patch: ConfigPatchSpec | None = None
    requirements_file: str = "requirements.txt"
    output_folder_name: str = "outputs"
    license_type: str = ""
    license_url: str = ""
    blurb: str = ""
    # version tag substring -> extra requirement lines appended to the plan
    version_requirements: dict[str, tuple[str, ...]] = field(default_factory=dict)
    # called with the install root after requirements are installed
    post_install: Callable[[str], None] | None = None

    def __post_init__(self):
        for category, paths in self.shared_folders.items():
            if not paths:
                raise ValueError(f"{self.name}: shared folder {category.value} has no target path")
        if self.recommended_method not in self.shared_folder_methods:
            raise ValueError(f"{self.name}: recommended method {self.recommended_method} is not available")
        if SharedFolderMethod.CONFIGURATION in self.shared_folder_methods and self.config_patch is None:
            raise ValueError(f"{self.name}: configuration method requires a config_patch")

    def supports(self, backend: Backend) -> bool:
        return backend in self.backends

    def extra_requirements(self, version_tag: str | None) -> tuple[str, ...]:
        if not version_tag:
            return ()
        extras = []
        for needle, lines in self.version_requirements.items():
            if needle in version_tag:
                extras.extend(lines)
        return tuple(extras)

@dataclass
class InstalledPackage:
    """
    A package installed on disk. The settings layer owns persistence, this is just the record.
    """
    package_name: str
    install_root: str
    backend: Backend
    shared_folder_method: SharedFolderMethod
    version_tag: str | None = None
    launch_overrides: list[LaunchOverride] = field(default_factory=list)
    last_url: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @staticmethod
    def from_dict(data: dict) -> 'InstalledPackage':
        return dacite.from_dict(
            InstalledPackage,
            data,
            config=dacite.Config(cast=[Backend, SharedFolderMethod])
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "package_name": self.package_name,
            "install_root": self.install_root,
            "backend": self.backend.value,
            "shared_folder_method": self.shared_folder_method.value,
            "version_tag": self.version_tag,
            "launch_overrides": [{"name": o.name, "value": o.value} for o in self.launch_overrides],
            "last_url": self.last_url,
        }
