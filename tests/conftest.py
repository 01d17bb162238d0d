import os
import shutil
import tempfile
import pytest

# keep test runs from writing provisioner.log into the working directory
os.environ.setdefault("PROVISIONER_LOG_FILE", "")

from provisioner import hardware
from provisioner.common.progress import InstallContext
from provisioner.launch.model import EXTRAS, LaunchOptionDefinition, LaunchOptionType
from provisioner.packages.model import (
    Backend,
    ConfigPatchSpec,
    PackageSpec,
    SharedFolderMethod,
    SharedFolderType,
    TorchRecipe,
)
from provisioner.process.matchers import url_after_marker

@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests"""
    temp_path = tempfile.mkdtemp()
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)

@pytest.fixture
def models_dir(temp_dir: str) -> str:
    path = os.path.join(temp_dir, "Models")
    os.makedirs(path, exist_ok=True)
    return path

@pytest.fixture
def install_root(temp_dir: str) -> str:
    path = os.path.join(temp_dir, "Packages", "demo")
    os.makedirs(path, exist_ok=True)
    return path

@pytest.fixture
def no_gpu(monkeypatch):
    """Pretend the machine has no GPU at all"""
    monkeypatch.setattr(hardware, "nvidia_gpus", lambda: ())
    monkeypatch.setattr(hardware, "has_amd_gpu", lambda: False)
    monkeypatch.setattr(hardware, "is_apple_silicon", lambda: False)

@pytest.fixture
def ctx(temp_dir: str, models_dir: str) -> InstallContext:
    lines = []
    reports = []
    context = InstallContext(
        library_dir=temp_dir,
        models_dir=models_dir,
        output=lines.append,
        progress=reports.append
    )
    context.lines = lines
    context.reports = reports
    return context

@pytest.fixture
def demo_spec() -> PackageSpec:
    """Small package with every shared folder method enabled"""
    return PackageSpec(
        name="demo",
        display_name="Demo UI",
        author="tests",
        repository_url="https://example.com/demo.git",
        main_branch="main",
        entrypoint="main.py",
        backends=(Backend.CUDA, Backend.CPU),
        shared_folders={
            SharedFolderType.StableDiffusion: ("models/checkpoints",),
            SharedFolderType.Lora: ("models/loras",),
        },
        shared_folder_methods=(SharedFolderMethod.SYMLINK, SharedFolderMethod.CONFIGURATION, SharedFolderMethod.NONE),
        recommended_method=SharedFolderMethod.CONFIGURATION,
        config_patch=ConfigPatchSpec(
            filename="extra_model_paths.yaml",
            section="stability_matrix",
            keys={
                "checkpoints": (SharedFolderType.StableDiffusion,),
                "loras": (SharedFolderType.Lora, SharedFolderType.LyCORIS),
            },
        ),
        launch_options=(
            LaunchOptionDefinition(name="Port", type=LaunchOptionType.STRING, default_value="8188", options=("--port",)),
            LaunchOptionDefinition(name="CPU", type=LaunchOptionType.BOOL, initial_value=False, options=("--cpu",)),
            EXTRAS,
        ),
        torch=TorchRecipe(
            torch="==2.1.0",
            torchvision="==0.16.0",
            index_tags={Backend.CPU: "cpu", Backend.CUDA: "cu121"},
            xformers="==0.0.22",
        ),
        ready_matcher=url_after_marker("To see the GUI go to"),
        version_requirements={"1.6.0": ("httpx==0.24.1",)},
    )
