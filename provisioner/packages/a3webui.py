import json
import os

from loguru import logger

from provisioner import hardware
from provisioner.hardware import MemoryLevel
from provisioner.launch.model import EXTRAS, LaunchOptionDefinition, LaunchOptionType
from provisioner.packages.model import (
    Backend,
    PackageSpec,
    SharedFolderMethod,
    SharedFolderType as F,
    SharedOutputType as O,
    TorchRecipe,
)
from provisioner.process.matchers import url_after_marker

def _vram_flag() -> str | None:
    level = hardware.memory_level()
    if level == MemoryLevel.LOW:
        return "--lowvram"
    if level == MemoryLevel.MEDIUM:
        return "--medvram"
    return None

def write_default_ui_config(install_root: str) -> None:
    """Creates config.json with the TAESD live preview. An existing config is never touched."""
    path = os.path.join(install_root, "config.json")
    if os.path.exists(path):
        return
    logger.info("Creating default config.json", extra={"path": path})
    with open(path, "w", encoding="utf-8") as f:
        json.dump({"show_progress_type": "TAESD"}, f, indent=2)

LAUNCH_OPTIONS = (
    LaunchOptionDefinition(
        name="Host",
        type=LaunchOptionType.STRING,
        default_value="localhost",
        options=("--server-name",),
    ),
    LaunchOptionDefinition(
        name="Port",
        type=LaunchOptionType.STRING,
        default_value="7860",
        options=("--port",),
    ),
    LaunchOptionDefinition(
        name="VRAM",
        type=LaunchOptionType.BOOL,
        initial_value=_vram_flag,
        options=("--lowvram", "--medvram", "--medvram-sdxl"),
    ),
    LaunchOptionDefinition(
        name="Xformers",
        type=LaunchOptionType.BOOL,
        initial_value=hardware.has_nvidia_gpu,
        options=("--xformers",),
    ),
    LaunchOptionDefinition(
        name="API",
        type=LaunchOptionType.BOOL,
        initial_value=True,
        options=("--api",),
    ),
    LaunchOptionDefinition(
        name="Auto Launch Web UI",
        type=LaunchOptionType.BOOL,
        initial_value=False,
        options=("--autolaunch",),
    ),
    LaunchOptionDefinition(
        name="Skip Torch CUDA Check",
        type=LaunchOptionType.BOOL,
        initial_value=lambda: not hardware.has_nvidia_gpu(),
        options=("--skip-torch-cuda-test",),
    ),
    LaunchOptionDefinition(
        name="Skip Python Version Check",
        type=LaunchOptionType.BOOL,
        initial_value=True,
        options=("--skip-python-version-check",),
    ),
    LaunchOptionDefinition(
        name="No Half",
        type=LaunchOptionType.BOOL,
        description="Do not switch the model to 16-bit floats",
        initial_value=lambda: hardware.prefer_rocm() or hardware.prefer_directml(),
        options=("--no-half",),
    ),
    LaunchOptionDefinition(
        name="Skip SD Model Download",
        type=LaunchOptionType.BOOL,
        initial_value=False,
        options=("--no-download-sd-model",),
    ),
    LaunchOptionDefinition(
        name="Skip Install",
        type=LaunchOptionType.BOOL,
        options=("--skip-install",),
    ),
    EXTRAS,
)

A3WEBUI = PackageSpec(
    name="stable-diffusion-webui",
    display_name="Stable Diffusion WebUI",
    author="AUTOMATIC1111",
    license_type="AGPL-3.0",
    license_url="https://github.com/AUTOMATIC1111/stable-diffusion-webui/blob/master/LICENSE.txt",
    blurb="A browser interface based on Gradio library for Stable Diffusion",
    repository_url="https://github.com/AUTOMATIC1111/stable-diffusion-webui",
    main_branch="master",
    entrypoint="launch.py",
    backends=(Backend.CUDA, Backend.CPU, Backend.ROCM),
    # https://github.com/AUTOMATIC1111/stable-diffusion-webui/tree/master/models
    shared_folders={
        F.StableDiffusion: ("models/Stable-diffusion",),
        F.ESRGAN: ("models/ESRGAN",),
        F.RealESRGAN: ("models/RealESRGAN",),
        F.SwinIR: ("models/SwinIR",),
        F.Lora: ("models/Lora",),
        F.LyCORIS: ("models/LyCORIS",),
        F.ApproxVAE: ("models/VAE-approx",),
        F.VAE: ("models/VAE",),
        F.DeepDanbooru: ("models/deepbooru",),
        F.Karlo: ("models/karlo",),
        F.TextualInversion: ("embeddings",),
        F.Hypernetwork: ("models/hypernetworks",),
        F.ControlNet: ("models/controlnet/ControlNet",),
        F.Codeformer: ("models/Codeformer",),
        F.LDSR: ("models/LDSR",),
        F.AfterDetailer: ("models/adetailer",),
        F.T2IAdapter: ("models/controlnet/T2IAdapter",),
        F.IpAdapter: ("models/controlnet/IpAdapter",),
        F.InvokeIpAdapters15: ("models/controlnet/DiffusersIpAdapters",),
        F.InvokeIpAdaptersXl: ("models/controlnet/DiffusersIpAdaptersXL",),
    },
    shared_outputs={
        O.Extras: ("outputs/extras-images",),
        O.Saved: ("log/images",),
        O.Img2Img: ("outputs/img2img-images",),
        O.Text2Img: ("outputs/txt2img-images",),
        O.Img2ImgGrids: ("outputs/img2img-grids",),
        O.Text2ImgGrids: ("outputs/txt2img-grids",),
    },
    shared_folder_methods=(SharedFolderMethod.SYMLINK, SharedFolderMethod.NONE),
    recommended_method=SharedFolderMethod.SYMLINK,
    launch_options=LAUNCH_OPTIONS,
    torch=TorchRecipe(
        torch="==2.0.1",
        torchvision="==0.15.2",
        index_tags={Backend.CPU: "cpu", Backend.CUDA: "cu118", Backend.ROCM: "rocm5.1.1"},
        xformers="==0.0.20",
    ),
    ready_matcher=url_after_marker("Running on"),
    requirements_file="requirements_versions.txt",
    output_folder_name="outputs",
    # v1.6.0 needs an httpx pin to fix a gradio issue
    version_requirements={"1.6.0": ("httpx==0.24.1",)},
    post_install=write_default_ui_config,
)
