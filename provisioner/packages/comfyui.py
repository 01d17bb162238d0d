from provisioner import hardware
from provisioner.hardware import MemoryLevel
from provisioner.launch.model import EXTRAS, LaunchOptionDefinition, LaunchOptionType
from provisioner.packages.model import (
    Backend,
    ConfigPatchSpec,
    PackageSpec,
    SharedFolderMethod,
    SharedFolderType as F,
    SharedOutputType,
    TorchRecipe,
)
from provisioner.process.matchers import url_after_marker

def _vram_flag() -> str | None:
    level = hardware.memory_level()
    if level == MemoryLevel.LOW:
        return "--lowvram"
    if level == MemoryLevel.MEDIUM:
        return "--normalvram"
    return None

LAUNCH_OPTIONS = (
    LaunchOptionDefinition(
        name="Host",
        type=LaunchOptionType.STRING,
        default_value="127.0.0.1",
        options=("--listen",),
    ),
    LaunchOptionDefinition(
        name="Port",
        type=LaunchOptionType.STRING,
        default_value="8188",
        options=("--port",),
    ),
    LaunchOptionDefinition(
        name="VRAM",
        type=LaunchOptionType.BOOL,
        initial_value=_vram_flag,
        options=("--highvram", "--normalvram", "--lowvram", "--novram"),
    ),
    LaunchOptionDefinition(
        name="Preview Method",
        type=LaunchOptionType.BOOL,
        initial_value="--preview-method auto",
        options=("--preview-method auto", "--preview-method latent2rgb", "--preview-method taesd"),
    ),
    LaunchOptionDefinition(
        name="Enable DirectML",
        type=LaunchOptionType.BOOL,
        initial_value=hardware.prefer_directml,
        options=("--directml",),
    ),
    LaunchOptionDefinition(
        name="Use CPU only",
        type=LaunchOptionType.BOOL,
        initial_value=lambda: not hardware.has_nvidia_gpu() and not hardware.has_amd_gpu(),
        options=("--cpu",),
    ),
    LaunchOptionDefinition(
        name="Disable Xformers",
        type=LaunchOptionType.BOOL,
        initial_value=lambda: not hardware.has_nvidia_gpu(),
        options=("--disable-xformers",),
    ),
    LaunchOptionDefinition(
        name="Disable upcasting of attention",
        type=LaunchOptionType.BOOL,
        options=("--dont-upcast-attention",),
    ),
    LaunchOptionDefinition(
        name="Auto-Launch",
        type=LaunchOptionType.BOOL,
        options=("--auto-launch",),
    ),
    EXTRAS,
)

COMFYUI = PackageSpec(
    name="ComfyUI",
    display_name="ComfyUI",
    author="comfyanonymous",
    license_type="GPL-3.0",
    license_url="https://github.com/comfyanonymous/ComfyUI/blob/master/LICENSE",
    blurb="A powerful and modular stable diffusion GUI and backend",
    repository_url="https://github.com/comfyanonymous/ComfyUI",
    main_branch="master",
    entrypoint="main.py",
    backends=(Backend.CUDA, Backend.CPU, Backend.DIRECTML, Backend.ROCM, Backend.MPS),
    # https://github.com/comfyanonymous/ComfyUI/blob/master/folder_paths.py
    shared_folders={
        F.StableDiffusion: ("models/checkpoints",),
        F.Diffusers: ("models/diffusers",),
        F.Lora: ("models/loras",),
        F.CLIP: ("models/clip",),
        F.InvokeClipVision: ("models/clip_vision",),
        F.TextualInversion: ("models/embeddings",),
        F.VAE: ("models/vae",),
        F.ApproxVAE: ("models/vae_approx",),
        F.ControlNet: ("models/controlnet/ControlNet",),
        F.GLIGEN: ("models/gligen",),
        F.ESRGAN: ("models/upscale_models",),
        F.Hypernetwork: ("models/hypernetworks",),
        F.IpAdapter: ("models/ipadapter/base",),
        F.InvokeIpAdapters15: ("models/ipadapter/sd15",),
        F.InvokeIpAdaptersXl: ("models/ipadapter/sdxl",),
        F.T2IAdapter: ("models/controlnet/T2IAdapter",),
    },
    shared_outputs={SharedOutputType.Text2Img: ("output",)},
    shared_folder_methods=(SharedFolderMethod.SYMLINK, SharedFolderMethod.CONFIGURATION, SharedFolderMethod.NONE),
    recommended_method=SharedFolderMethod.CONFIGURATION,
    config_patch=ConfigPatchSpec(
        filename="extra_model_paths.yaml",
        section="stability_matrix",
        keys={
            "checkpoints": (F.StableDiffusion,),
            "vae": (F.VAE,),
            "loras": (F.Lora, F.LyCORIS),
            "upscale_models": (F.ESRGAN, F.RealESRGAN, F.SwinIR),
            "embeddings": (F.TextualInversion,),
            "hypernetworks": (F.Hypernetwork,),
            "controlnet": (F.ControlNet, F.T2IAdapter),
            "clip": (F.CLIP,),
            "clip_vision": (F.InvokeClipVision,),
            "diffusers": (F.Diffusers,),
            "gligen": (F.GLIGEN,),
            "vae_approx": (F.ApproxVAE,),
            "ipadapter": (F.IpAdapter, F.InvokeIpAdapters15, F.InvokeIpAdaptersXl),
        },
    ),
    launch_options=LAUNCH_OPTIONS,
    torch=TorchRecipe(
        torch="~=2.1.0",
        index_tags={Backend.CPU: "cpu", Backend.CUDA: "cu121", Backend.ROCM: "rocm5.6"},
        xformers="==0.0.22.post4",
        upgrade=True,
    ),
    ready_matcher=url_after_marker("To see the GUI go to"),
    output_folder_name="output",
)
