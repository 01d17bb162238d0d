"""
Hardware probing used for hardware dependent launch defaults and backend selection.

All capacities are in GiB. Results are cached per process, call clear_cache() after
a driver change.
"""

from dataclasses import dataclass
from enum import IntEnum
from functools import lru_cache
import platform
import shutil
import subprocess

import psutil
import pynvml
from loguru import logger

from provisioner.packages.model import Backend, PackageSpec

logger = logger.bind(name="Hardware")

class MemoryLevel(IntEnum):
    LOW = 0
    MEDIUM = 1
    HIGH = 2

@dataclass(frozen=True)
class GpuInfo:
    index: int
    name: str
    vram_gib: float
    vendor: str

    @property
    def memory_level(self) -> MemoryLevel:
        if self.vram_gib < 4:
            return MemoryLevel.LOW
        if self.vram_gib < 8:
            return MemoryLevel.MEDIUM
        return MemoryLevel.HIGH

@lru_cache(maxsize=1)
def nvidia_gpus() -> tuple[GpuInfo, ...]:
    try:
        pynvml.nvmlInit()
    except pynvml.NVMLError as e:
        logger.debug(f"NVML unavailable: {e}")
        return ()
    try:
        gpus = []
        for idx in range(pynvml.nvmlDeviceGetCount()):
            handle = pynvml.nvmlDeviceGetHandleByIndex(idx)
            name = pynvml.nvmlDeviceGetName(handle)
            if isinstance(name, bytes):
                name = name.decode("utf-8")
            mem = pynvml.nvmlDeviceGetMemoryInfo(handle)
            gpus.append(GpuInfo(
                index=idx,
                name=name,
                vram_gib=round(mem.total / (1024 ** 3), 1),
                vendor="nvidia"
            ))
        return tuple(gpus)
    except pynvml.NVMLError as e:
        logger.warning(f"Failed to query NVIDIA devices: {e}")
        return ()
    finally:
        pynvml.nvmlShutdown()

@lru_cache(maxsize=1)
def has_amd_gpu() -> bool:
    if platform.system() == "Linux":
        return shutil.which("rocminfo") is not None
    if platform.system() == "Windows":
        try:
            out = subprocess.run(
                ["wmic", "path", "win32_VideoController", "get", "name"],
                check=True, capture_output=True, text=True
            ).stdout
        except (OSError, subprocess.CalledProcessError):
            return False
        return "amd" in out.lower() or "radeon" in out.lower()
    return False

def has_nvidia_gpu() -> bool:
    return len(nvidia_gpus()) > 0

def is_apple_silicon() -> bool:
    return platform.system() == "Darwin" and platform.machine() == "arm64"

def prefer_rocm() -> bool:
    return platform.system() == "Linux" and not has_nvidia_gpu() and has_amd_gpu()

def prefer_directml() -> bool:
    return platform.system() == "Windows" and not has_nvidia_gpu() and has_amd_gpu()

def memory_level() -> MemoryLevel | None:
    """Best VRAM level among detected GPUs, None if nothing was detected."""
    gpus = nvidia_gpus()
    if not gpus:
        return None
    return max(gpu.memory_level for gpu in gpus)

def ram_gib() -> float:
    return round(psutil.virtual_memory().total / (1024 ** 3), 1)

def recommended_backend(spec: PackageSpec) -> Backend:
    """Picks the best backend the machine and the package both support."""
    if has_nvidia_gpu():
        preferred = [Backend.CUDA]
    elif prefer_rocm():
        preferred = [Backend.ROCM]
    elif prefer_directml():
        preferred = [Backend.DIRECTML]
    elif is_apple_silicon():
        preferred = [Backend.MPS]
    else:
        preferred = []
    preferred.append(Backend.CPU)

    for backend in preferred:
        if spec.supports(backend):
            return backend
    return spec.backends[0]

def clear_cache() -> None:
    nvidia_gpus.cache_clear()
    has_amd_gpu.cache_clear()
