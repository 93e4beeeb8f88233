"""
Module: diffusion_core.utils.device
Purpose: Device selection for latents, pooled buffers and model adapters
Dependencies: torch
"""

import platform
import logging
from typing import Optional, Dict, Any

import torch

logger = logging.getLogger(__name__)

_KNOWN_DEVICES = ("mps", "cuda", "cpu")


def _mps_available() -> bool:
    backend = getattr(torch.backends, "mps", None)
    return bool(backend and backend.is_available() and backend.is_built())


def detect_device(prefer_device: Optional[str] = None) -> str:
    """
    Pick the compute device used for sampling.

    Priority order:
    1. User-specified device (if available)
    2. MPS (Apple Silicon)
    3. CUDA
    4. CPU

    Args:
        prefer_device: Optional preference ("mps", "cuda", "cpu")

    Returns:
        Device string: "mps", "cuda", or "cpu"

    Example:
        >>> detect_device("cpu")
        'cpu'
    """
    if prefer_device:
        prefer_device = prefer_device.lower()

        if prefer_device not in _KNOWN_DEVICES:
            logger.warning(f"Unknown device '{prefer_device}', falling back to auto-detection")
        elif prefer_device == "cpu":
            return "cpu"
        elif prefer_device == "mps" and _mps_available():
            return "mps"
        elif prefer_device == "cuda" and torch.cuda.is_available():
            return "cuda"
        else:
            logger.warning(f"{prefer_device.upper()} requested but not available, falling back to auto-detection")

    if _mps_available():
        logger.debug("Auto-detected MPS device")
        return "mps"

    if torch.cuda.is_available():
        logger.debug(f"Auto-detected CUDA device: {torch.cuda.get_device_name(0)}")
        return "cuda"

    return "cpu"


def get_device(config_device: Optional[str] = None) -> torch.device:
    """
    Resolve a torch.device, honouring an optional configured preference.

    Args:
        config_device: Optional device from configuration

    Returns:
        torch.device ready for tensor placement
    """
    return torch.device(detect_device(config_device))


def preferred_dtype(device: torch.device) -> torch.dtype:
    """
    Dtype for model weights and latents on a device.

    MPS and CUDA run float16 efficiently; CPU stays in float32.
    """
    if device.type in ("mps", "cuda"):
        return torch.float16
    return torch.float32


def get_device_info() -> Dict[str, Any]:
    """
    Get information about available compute devices.

    Returns:
        Dictionary with device availability and specifications
    """
    info: Dict[str, Any] = {
        "mps_available": _mps_available(),
        "cuda_available": torch.cuda.is_available(),
        "cpu_threads": torch.get_num_threads(),
        "current_device": detect_device(),
        "torch_version": torch.__version__,
    }

    if info["cuda_available"]:
        info["cuda_device_name"] = torch.cuda.get_device_name(0)
        info["cuda_device_count"] = torch.cuda.device_count()
        info["total_memory_gb"] = torch.cuda.get_device_properties(0).total_memory / (1024**3)
    elif info["mps_available"]:
        info["platform"] = platform.platform()
        info["processor"] = platform.processor()

    return info


def format_device_info(info: Optional[Dict[str, Any]] = None) -> str:
    """Render get_device_info() as the block printed by `diffusion-core info`."""
    info = info or get_device_info()
    lines = [
        "Device Information:",
        "------------------",
        f"Current Device: {info['current_device']}",
        f"MPS Available: {info['mps_available']}",
        f"CUDA Available: {info['cuda_available']}",
        f"CPU Threads: {info['cpu_threads']}",
        f"Torch: {info['torch_version']}",
    ]
    if "cuda_device_name" in info:
        lines.append(f"CUDA Device: {info['cuda_device_name']}")
        lines.append(f"CUDA Memory: {info['total_memory_gb']:.1f} GB")
    if "platform" in info:
        lines.append(f"Platform: {info['platform']}")
    return "\n".join(lines)
