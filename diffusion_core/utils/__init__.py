"""
Module: diffusion_core.utils
Purpose: Device selection, buffer pooling, tensor views, noise and timing helpers
"""

from diffusion_core.utils.device import detect_device, get_device
from diffusion_core.utils.noise import NoiseGenerator, latent_shape
from diffusion_core.utils.performance import PerformanceMonitor
from diffusion_core.utils.tensor_pool import PoolStats, TensorPool
from diffusion_core.utils.views import NCHWView

__all__ = [
    "detect_device",
    "get_device",
    "NoiseGenerator",
    "latent_shape",
    "PerformanceMonitor",
    "PoolStats",
    "TensorPool",
    "NCHWView",
]
