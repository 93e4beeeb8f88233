"""
diffusion_core - Diffusion sampling core for latent image generation

This package holds the numerical heart of a latent diffusion pipeline:
noise schedules, the scheduler family that denoises a latent step by step,
classifier-free guidance, a tensor reuse pool and a tiled VAE decoder with
seam-free blending. Neural networks are external services behind the
Denoiser and TileDecoder contracts.

Main Components:
    - Noise schedules: Karras, Linear, Exponential
    - Schedulers: Euler (3 curves), Heun (heun-lite), LMS, DPM++ 2M SDE, DDPM
    - GuidanceCompositor: classifier-free guidance
    - TensorPool: keyed buffer recycling
    - TiledVAEDecoder: overlapping tile decode with feathered blending
    - SamplingPipeline: the driving loop, with cooperative cancellation

Example:
    >>> from diffusion_core import SamplingPipeline, TensorPool, create_scheduler
    >>> pool = TensorPool()
    >>> scheduler = create_scheduler("euler-karras", pool=pool)
    >>> result = SamplingPipeline(denoiser, scheduler, pool=pool).sample(noise, 20, cond, uncond)
"""

__version__ = "0.1.0"

from diffusion_core.errors import (
    DegenerateScheduleError,
    DiffusionCoreError,
    InvalidStepIndexError,
    ShapeMismatchError,
    TensorOwnershipError,
)
from diffusion_core.guidance import GuidanceCompositor
from diffusion_core.interfaces import CancellationToken, Denoiser, TileDecoder
from diffusion_core.pipeline import SamplingPipeline, SamplingResult, decode_latents
from diffusion_core.schedulers import (
    SchedulerKind,
    SchedulerState,
    available_schedulers,
    create_scheduler,
)
from diffusion_core.schedules import SigmaSchedule, create_noise_schedule
from diffusion_core.tiled_vae import TiledVAEDecoder, create_feather_mask, plan_tiles
from diffusion_core.utils.tensor_pool import TensorPool

__all__ = [
    "CancellationToken",
    "DegenerateScheduleError",
    "Denoiser",
    "DiffusionCoreError",
    "GuidanceCompositor",
    "InvalidStepIndexError",
    "SamplingPipeline",
    "SamplingResult",
    "SchedulerKind",
    "SchedulerState",
    "ShapeMismatchError",
    "SigmaSchedule",
    "TensorOwnershipError",
    "TensorPool",
    "TileDecoder",
    "TiledVAEDecoder",
    "available_schedulers",
    "create_feather_mask",
    "create_noise_schedule",
    "create_scheduler",
    "decode_latents",
    "plan_tiles",
]
