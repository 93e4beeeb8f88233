"""
Module: diffusion_core.models
Purpose: Adapters from diffusers models to the Denoiser and TileDecoder contracts
"""

from diffusion_core.models.diffusers_adapters import (
    UNetDenoiser,
    VAETileDecoder,
    load_unet,
    load_vae,
)

__all__ = ["UNetDenoiser", "VAETileDecoder", "load_unet", "load_vae"]
