"""
Module: diffusion_core.utils.noise
Purpose: Seeded Gaussian noise for initial latents and SDE steps
Dependencies: torch
"""

from typing import List, Optional, Sequence, Union
import logging

import torch

logger = logging.getLogger(__name__)


def latent_shape(width: int, height: int, channels: int = 4,
                 downsample: int = 8, batch: int = 1) -> List[int]:
    """
    Latent NCHW shape for an output resolution.

    Raises:
        ValueError: If width or height is not a multiple of the downsample factor
    """
    if width % downsample != 0 or height % downsample != 0:
        raise ValueError(
            f"Width and height must be multiples of {downsample}. Got {width}x{height}"
        )
    return [batch, channels, height // downsample, width // downsample]


class NoiseGenerator:
    """
    Standard-normal noise source with an optional fixed seed.

    Example:
        >>> gen = NoiseGenerator(seed=42)
        >>> a = gen.randn([1, 4, 8, 8])
        >>> gen.set_seed(42)
        >>> torch.equal(a, gen.randn([1, 4, 8, 8]))
        True
    """

    def __init__(self, seed: Optional[int] = None, device: Union[str, torch.device] = "cpu"):
        self.device = torch.device(device)
        self.seed: Optional[int] = None
        self.generator = torch.Generator(device="cpu")
        if seed is not None:
            self.set_seed(seed)
        else:
            self.generator.seed()

    def set_seed(self, seed: int) -> None:
        """Reset the stream to a reproducible seed."""
        self.seed = seed
        self.generator.manual_seed(seed)
        logger.debug(f"Noise seed set to {seed}")

    def clear_seed(self) -> None:
        """Switch back to a non-deterministic stream."""
        self.seed = None
        self.generator.seed()

    def randn(self, shape: Sequence[int], dtype: torch.dtype = torch.float32,
              scale: float = 1.0) -> torch.Tensor:
        """
        Draw N(0, scale^2) noise.

        Sampling always happens on CPU in float32 so a seed gives the same
        latent on every device; the result is then moved and cast.
        """
        noise = torch.randn(tuple(shape), generator=self.generator, dtype=torch.float32)
        if scale != 1.0:
            noise.mul_(scale)
        return noise.to(device=self.device, dtype=dtype)

    def uniform(self, shape: Sequence[int], low: float = 0.0, high: float = 1.0,
                dtype: torch.dtype = torch.float32) -> torch.Tensor:
        """Draw U(low, high) noise."""
        noise = torch.rand(tuple(shape), generator=self.generator, dtype=torch.float32)
        noise.mul_(high - low).add_(low)
        return noise.to(device=self.device, dtype=dtype)
