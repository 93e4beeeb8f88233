"""
Module: diffusion_core.interfaces
Purpose: Contracts of the external denoiser/decoder services and cooperative cancellation
Dependencies: torch, typing
"""

from typing import Optional, Protocol, runtime_checkable
import logging
import threading

import torch

logger = logging.getLogger(__name__)


@runtime_checkable
class Denoiser(Protocol):
    """One forward pass of the diffusion network."""

    def predict(self, latent: torch.Tensor, timestep: float,
                conditioning: torch.Tensor) -> torch.Tensor:
        """Predict the noise eps for a (scaled) latent at a timestep."""
        ...


@runtime_checkable
class TileDecoder(Protocol):
    """One VAE decoder pass from a latent tile to an RGB tile."""

    def decode(self, latent_tile: torch.Tensor) -> torch.Tensor:
        ...


class CancellationToken:
    """
    Cooperative cancellation flag.

    The sampling loop checks it at the top of every step and the tiled
    decoder before every tile. Setting it from another thread is safe.

    Example:
        >>> token = CancellationToken()
        >>> token.cancel("user pressed stop")
        >>> token.cancelled
        True
    """

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: Optional[str] = None) -> None:
        """Request that the running generation stop at its next checkpoint."""
        self.reason = reason
        self._event.set()
        logger.info(f"Cancellation requested{f': {reason}' if reason else ''}")

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def reset(self) -> None:
        """Clear the flag so the token can guard another generation."""
        self.reason = None
        self._event.clear()
