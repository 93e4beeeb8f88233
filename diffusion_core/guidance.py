"""
Module: diffusion_core.guidance
Purpose: Classifier-free guidance compositing and batched CFG helpers
Dependencies: torch
"""

from typing import Optional, Tuple
import logging

import torch

from diffusion_core.errors import ShapeMismatchError, check_same_shape
from diffusion_core.utils.tensor_pool import TensorPool

logger = logging.getLogger(__name__)


class GuidanceCompositor:
    """
    Combines unconditional and conditional noise predictions.

        guided = neg + scale * (pos - neg)

    Args:
        pool: Optional TensorPool the output buffers are acquired from

    Example:
        >>> compositor = GuidanceCompositor()
        >>> neg = torch.zeros(1, 4, 8, 8)
        >>> pos = torch.ones(1, 4, 8, 8)
        >>> float(compositor.composite(neg, pos, 7.5).mean())
        7.5
    """

    def __init__(self, pool: Optional[TensorPool] = None):
        self.pool = pool

    def _new_like(self, tensor: torch.Tensor) -> torch.Tensor:
        if self.pool is not None:
            return self.pool.acquire_like(tensor)
        return torch.empty_like(tensor)

    def composite(self, neg_output: torch.Tensor, pos_output: torch.Tensor,
                  guidance_scale: float) -> torch.Tensor:
        """
        Guided noise prediction.

        Inputs are only read; the result is a new buffer the caller owns.
        A scale of exactly 1.0 yields a copy of pos_output.

        Raises:
            ShapeMismatchError: If the predictions differ in shape or dtype
        """
        check_same_shape(neg_output, pos_output, "guidance composite")
        if neg_output.dtype != pos_output.dtype:
            raise ShapeMismatchError(neg_output.shape, pos_output.shape,
                                     f"guidance composite ({neg_output.dtype} vs {pos_output.dtype})")

        out = self._new_like(pos_output)
        if guidance_scale == 1.0:
            out.copy_(pos_output)
            return out

        neg = neg_output.to(torch.float32)
        guided = neg + guidance_scale * (pos_output.to(torch.float32) - neg)
        out.copy_(guided)
        return out

    @staticmethod
    def batch_pair(neg_input: torch.Tensor, pos_input: torch.Tensor) -> torch.Tensor:
        """
        Stack negative and positive inputs into one batch for a single pass.

        The negative half comes first.
        """
        check_same_shape(neg_input, pos_input, "CFG batch")
        return torch.cat([neg_input, pos_input], dim=0)

    @staticmethod
    def split_pair(batched: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        """Split a batched prediction back into (neg, pos)."""
        if batched.shape[0] % 2 != 0:
            raise ShapeMismatchError(
                (batched.shape[0] + 1,) + tuple(batched.shape[1:]),
                batched.shape,
                "CFG split (batch must be even)",
            )
        neg, pos = batched.chunk(2, dim=0)
        return neg.contiguous(), pos.contiguous()
