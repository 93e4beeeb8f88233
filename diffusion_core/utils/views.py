"""
Module: diffusion_core.utils.views
Purpose: Bounds-checked NCHW view used for tile extraction, padding and blending
Dependencies: torch
"""

from typing import Tuple

import torch


class NCHWView:
    """
    Strided view over a 4-D [batch, channels, height, width] tensor.

    All window arithmetic lives here; callers ask for regions in (x, y, w, h)
    terms and get torch views back, so no index formula is repeated at call
    sites.

    Example:
        >>> latent = torch.zeros(1, 4, 64, 64)
        >>> view = NCHWView(latent)
        >>> view.region(24, 0, 32, 32).shape
        torch.Size([1, 4, 32, 32])
    """

    def __init__(self, tensor: torch.Tensor):
        if tensor.dim() != 4:
            raise ValueError(f"NCHWView needs a 4-D tensor, got {tensor.dim()}-D {list(tensor.shape)}")
        self.tensor = tensor

    @property
    def batch(self) -> int:
        return self.tensor.shape[0]

    @property
    def channels(self) -> int:
        return self.tensor.shape[1]

    @property
    def height(self) -> int:
        return self.tensor.shape[2]

    @property
    def width(self) -> int:
        return self.tensor.shape[3]

    @property
    def shape(self) -> Tuple[int, int, int, int]:
        return tuple(self.tensor.shape)

    def offset(self, b: int, c: int, y: int, x: int) -> int:
        """Flat element offset of (b, c, y, x) in a contiguous buffer."""
        for name, value, limit in (("b", b, self.batch), ("c", c, self.channels),
                                   ("y", y, self.height), ("x", x, self.width)):
            if not 0 <= value < limit:
                raise IndexError(f"{name}={value} outside [0, {limit})")
        return ((b * self.channels + c) * self.height + y) * self.width + x

    def _check_window(self, x: int, y: int, w: int, h: int) -> None:
        if w <= 0 or h <= 0:
            raise IndexError(f"Empty window {w}x{h}")
        if x < 0 or y < 0 or x + w > self.width or y + h > self.height:
            raise IndexError(
                f"Window x={x} y={y} {w}x{h} exceeds {self.width}x{self.height}"
            )

    def region(self, x: int, y: int, w: int, h: int) -> torch.Tensor:
        """View (not copy) of the spatial window starting at (x, y)."""
        self._check_window(x, y, w, h)
        return self.tensor[:, :, y:y + h, x:x + w]

    def extract(self, x: int, y: int, w: int, h: int) -> torch.Tensor:
        """Contiguous copy of a spatial window."""
        return self.region(x, y, w, h).contiguous()

    def write_padded(self, source: torch.Tensor) -> None:
        """
        Copy a smaller tensor into the top-left corner of this view.

        The remainder keeps whatever the buffer held (zeros for pool buffers).
        """
        src = NCHWView(source)
        if src.batch != self.batch or src.channels != self.channels:
            raise ValueError(
                f"Cannot pad {list(src.shape)} into {list(self.shape)}: batch/channel mismatch"
            )
        self.region(0, 0, src.width, src.height).copy_(source)
