"""
Module: diffusion_core.tiled_vae
Purpose: Tiled VAE decoding with feathered, seam-free blending
Dependencies: torch

A latent is split into overlapping tiles on a fixed stride. Each tile is
zero-padded to one session-wide size, decoded through an external decode
callable, cropped back to its real footprint and accumulated with a feather
mask:

    sum    += decoded * mask
    weight += mask
    image   = sum / weight

Adjacent masks ramp in opposite directions over the shared band and add up
to exactly 1 there, so the weight is 1 everywhere in a full decode.
"""

from dataclasses import dataclass, field
from typing import Callable, List, Optional
import logging
import math
import time

import torch

from diffusion_core.errors import ShapeMismatchError
from diffusion_core.utils.performance import PerformanceMonitor
from diffusion_core.utils.tensor_pool import TensorPool
from diffusion_core.utils.views import NCHWView

logger = logging.getLogger(__name__)

VAE_SCALE_FACTOR = 8
MAX_OVERLAP_LATENT = 8

DecodeFn = Callable[[torch.Tensor], torch.Tensor]
ProgressCallback = Callable[[int, int], None]


@dataclass(frozen=True)
class Tile:
    """
    Latent sub-region of a tile plan.

    Attributes:
        index: Row-major position in the plan
        col, row: Grid coordinates
        x, y: Origin in latent units
        width, height: Real (unpadded) extent in latent units
        overlap: Overlap band in latent units
        left, top, right, bottom: True where the edge touches the image border
    """
    index: int
    col: int
    row: int
    x: int
    y: int
    width: int
    height: int
    overlap: int
    left: bool
    top: bool
    right: bool
    bottom: bool

    def pixel_box(self, scale: int = VAE_SCALE_FACTOR):
        """(x, y, width, height) of the tile footprint in pixels."""
        return self.x * scale, self.y * scale, self.width * scale, self.height * scale


@dataclass
class TilePlan:
    """
    Row-major tiling of one latent.

    Attributes:
        latent_width, latent_height: Latent extent being tiled
        tile_size: Nominal tile size in latent units (also the stride)
        overlap: Overlap between neighbours in latent units
        stride: Distance between tile origins
        max_tile: Padded decode size (tile_size + overlap)
        tiles_x, tiles_y: Grid dimensions
        tiles: Tiles in row-major order
    """
    latent_width: int
    latent_height: int
    tile_size: int
    overlap: int
    stride: int
    max_tile: int
    tiles_x: int
    tiles_y: int
    tiles: List[Tile] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.tiles)

    def __iter__(self):
        return iter(self.tiles)


def _tile_count(extent: int, overlap: int, stride: int) -> int:
    return max(1, math.ceil((extent - overlap) / stride))


def plan_tiles(latent_width: int, latent_height: int, tile_size_px: int,
               vae_scale_factor: int = VAE_SCALE_FACTOR,
               max_overlap: int = MAX_OVERLAP_LATENT) -> TilePlan:
    """
    Lay out overlapping tiles over a latent.

    The nominal tile size T is tile_size_px / vae_scale_factor and the
    overlap is min(T / 4, max_overlap). Each tile spans T + overlap latent
    units (clipped at the right/bottom border) and origins advance by T, so
    every interior seam sits inside exactly one overlap band of two tiles.

    Raises:
        ValueError: If the latent is empty or the tile is smaller than one latent unit
    """
    if latent_width < 1 or latent_height < 1:
        raise ValueError(f"Cannot tile an empty latent ({latent_width}x{latent_height})")
    tile_size = tile_size_px // vae_scale_factor
    if tile_size < 1:
        raise ValueError(
            f"Tile size {tile_size_px}px is smaller than one latent unit ({vae_scale_factor}px)"
        )

    overlap = min(tile_size // 4, max_overlap)
    stride = tile_size
    extent = tile_size + overlap
    tiles_x = _tile_count(latent_width, overlap, stride)
    tiles_y = _tile_count(latent_height, overlap, stride)

    tiles = []
    for row in range(tiles_y):
        for col in range(tiles_x):
            x = col * stride
            y = row * stride
            tiles.append(Tile(
                index=len(tiles),
                col=col,
                row=row,
                x=x,
                y=y,
                width=min(extent, latent_width - x),
                height=min(extent, latent_height - y),
                overlap=overlap,
                left=col == 0,
                top=row == 0,
                right=col == tiles_x - 1,
                bottom=row == tiles_y - 1,
            ))

    return TilePlan(
        latent_width=latent_width,
        latent_height=latent_height,
        tile_size=tile_size,
        overlap=overlap,
        stride=stride,
        max_tile=extent,
        tiles_x=tiles_x,
        tiles_y=tiles_y,
        tiles=tiles,
    )


def _edge_weights(length: int, overlap_px: int, ramp_start: bool, ramp_end: bool,
                  device=None) -> torch.Tensor:
    weights = torch.ones(length, dtype=torch.float32, device=device)
    if overlap_px <= 0:
        return weights
    position = torch.arange(length, dtype=torch.float32, device=device)
    if ramp_start:
        weights *= ((position + 0.5) / overlap_px).clamp(max=1.0)
    if ramp_end:
        weights *= ((length - position - 0.5) / overlap_px).clamp(max=1.0)
    return weights


def create_feather_mask(width_px: int, height_px: int, overlap_px: int,
                        left: bool = False, top: bool = False,
                        right: bool = False, bottom: bool = False,
                        device=None) -> torch.Tensor:
    """
    Per-pixel blend weights for one tile footprint.

    Weights ramp linearly from 0 to 1 across overlap_px on every edge that is
    not an image border (flags set to True suppress the ramp). Pixel centres
    sit at x + 0.5, so a fade-in and the matching fade-out over the same band
    add up to exactly 1.

    Returns:
        float32 tensor of shape [height_px, width_px] with values in (0, 1]
    """
    horizontal = _edge_weights(width_px, overlap_px, not left, not right, device)
    vertical = _edge_weights(height_px, overlap_px, not top, not bottom, device)
    return vertical[:, None] * horizontal[None, :]


class TiledVAEDecoder:
    """
    Decodes a latent tile by tile and blends the results.

    Args:
        pool: Optional TensorPool for padded tiles and accumulation buffers
        monitor: Optional PerformanceMonitor receiving per-tile timings
        vae_scale_factor: Spatial upsampling of the decoder
        max_overlap: Cap on the tile overlap in latent units

    Example:
        >>> decoder = TiledVAEDecoder()
        >>> image = decoder.decode(latent, 512, 512, 256, vae_decode)
    """

    def __init__(self, pool: Optional[TensorPool] = None,
                 monitor: Optional[PerformanceMonitor] = None,
                 vae_scale_factor: int = VAE_SCALE_FACTOR,
                 max_overlap: int = MAX_OVERLAP_LATENT):
        self.pool = pool
        self.monitor = monitor
        self.vae_scale_factor = vae_scale_factor
        self.max_overlap = max_overlap

    def _acquire(self, dtype: torch.dtype, dims, device) -> torch.Tensor:
        if self.pool is not None:
            return self.pool.acquire(dtype, dims, device)
        return torch.zeros(tuple(dims), dtype=dtype, device=device)

    def _release(self, tensor: torch.Tensor) -> None:
        if self.pool is not None:
            self.pool.release(tensor)

    def _record(self, name: str, elapsed: float) -> None:
        if self.monitor is not None:
            self.monitor.record_stage(name, elapsed)

    def plan(self, latent: torch.Tensor, tile_size_px: int) -> TilePlan:
        """Tile plan for a latent tensor."""
        view = NCHWView(latent)
        return plan_tiles(view.width, view.height, tile_size_px,
                          self.vae_scale_factor, self.max_overlap)

    def _check_output_size(self, view: NCHWView, output_width: int, output_height: int) -> None:
        expected = (view.height * self.vae_scale_factor, view.width * self.vae_scale_factor)
        if (output_height, output_width) != expected:
            raise ShapeMismatchError(
                expected, (output_height, output_width),
                f"tiled decode (latent {view.width}x{view.height} vs output {output_width}x{output_height})",
            )

    def decode(self, latent: torch.Tensor, output_width: int, output_height: int,
               tile_size_px: int, decode_fn: DecodeFn, cancel=None,
               on_progress: Optional[ProgressCallback] = None) -> torch.Tensor:
        """
        Decode a latent in overlapping tiles.

        Args:
            latent: [B, C, H/8, W/8] latent, already divided by the VAE scaling factor
            output_width: Image width in pixels (latent width * 8)
            output_height: Image height in pixels (latent height * 8)
            tile_size_px: Nominal tile size in pixels
            decode_fn: Per-tile decoder, [B, C, t, t] -> [B, 3, 8t, 8t]
            cancel: Optional object with a `cancelled` flag, checked before each tile
            on_progress: Called as on_progress(tiles_done, tiles_total)

        Returns:
            float32 image [B, 3, output_height, output_width]. After a
            cancellation it holds only the tiles decoded so far; uncovered
            pixels stay 0.

        Raises:
            ShapeMismatchError: On output/latent size disagreement, or when a
                decoded tile is smaller than its footprint
        """
        view = NCHWView(latent)
        self._check_output_size(view, output_width, output_height)
        plan = self.plan(latent, tile_size_px)
        scale = self.vae_scale_factor
        overlap_px = plan.overlap * scale

        logger.info(
            f"Tiled VAE decode: {plan.tiles_x}x{plan.tiles_y} tiles ({len(plan)} total), "
            f"tile size {tile_size_px}px, overlap {overlap_px}px"
        )

        total: Optional[torch.Tensor] = None
        weight: Optional[torch.Tensor] = None
        padded_dims = (view.batch, view.channels, plan.max_tile, plan.max_tile)
        done = 0

        try:
            for tile in plan:
                if cancel is not None and cancel.cancelled:
                    logger.warning(f"Tiled decode cancelled after {done}/{len(plan)} tiles")
                    break

                start = time.perf_counter()
                px, py, pw, ph = tile.pixel_box(scale)
                padded = self._acquire(latent.dtype, padded_dims, latent.device)
                try:
                    NCHWView(padded).write_padded(view.region(tile.x, tile.y, tile.width, tile.height))
                    decoded = decode_fn(padded)

                    decoded_view = NCHWView(decoded)
                    if (decoded_view.width < pw or decoded_view.height < ph
                            or decoded_view.batch != view.batch):
                        raise ShapeMismatchError(
                            (view.batch, decoded_view.channels, ph, pw), decoded.shape,
                            f"decoded tile {tile.index}",
                        )

                    if total is None:
                        dims = (view.batch, decoded_view.channels, output_height, output_width)
                        total = self._acquire(torch.float32, dims, decoded.device)
                        weight = self._acquire(torch.float32, dims, decoded.device)

                    mask = create_feather_mask(pw, ph, overlap_px, tile.left, tile.top,
                                               tile.right, tile.bottom, device=decoded.device)
                    cropped = decoded_view.region(0, 0, pw, ph).to(torch.float32)
                    NCHWView(total).region(px, py, pw, ph).add_(cropped * mask)
                    NCHWView(weight).region(px, py, pw, ph).add_(mask.expand_as(cropped))
                finally:
                    self._release(padded)

                done += 1
                elapsed = time.perf_counter() - start
                self._record("vae_tile_decode", elapsed)
                logger.debug(
                    f"Decoded tile {done}/{len(plan)} ({tile.col},{tile.row}) "
                    f"at ({px},{py}) {pw}x{ph}px in {elapsed * 1000:.1f}ms"
                )
                if on_progress is not None:
                    on_progress(done, len(plan))
        except Exception:
            for buffer in (total, weight):
                if buffer is not None:
                    self._release(buffer)
            raise

        if total is None:
            return torch.zeros((view.batch, 3, output_height, output_width),
                               dtype=torch.float32, device=latent.device)

        covered = weight > 0
        total[covered] = total[covered] / weight[covered]
        self._release(weight)
        return total

    def decode_single(self, latent: torch.Tensor, decode_fn: DecodeFn) -> torch.Tensor:
        """Decode the whole latent in one call."""
        start = time.perf_counter()
        image = decode_fn(latent)
        self._record("vae_decode", time.perf_counter() - start)
        logger.info(f"Single-shot VAE decode: {list(latent.shape)} -> {list(image.shape)}")
        return image.to(torch.float32)
