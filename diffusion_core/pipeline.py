"""
Module: diffusion_core.pipeline
Purpose: Sampling loop driving denoiser, guidance and scheduler, plus latent decoding
Dependencies: torch

One SamplingPipeline call is one generation: it creates its own
SchedulerState, walks the schedule step by step and returns the last
complete latent. Cancellation is checked at the top of every step and ends
the loop early without raising.
"""

from contextlib import nullcontext
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Union
import logging
import time

import torch

from diffusion_core.config import get_config
from diffusion_core.guidance import GuidanceCompositor
from diffusion_core.interfaces import CancellationToken, Denoiser, TileDecoder
from diffusion_core.schedulers.base import BaseScheduler, SchedulerState
from diffusion_core.schedules import SigmaSchedule
from diffusion_core.tiled_vae import TiledVAEDecoder
from diffusion_core.utils.numerics import check_finite
from diffusion_core.utils.performance import PerformanceMonitor
from diffusion_core.utils.tensor_pool import TensorPool

logger = logging.getLogger(__name__)

StepCallback = Callable[[int, torch.Tensor], None]
ProgressCallback = Callable[[int, int], None]


@dataclass
class SamplingResult:
    """
    Outcome of one sampling run.

    Attributes:
        latent: Last fully produced latent (the initial noisy latent if
                cancelled before the first step)
        steps_completed: Number of scheduler steps applied
        cancelled: True if the run stopped early on request
        schedule: Sigma schedule the run followed
    """
    latent: torch.Tensor
    steps_completed: int
    cancelled: bool
    schedule: SigmaSchedule


class SamplingPipeline:
    """
    Denoising loop: scale -> denoise -> guide -> step.

    Args:
        denoiser: Object implementing Denoiser.predict
        scheduler: Any BaseScheduler (see create_scheduler)
        pool: Optional TensorPool shared with the scheduler and compositor
        monitor: Optional PerformanceMonitor for stage timings
        check_numerics: Log NaN/Inf in predictions and latents
        batch_cfg: Run negative and positive through one batched pass

    Example:
        >>> pool = TensorPool()
        >>> pipeline = SamplingPipeline(denoiser, create_scheduler("euler-karras", pool=pool), pool=pool)
        >>> result = pipeline.sample(noise, 20, positive=cond, negative=uncond, guidance_scale=7.5)
        >>> result.steps_completed
        20
    """

    def __init__(self, denoiser: Denoiser, scheduler: BaseScheduler,
                 pool: Optional[TensorPool] = None,
                 monitor: Optional[PerformanceMonitor] = None,
                 check_numerics: bool = False, batch_cfg: bool = False):
        self.denoiser = denoiser
        self.scheduler = scheduler
        self.pool = pool
        self.monitor = monitor
        self.check_numerics = check_numerics
        self.batch_cfg = batch_cfg
        self.compositor = GuidanceCompositor(pool)

    def _release(self, tensor: torch.Tensor) -> None:
        if self.pool is not None:
            self.pool.release(tensor)
            if self.monitor is not None:
                self.monitor.record_tensor_op("dispose")

    def _pool_counts(self) -> Optional[Tuple[int, int]]:
        if self.pool is None:
            return None
        stats = self.pool.stats()
        return stats.hits, stats.misses

    def _record_pool_traffic(self, before: Optional[Tuple[int, int]]) -> Optional[Tuple[int, int]]:
        """Book pool hits/misses since `before` as reuse/create ops; return the new counts."""
        after = self._pool_counts()
        if before is not None and after is not None and self.monitor is not None:
            if after[0] > before[0]:
                self.monitor.record_tensor_op("reuse", after[0] - before[0])
            if after[1] > before[1]:
                self.monitor.record_tensor_op("create", after[1] - before[1])
        return after

    def _stage(self, name: str):
        if self.monitor is not None:
            return self.monitor.stage(name)
        return nullcontext()

    def _predict_guided(self, scaled: torch.Tensor, timestep: float, positive: torch.Tensor,
                        negative: Optional[torch.Tensor], guidance_scale: float):
        """
        Guided eps for one step.

        Returns:
            (eps, owned) where owned tells whether eps is a pool buffer of ours
        """
        if guidance_scale <= 1.0:
            with self._stage("unet"):
                return self.denoiser.predict(scaled, timestep, positive), False

        if self.batch_cfg:
            batched = GuidanceCompositor.batch_pair(scaled, scaled)
            conditioning = torch.cat([negative, positive], dim=0)
            with self._stage("unet"):
                output = self.denoiser.predict(batched, timestep, conditioning)
            neg_eps, pos_eps = GuidanceCompositor.split_pair(output)
        else:
            with self._stage("unet"):
                neg_eps = self.denoiser.predict(scaled, timestep, negative)
                pos_eps = self.denoiser.predict(scaled, timestep, positive)

        with self._stage("guidance"):
            return self.compositor.composite(neg_eps, pos_eps, guidance_scale), True

    def sample(self, noise: torch.Tensor, steps: int, positive: torch.Tensor,
               negative: Optional[torch.Tensor] = None, guidance_scale: float = 7.5,
               cancel: Optional[CancellationToken] = None,
               on_progress: Optional[ProgressCallback] = None,
               on_step: Optional[StepCallback] = None) -> SamplingResult:
        """
        Run the full denoising loop.

        Args:
            noise: Unit-variance starting noise [B, 4, H/8, W/8] (not consumed)
            steps: Number of scheduler steps
            positive: Prompt conditioning passed to the denoiser
            negative: Unconditional conditioning; required when guidance_scale > 1
            guidance_scale: CFG scale; <= 1 runs a single positive pass
            cancel: Optional CancellationToken checked before every step
            on_progress: Called as on_progress(steps_done, steps_total)
            on_step: Called as on_step(step_index, latent) after each step.
                     The latent goes back to the pool on the next step, so
                     copy it to keep it.

        Returns:
            SamplingResult with the last complete latent

        Raises:
            ValueError: If guidance_scale > 1 and no negative conditioning is given
            DegenerateScheduleError, InvalidStepIndexError, ShapeMismatchError:
                From the schedule, scheduler and compositor
        """
        if guidance_scale > 1.0 and negative is None:
            raise ValueError("negative conditioning is required when guidance_scale > 1")

        if self.monitor is not None:
            self.monitor.start_session()

        pool_counts = self._pool_counts()
        state = SchedulerState()
        schedule = self.scheduler.generate_timesteps(steps, state)
        latent = self.scheduler.scale_initial_noise(noise, schedule)
        pool_counts = self._record_pool_traffic(pool_counts)
        cancelled = False
        completed = 0

        logger.info(
            f"Sampling {schedule.steps} steps with {self.scheduler.name}, "
            f"guidance {guidance_scale}{' (batched)' if self.batch_cfg and guidance_scale > 1.0 else ''}"
        )

        with torch.no_grad():
            for i in range(schedule.steps):
                if cancel is not None and cancel.cancelled:
                    logger.warning(f"Sampling cancelled before step {i + 1}/{schedule.steps}")
                    cancelled = True
                    break

                step_start = time.perf_counter()
                scaled = self.scheduler.scale_model_input(latent, i, state)
                try:
                    eps, owned = self._predict_guided(
                        scaled, float(schedule.timesteps[i]), positive, negative, guidance_scale
                    )
                    if self.check_numerics:
                        check_finite(eps, f"noise prediction at step {i}")
                    try:
                        with self._stage("scheduler_step"):
                            next_latent = self.scheduler.step(eps, latent, i, state)
                    finally:
                        if owned:
                            self._release(eps)
                finally:
                    self._release(scaled)

                self._release(latent)
                latent = next_latent
                completed += 1
                if self.check_numerics:
                    check_finite(latent, f"latent after step {i}")

                pool_counts = self._record_pool_traffic(pool_counts)
                if self.monitor is not None:
                    self.monitor.record_step(time.perf_counter() - step_start)
                logger.debug(
                    f"Step {i + 1}/{schedule.steps}: sigma {schedule.sigma(i):.4f} -> "
                    f"{schedule.sigma_next(i):.4f}"
                )
                if on_step is not None:
                    on_step(i, latent)
                if on_progress is not None:
                    on_progress(i + 1, schedule.steps)

        self.scheduler.reset(state)
        if self.monitor is not None:
            elapsed = self.monitor.end_session()
            logger.info(f"Sampling finished in {elapsed:.2f}s")

        return SamplingResult(
            latent=latent,
            steps_completed=completed,
            cancelled=cancelled,
            schedule=schedule,
        )


def decode_latents(latent: torch.Tensor, width: int, height: int,
                   decode_fn: Union[TileDecoder, Callable[[torch.Tensor], torch.Tensor]],
                   tiled: bool = True, tile_size_px: Optional[int] = None,
                   cancel: Optional[CancellationToken] = None,
                   pool: Optional[TensorPool] = None,
                   monitor: Optional[PerformanceMonitor] = None,
                   scaling_factor: Optional[float] = None,
                   on_progress: Optional[ProgressCallback] = None) -> torch.Tensor:
    """
    Undo the VAE latent scaling and decode to an image tensor.

    Args:
        latent: Final latent from SamplingPipeline.sample
        width, height: Output size in pixels
        decode_fn: TileDecoder or plain callable
        tiled: Use TiledVAEDecoder instead of a single decode call
        tile_size_px: Tile size (defaults to configuration)
        scaling_factor: VAE latent scaling (defaults to 0.18215 from configuration)

    Returns:
        float32 image in [-1, 1], shape [B, 3, height, width]
    """
    config = get_config()
    if scaling_factor is None:
        scaling_factor = config.tiling["vae_scaling_factor"]
    if tile_size_px is None:
        tile_size_px = config.tiling["tile_size_px"]
    fn = decode_fn.decode if isinstance(decode_fn, TileDecoder) else decode_fn

    unscaled = latent / scaling_factor
    decoder = TiledVAEDecoder(
        pool=pool,
        monitor=monitor,
        vae_scale_factor=config.tiling["vae_scale_factor"],
        max_overlap=config.tiling["max_overlap_latent"],
    )
    with torch.no_grad():
        if tiled:
            return decoder.decode(unscaled, width, height, tile_size_px, fn,
                                  cancel=cancel, on_progress=on_progress)
        return decoder.decode_single(unscaled, fn)
