"""
Module: diffusion_core.schedulers.ddpm
Purpose: DDPM sampler using the alpha/beta cumulative-product parameterization
Dependencies: torch
"""

from typing import List, Optional
import logging
import math

import torch

from diffusion_core.errors import DegenerateScheduleError, check_same_shape
from diffusion_core.schedulers.base import BaseScheduler, SchedulerState
from diffusion_core.schedules import SigmaSchedule
from diffusion_core.utils.tensor_pool import TensorPool

logger = logging.getLogger(__name__)

BETA_SCHEDULES = ("linear", "scaled_linear")


def make_betas(beta_start: float, beta_end: float, num_train_timesteps: int,
               beta_schedule: str = "scaled_linear") -> torch.Tensor:
    """
    Training beta sequence in float64.

    "linear" interpolates the betas directly; "scaled_linear" interpolates
    their square roots and squares the result (Stable Diffusion).
    """
    if beta_schedule == "linear":
        return torch.linspace(beta_start, beta_end, num_train_timesteps, dtype=torch.float64)
    if beta_schedule == "scaled_linear":
        return torch.linspace(beta_start ** 0.5, beta_end ** 0.5, num_train_timesteps,
                              dtype=torch.float64) ** 2
    raise ValueError(f"Unknown beta schedule: {beta_schedule}. Available: {list(BETA_SCHEDULES)}")


class DDPMScheduler(BaseScheduler):
    """
    Deterministic DDPM-style update over evenly spaced training timesteps.

        pred_x0 = (x_t - sqrt(1 - a_t) * eps) / sqrt(a_t)
        x_prev  = sqrt(a_prev) * pred_x0 + sqrt(1 - a_prev) * eps

    where a is the cumulative product of (1 - beta). The last step lands on
    training timestep 0.

    Args:
        beta_start: First training beta
        beta_end: Last training beta
        beta_schedule: "linear" or "scaled_linear"
        num_train_timesteps: Length of the training chain
        pool: Optional TensorPool for output buffers
        check_numerics: Log NaN/Inf in step outputs
    """

    def __init__(self, beta_start: float = 0.00085, beta_end: float = 0.012,
                 beta_schedule: str = "scaled_linear", num_train_timesteps: int = 1000,
                 pool: Optional[TensorPool] = None, check_numerics: bool = False):
        super().__init__(pool=pool, check_numerics=check_numerics)
        if num_train_timesteps < 1:
            raise DegenerateScheduleError(
                f"num_train_timesteps must be >= 1, got {num_train_timesteps}"
            )
        self.beta_start = beta_start
        self.beta_end = beta_end
        self.beta_schedule = beta_schedule
        self.num_train_timesteps = num_train_timesteps

        self.betas = make_betas(beta_start, beta_end, num_train_timesteps, beta_schedule)
        self.alphas = 1.0 - self.betas
        self.alphas_cumprod = torch.cumprod(self.alphas, dim=0)

    @property
    def name(self) -> str:
        return "DDPM"

    def inference_timesteps(self, steps: int) -> List[int]:
        """Evenly spaced training timesteps, high to low."""
        last = self.num_train_timesteps - 1
        if steps == 1:
            return [last]
        return [math.floor(last * (steps - 1 - i) / (steps - 1)) for i in range(steps)]

    def _build_schedule(self, steps: int) -> SigmaSchedule:
        if steps < 1:
            raise DegenerateScheduleError(f"steps must be >= 1, got {steps}")
        timesteps = self.inference_timesteps(steps)
        sigmas = [self._sigma_for(t) for t in timesteps]
        sigmas.append(0.0)
        return SigmaSchedule(sigmas=sigmas, timesteps=timesteps, name=self.name)

    def _sigma_for(self, timestep: int) -> float:
        alpha_prod = float(self.alphas_cumprod[timestep])
        return math.sqrt((1 - alpha_prod) / alpha_prod)

    def alpha_prod(self, timestep: int) -> float:
        """Cumulative alpha at a training timestep (1.0 before the chain starts)."""
        if timestep < 0:
            return 1.0
        return float(self.alphas_cumprod[timestep])

    # -- overrides -----------------------------------------------------------

    def scale_model_input(self, sample: torch.Tensor, step_index: int,
                          state: SchedulerState) -> torch.Tensor:
        """Identity: DDPM feeds the latent to the denoiser unscaled."""
        schedule = self._require_schedule(state)
        self._check_index(step_index, schedule)
        return self._keep(sample)

    def scale_initial_noise(self, noise: torch.Tensor, schedule: SigmaSchedule) -> torch.Tensor:
        """Identity: DDPM starts from unit-variance noise."""
        return self._keep(noise)

    def _step(self, model_output: torch.Tensor, sample: torch.Tensor,
              step_index: int, state: SchedulerState) -> torch.Tensor:
        timesteps = state.schedule.timesteps
        t = timesteps[step_index]
        prev_t = timesteps[step_index + 1] if step_index < len(timesteps) - 1 else 0
        alpha_prod_t = self.alpha_prod(t)
        alpha_prod_prev = self.alpha_prod(prev_t)

        logger.debug(
            f"DDPM step {step_index}: t={t} prev_t={prev_t} "
            f"alpha_prod_t={alpha_prod_t:.6f} alpha_prod_prev={alpha_prod_prev:.6f}"
        )

        eps = self._as_f32(model_output)
        pred_original = (self._as_f32(sample) - math.sqrt(1 - alpha_prod_t) * eps) / math.sqrt(alpha_prod_t)
        result = math.sqrt(alpha_prod_prev) * pred_original + math.sqrt(1 - alpha_prod_prev) * eps
        state.last_order = 1
        return self._emit(result, sample)

    # -- parameterization helpers -------------------------------------------

    def predict_original_sample(self, sample: torch.Tensor, model_output: torch.Tensor,
                                timestep: int) -> torch.Tensor:
        """pred_x0 = (x_t - sqrt(1 - a_t) * eps) / sqrt(a_t), in float32."""
        check_same_shape(model_output, sample, "DDPM predict_original_sample")
        alpha_prod_t = self.alpha_prod(timestep)
        eps = self._as_f32(model_output)
        return (self._as_f32(sample) - math.sqrt(1 - alpha_prod_t) * eps) / math.sqrt(alpha_prod_t)

    def add_noise(self, original: torch.Tensor, noise: torch.Tensor, timestep: int) -> torch.Tensor:
        """x_t = sqrt(a_t) * x0 + sqrt(1 - a_t) * eps, in float32."""
        check_same_shape(noise, original, "DDPM add_noise")
        alpha_prod_t = self.alpha_prod(timestep)
        return (math.sqrt(alpha_prod_t) * self._as_f32(original)
                + math.sqrt(1 - alpha_prod_t) * self._as_f32(noise))
