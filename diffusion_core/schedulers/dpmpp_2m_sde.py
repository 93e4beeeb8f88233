"""
Module: diffusion_core.schedulers.dpmpp_2m_sde
Purpose: DPM++ 2M SDE sampler on the Karras curve
Dependencies: torch
"""

from typing import Optional
import logging

import torch

from diffusion_core.schedulers.base import SchedulerState, SigmaScheduler, euler_update
from diffusion_core.schedules import KarrasNoiseSchedule
from diffusion_core.utils.tensor_pool import TensorPool

logger = logging.getLogger(__name__)


def sde_noise_std(sigma: float, sigma_next: float, eta: float) -> float:
    """
    Standard deviation of the SDE noise added on a transition.

    variance = eta^2 * (sigma_next^2 - sigma^2 * (sigma_next / sigma)^2)

    The two terms cancel analytically, so the result is zero up to float
    error; negative variances are clamped.
    """
    if eta <= 0 or sigma_next <= 0:
        return 0.0
    variance = eta ** 2 * (sigma_next ** 2 - sigma ** 2 * (sigma_next / sigma) ** 2)
    return variance ** 0.5 if variance > 0 else 0.0


class DPMpp2MSDEScheduler(SigmaScheduler):
    """
    Second-order multistep sampler with optional SDE noise.

    The first step is an Euler step. Later steps extrapolate linearly from
    the previous eps:

        r = (sigma_next - sigma) / (sigma - sigma_prev)
        d = eps + r * (eps - eps_prev)

    Args:
        eta: SDE noise scale (0 disables noise)
        generator: Optional torch.Generator for reproducible noise
        pool: Optional TensorPool for outputs and the stored eps
        check_numerics: Log NaN/Inf in step outputs
        **schedule_params: Karras parameters
    """

    def __init__(self, eta: float = 1.0, generator: Optional[torch.Generator] = None,
                 pool: Optional[TensorPool] = None, check_numerics: bool = False,
                 **schedule_params):
        if eta < 0:
            raise ValueError(f"eta must be >= 0, got {eta}")
        schedule_params.pop("beta", None)
        super().__init__(KarrasNoiseSchedule(**schedule_params), pool=pool,
                         check_numerics=check_numerics)
        self.eta = eta
        self.generator = generator

    @property
    def name(self) -> str:
        return "DPM++ 2M SDE"

    def _noise(self, like: torch.Tensor, std: float) -> torch.Tensor:
        noise = torch.randn(like.shape, generator=self.generator, dtype=torch.float32)
        return noise.to(like.device).mul_(std)

    def _step(self, model_output: torch.Tensor, sample: torch.Tensor,
              step_index: int, state: SchedulerState) -> torch.Tensor:
        schedule = state.schedule
        sigma = schedule.sigma(step_index)
        sigma_next = schedule.sigma_next(step_index)

        if state.prev_model_output is None or step_index == 0:
            result = euler_update(sample, model_output, sigma, sigma_next)
            state.last_order = 1
        else:
            sigma_prev = schedule.sigma(step_index - 1)
            r = (sigma_next - sigma) / (sigma - sigma_prev)
            eps = self._as_f32(model_output)
            corrected = eps + r * (eps - self._as_f32(state.prev_model_output))
            result = euler_update(sample, corrected, sigma, sigma_next)
            state.last_order = 2

        std = sde_noise_std(sigma, sigma_next, self.eta)
        if std > 0:
            result = result + self._noise(result, std)

        if state.prev_model_output is not None:
            self._release(state.prev_model_output)
        state.prev_model_output = self._keep(model_output)
        return self._emit(result, sample)
