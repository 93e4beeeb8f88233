"""
Module: diffusion_core.schedulers.euler
Purpose: First-order Euler sampler over a selectable sigma curve
Dependencies: torch
"""

from typing import Optional
import logging

import torch

from diffusion_core.schedulers.base import SchedulerState, SigmaScheduler, euler_update
from diffusion_core.schedules import create_noise_schedule
from diffusion_core.utils.tensor_pool import TensorPool

logger = logging.getLogger(__name__)


class EulerScheduler(SigmaScheduler):
    """
    Euler integration: x' = x + eps * (sigma_next - sigma).

    Args:
        noise_schedule_type: "karras", "linear" or "exponential"
        pool: Optional TensorPool for output buffers
        check_numerics: Log NaN/Inf in step outputs
        **schedule_params: Passed to the noise schedule (sigma_min, sigma_max,
                           num_train_timesteps, rho, beta)

    Example:
        >>> scheduler = EulerScheduler("linear")
        >>> scheduler.name
        'Euler (Linear)'
    """

    def __init__(self, noise_schedule_type: str = "karras", pool: Optional[TensorPool] = None,
                 check_numerics: bool = False, **schedule_params):
        super().__init__(
            create_noise_schedule(noise_schedule_type, **schedule_params),
            pool=pool,
            check_numerics=check_numerics,
        )
        self.noise_schedule_type = noise_schedule_type.lower()

    @property
    def name(self) -> str:
        return f"Euler ({self.noise_schedule.name})"

    def _step(self, model_output: torch.Tensor, sample: torch.Tensor,
              step_index: int, state: SchedulerState) -> torch.Tensor:
        schedule = state.schedule
        result = euler_update(sample, model_output, schedule.sigma(step_index),
                              schedule.sigma_next(step_index))
        state.last_order = 1
        return self._emit(result, sample)
