"""
Module: diffusion_core.schedulers.heun
Purpose: Two-point averaging sampler ("heun-lite") on the Karras curve
Dependencies: torch

This is not textbook Heun. There is no second denoiser evaluation per step:
the first step is plain Euler, and every later step averages the current
eps with the eps of the previous step before applying the Euler update.
"""

from typing import Optional
import logging

import torch

from diffusion_core.schedulers.base import SchedulerState, SigmaScheduler, euler_update
from diffusion_core.schedules import KarrasNoiseSchedule
from diffusion_core.utils.tensor_pool import TensorPool

logger = logging.getLogger(__name__)


class HeunScheduler(SigmaScheduler):
    """
    Predictor-corrector approximation that reuses the previous step's eps.

    Args:
        pool: Optional TensorPool for outputs and the stored eps
        check_numerics: Log NaN/Inf in step outputs
        **schedule_params: Karras parameters (sigma_min, sigma_max,
                           num_train_timesteps, rho)
    """

    def __init__(self, pool: Optional[TensorPool] = None, check_numerics: bool = False,
                 **schedule_params):
        schedule_params.pop("beta", None)
        super().__init__(KarrasNoiseSchedule(**schedule_params), pool=pool,
                         check_numerics=check_numerics)

    @property
    def name(self) -> str:
        return "Heun (heun-lite)"

    def _step(self, model_output: torch.Tensor, sample: torch.Tensor,
              step_index: int, state: SchedulerState) -> torch.Tensor:
        schedule = state.schedule
        sigma = schedule.sigma(step_index)
        sigma_next = schedule.sigma_next(step_index)

        if state.prev_model_output is None or step_index == 0:
            result = euler_update(sample, model_output, sigma, sigma_next)
            state.last_order = 1
        else:
            averaged = (self._as_f32(model_output) + self._as_f32(state.prev_model_output)) * 0.5
            result = euler_update(sample, averaged, sigma, sigma_next)
            state.last_order = 2

        if state.prev_model_output is not None:
            self._release(state.prev_model_output)
        state.prev_model_output = self._keep(model_output)
        return self._emit(result, sample)
