"""
Module: diffusion_core.schedulers.lms
Purpose: Linear multistep (Adams-Bashforth) sampler on the Karras curve
Dependencies: torch
"""

from typing import List, Optional
import logging

import torch

from diffusion_core.schedulers.base import SchedulerState, SigmaScheduler, to_derivative
from diffusion_core.schedules import KarrasNoiseSchedule
from diffusion_core.utils.tensor_pool import TensorPool

logger = logging.getLogger(__name__)

MAX_ORDER = 4

# Adams-Bashforth weights, most recent derivative first
ADAMS_BASHFORTH_COEFFICIENTS = {
    1: (1.0,),
    2: (3 / 2, -1 / 2),
    3: (23 / 12, -16 / 12, 5 / 12),
    4: (55 / 24, -59 / 24, 37 / 24, -9 / 24),
}


def adams_bashforth_coefficients(order: int) -> List[float]:
    """
    Weights for a given multistep order.

    Raises:
        ValueError: If order is outside [1, 4]
    """
    if order not in ADAMS_BASHFORTH_COEFFICIENTS:
        raise ValueError(f"LMS order must be in [1, {MAX_ORDER}], got {order}")
    return list(ADAMS_BASHFORTH_COEFFICIENTS[order])


class LMSScheduler(SigmaScheduler):
    """
    Linear multistep sampler.

    Keeps the last `order` derivatives in the state. Until that much history
    exists the rule runs at the order the history allows, so a 4th-order
    scheduler uses orders 1, 2, 3 on the first three steps.

    Args:
        order: Multistep order in [1, 4]
        pool: Optional TensorPool for outputs and stored derivatives
        check_numerics: Log NaN/Inf in step outputs
        **schedule_params: Karras parameters

    Raises:
        ValueError: If order is outside [1, 4]
    """

    def __init__(self, order: int = 4, pool: Optional[TensorPool] = None,
                 check_numerics: bool = False, **schedule_params):
        adams_bashforth_coefficients(order)
        schedule_params.pop("beta", None)
        super().__init__(KarrasNoiseSchedule(**schedule_params), pool=pool,
                         check_numerics=check_numerics)
        self.order = order

    @property
    def name(self) -> str:
        return f"LMS-{self.order}"

    def _step(self, model_output: torch.Tensor, sample: torch.Tensor,
              step_index: int, state: SchedulerState) -> torch.Tensor:
        schedule = state.schedule
        sigma = schedule.sigma(step_index)
        dt = schedule.sigma_next(step_index) - sigma

        derivative = to_derivative(sample, model_output, sigma)
        state.derivatives.append(self._keep(derivative))
        while len(state.derivatives) > self.order:
            self._release(state.derivatives.popleft())

        order = len(state.derivatives)
        coefficients = adams_bashforth_coefficients(order)
        # derivatives are stored oldest first
        weighted = torch.zeros_like(derivative)
        for coefficient, past in zip(coefficients, reversed(state.derivatives)):
            weighted.add_(past, alpha=coefficient)

        state.last_order = order
        logger.debug(f"{self.name} step {step_index}: order {order}")
        return self._emit(sample.to(torch.float32) + dt * weighted, sample)
