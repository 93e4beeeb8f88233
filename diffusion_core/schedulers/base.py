"""
Module: diffusion_core.schedulers.base
Purpose: Shared stepping machinery and the caller-owned SchedulerState
Dependencies: torch

State machine of one generation:

    UNINITIALIZED --generate_timesteps--> READY --step--> STEPPING --last step--> DONE

The state object is created by the caller, threaded through every call and
never shared between concurrent generations. reset() clears the history a
multistep rule keeps between calls; a state must be reset (or timesteps
regenerated) before it is reused.
"""

from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Optional
import logging

import torch

from diffusion_core.errors import InvalidStepIndexError, check_same_shape
from diffusion_core.schedules import BaseNoiseSchedule, SigmaSchedule
from diffusion_core.utils.numerics import check_finite
from diffusion_core.utils.tensor_pool import TensorPool

logger = logging.getLogger(__name__)


class SchedulerPhase(Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    STEPPING = "stepping"
    DONE = "done"


@dataclass
class SchedulerState:
    """
    Per-generation memory of a scheduler.

    Attributes:
        phase: Current position in the state machine
        schedule: Sigma curve bound by generate_timesteps()
        prev_model_output: Previous eps (Heun, DPM++ 2M SDE)
        derivatives: Trailing derivatives, most recent last (LMS)
        steps_taken: Number of completed step() calls
        last_order: Order of the rule applied by the most recent step
    """
    phase: SchedulerPhase = SchedulerPhase.UNINITIALIZED
    schedule: Optional[SigmaSchedule] = None
    prev_model_output: Optional[torch.Tensor] = None
    derivatives: Deque[torch.Tensor] = field(default_factory=deque)
    steps_taken: int = 0
    last_order: int = 0

    def reset(self) -> None:
        """Forget history; keep the bound schedule."""
        self.prev_model_output = None
        self.derivatives.clear()
        self.steps_taken = 0
        self.last_order = 0
        self.phase = SchedulerPhase.READY if self.schedule is not None else SchedulerPhase.UNINITIALIZED

    @property
    def is_done(self) -> bool:
        return self.phase is SchedulerPhase.DONE


class BaseScheduler(ABC):
    """
    Common behaviour of every sampling rule.

    Subclasses provide the sigma curve (_build_schedule) and the update rule
    (_step). Output tensors and stored history come from the pool when one is
    given, otherwise they are plain allocations.

    Args:
        pool: Optional TensorPool for outputs and history buffers
        check_numerics: Log the first NaN/Inf index of every step output
    """

    def __init__(self, pool: Optional[TensorPool] = None, check_numerics: bool = False):
        self.pool = pool
        self.check_numerics = check_numerics

    @property
    @abstractmethod
    def name(self) -> str:
        """Display name."""

    @abstractmethod
    def _build_schedule(self, steps: int) -> SigmaSchedule:
        """Sigma curve and timesteps for a step count."""

    @abstractmethod
    def _step(self, model_output: torch.Tensor, sample: torch.Tensor,
              step_index: int, state: SchedulerState) -> torch.Tensor:
        """Apply one update; return a tensor the caller will own."""

    # -- lifecycle -----------------------------------------------------------

    def generate_timesteps(self, steps: int, state: SchedulerState) -> SigmaSchedule:
        """
        Build the schedule for a generation and bind it to state.

        Any history left in the state is discarded.

        Raises:
            DegenerateScheduleError: If the schedule cannot be built
        """
        schedule = self._build_schedule(steps)
        self._release_history(state)
        state.schedule = schedule
        state.reset()
        logger.info(
            f"{self.name}: {steps} steps, sigma {schedule.sigmas[0]:.4f} -> {schedule.sigmas[-2]:.4f}"
        )
        return schedule

    def reset(self, state: SchedulerState) -> None:
        """Clear per-generation history so the state can drive a new run."""
        self._release_history(state)
        state.reset()

    def _release_history(self, state: SchedulerState) -> None:
        if state.prev_model_output is not None:
            self._release(state.prev_model_output)
            state.prev_model_output = None
        while state.derivatives:
            self._release(state.derivatives.popleft())

    # -- public operations ---------------------------------------------------

    def scale_model_input(self, sample: torch.Tensor, step_index: int,
                          state: SchedulerState) -> torch.Tensor:
        """
        Scale the latent before it goes into the denoiser.

        Euler-family rules divide by sqrt(sigma^2 + 1).
        """
        schedule = self._require_schedule(state)
        self._check_index(step_index, schedule)
        sigma = schedule.sigma(step_index)
        out = self._new_like(sample)
        torch.mul(sample, 1.0 / (sigma ** 2 + 1) ** 0.5, out=out)
        return out

    def step(self, model_output: torch.Tensor, sample: torch.Tensor, step_index: int,
             state: SchedulerState) -> torch.Tensor:
        """
        Advance the sample from sigmas[step_index] to sigmas[step_index + 1].

        Args:
            model_output: Guided noise prediction eps
            sample: Current latent x (not consumed)
            step_index: Index into the bound schedule
            state: Caller-owned SchedulerState

        Returns:
            The next latent, owned by the caller

        Raises:
            InvalidStepIndexError: Before generate_timesteps, after the last
                step, or with an index outside [0, steps - 1]
            ShapeMismatchError: If model_output and sample differ in shape
        """
        schedule = self._require_schedule(state)
        if state.phase is SchedulerPhase.DONE:
            raise InvalidStepIndexError(
                f"{self.name}: all {schedule.steps} steps already taken; reset() before reuse"
            )
        self._check_index(step_index, schedule)
        check_same_shape(model_output, sample, f"{self.name} step")

        prev_sample = self._step(model_output, sample, step_index, state)

        state.steps_taken += 1
        state.phase = SchedulerPhase.DONE if step_index == schedule.steps - 1 else SchedulerPhase.STEPPING
        if self.check_numerics:
            check_finite(prev_sample, f"{self.name} step {step_index}")
        return prev_sample

    def scale_initial_noise(self, noise: torch.Tensor, schedule: SigmaSchedule) -> torch.Tensor:
        """Scale unit-variance noise up to the first sigma."""
        out = self._new_like(noise)
        torch.mul(noise, schedule.sigmas[0], out=out)
        return out

    # -- helpers -------------------------------------------------------------

    def _require_schedule(self, state: SchedulerState) -> SigmaSchedule:
        if state.phase is SchedulerPhase.UNINITIALIZED or state.schedule is None:
            raise InvalidStepIndexError(f"{self.name}: generate_timesteps() must be called first")
        return state.schedule

    def _check_index(self, step_index: int, schedule: SigmaSchedule) -> None:
        if not 0 <= step_index < schedule.steps:
            raise InvalidStepIndexError(
                f"{self.name}: step index {step_index} outside [0, {schedule.steps - 1}]"
            )

    def _new_like(self, tensor: torch.Tensor) -> torch.Tensor:
        if self.pool is not None:
            return self.pool.acquire_like(tensor)
        return torch.empty_like(tensor)

    def _keep(self, tensor: torch.Tensor) -> torch.Tensor:
        """Private copy of a tensor for the scheduler history."""
        if self.pool is not None:
            return self.pool.clone(tensor)
        return tensor.detach().clone()

    def _release(self, tensor: torch.Tensor) -> None:
        if self.pool is not None:
            self.pool.release(tensor)

    def _emit(self, result: torch.Tensor, like: torch.Tensor) -> torch.Tensor:
        """Write a float32 result into a buffer with like's dtype."""
        out = self._new_like(like)
        out.copy_(result)
        return out

    @staticmethod
    def _as_f32(tensor: torch.Tensor) -> torch.Tensor:
        return tensor.to(torch.float32)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


class SigmaScheduler(BaseScheduler):
    """
    Scheduler driven by one of the noise-schedule curves.

    Args:
        noise_schedule: Curve used by generate_timesteps()
    """

    def __init__(self, noise_schedule: BaseNoiseSchedule,
                 pool: Optional[TensorPool] = None, check_numerics: bool = False):
        super().__init__(pool=pool, check_numerics=check_numerics)
        self.noise_schedule = noise_schedule

    def _build_schedule(self, steps: int) -> SigmaSchedule:
        return self.noise_schedule.generate(steps)


def euler_update(sample: torch.Tensor, model_output: torch.Tensor,
                 sigma: float, sigma_next: float) -> torch.Tensor:
    """
    First-order update in float32.

        x0 = x - sigma * eps
        d  = (x - x0) / sigma
        x' = x + d * (sigma_next - sigma)
    """
    x = sample.to(torch.float32)
    eps = model_output.to(torch.float32)
    pred_original = x - sigma * eps
    derivative = (x - pred_original) / sigma
    return x + derivative * (sigma_next - sigma)


def to_derivative(sample: torch.Tensor, model_output: torch.Tensor, sigma: float) -> torch.Tensor:
    """d = (x - x0) / sigma with x0 = x - sigma * eps, in float32."""
    x = sample.to(torch.float32)
    pred_original = x - sigma * model_output.to(torch.float32)
    return (x - pred_original) / sigma
