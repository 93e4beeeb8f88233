"""
Module: diffusion_core.schedules
Purpose: Sigma (noise-level) curves and matching training timesteps
Dependencies: torch (for as_tensor only), math

Every schedule is a pure function of its parameters and the step count:
    sigmas    = [sigma_max, ..., sigma_min, 0]   (steps + 1 values)
    timesteps = [T-1, ..., 0]                    (steps values)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional
import logging
import math

import torch

from diffusion_core.errors import DegenerateScheduleError

logger = logging.getLogger(__name__)

NOISE_SCHEDULE_TYPES = ("karras", "linear", "exponential")


@dataclass(frozen=True)
class SigmaSchedule:
    """
    Strictly decreasing sigmas ending in a single 0, plus one timestep per step.

    Attributes:
        sigmas: steps + 1 noise levels, sigmas[0] == sigma_max, sigmas[-1] == 0
        timesteps: steps training-timestep indices in [0, num_train_timesteps)
        name: Schedule that produced the curve
    """
    sigmas: List[float]
    timesteps: List[int]
    name: str = field(default="custom", compare=False)

    @property
    def steps(self) -> int:
        return len(self.timesteps)

    @property
    def init_sigma(self) -> float:
        return self.sigmas[0]

    def sigma(self, step_index: int) -> float:
        return self.sigmas[step_index]

    def sigma_next(self, step_index: int) -> float:
        return self.sigmas[step_index + 1]

    def as_tensor(self, device=None, dtype: torch.dtype = torch.float32) -> torch.Tensor:
        """Sigmas as a 1-D tensor, handy for plotting or batched math."""
        return torch.tensor(self.sigmas, device=device, dtype=dtype)


def _ramp(i: int, steps: int) -> float:
    # steps == 1 collapses the ramp to its start instead of dividing by zero
    return 0.0 if steps == 1 else i / (steps - 1)


class BaseNoiseSchedule(ABC):
    """
    Shared parameters and validation for sigma curves.

    Args:
        sigma_min: Smallest non-zero sigma (last step)
        sigma_max: Largest sigma (first step)
        num_train_timesteps: Length of the training diffusion chain
    """

    def __init__(self, sigma_min: float = 0.0292, sigma_max: float = 14.6146,
                 num_train_timesteps: int = 1000):
        self.sigma_min = sigma_min
        self.sigma_max = sigma_max
        self.num_train_timesteps = num_train_timesteps

    @property
    @abstractmethod
    def name(self) -> str:
        """Display name of the schedule."""

    @abstractmethod
    def sigma_at(self, t: float) -> float:
        """Sigma for a ramp position t in [0, 1]."""

    def timestep_at(self, t: float) -> int:
        """Training timestep for a ramp position, mapped high to low."""
        last = self.num_train_timesteps - 1
        return last - math.floor(last * t)

    def _validate(self, steps: int) -> None:
        if steps < 1:
            raise DegenerateScheduleError(f"steps must be >= 1, got {steps}")
        if self.sigma_min <= 0:
            raise DegenerateScheduleError(f"sigma_min must be > 0, got {self.sigma_min}")
        if self.sigma_min >= self.sigma_max:
            raise DegenerateScheduleError(
                f"sigma_min ({self.sigma_min}) must be below sigma_max ({self.sigma_max})"
            )
        if self.num_train_timesteps < 1:
            raise DegenerateScheduleError(
                f"num_train_timesteps must be >= 1, got {self.num_train_timesteps}"
            )

    def generate(self, steps: int) -> SigmaSchedule:
        """
        Generate sigmas and timesteps for the given number of steps.

        Raises:
            DegenerateScheduleError: On steps < 1 or an empty sigma range
        """
        self._validate(steps)
        sigmas = []
        timesteps = []
        for i in range(steps):
            t = _ramp(i, steps)
            sigmas.append(self.sigma_at(t))
            timesteps.append(self.timestep_at(t))
        # The first value is pinned so float error in pow/exp cannot drift it
        sigmas[0] = float(self.sigma_max)
        sigmas.append(0.0)
        logger.debug(f"{self.name} schedule: {steps} steps, sigma {sigmas[0]:.4f} -> {sigmas[-2]:.4f}")
        return SigmaSchedule(sigmas=sigmas, timesteps=timesteps, name=self.name)

    def set_parameters(self, sigma_min: Optional[float] = None, sigma_max: Optional[float] = None,
                       num_train_timesteps: Optional[int] = None) -> None:
        """Update shared schedule parameters."""
        if sigma_min is not None:
            self.sigma_min = sigma_min
        if sigma_max is not None:
            self.sigma_max = sigma_max
        if num_train_timesteps is not None:
            self.num_train_timesteps = num_train_timesteps


class KarrasNoiseSchedule(BaseNoiseSchedule):
    """
    Karras et al. (2022) power-law curve.

    sigma(t) = (sigma_max^(1/rho) + t * (sigma_min^(1/rho) - sigma_max^(1/rho)))^rho
    """

    def __init__(self, sigma_min: float = 0.0292, sigma_max: float = 14.6146,
                 num_train_timesteps: int = 1000, rho: float = 7.0):
        super().__init__(sigma_min, sigma_max, num_train_timesteps)
        self.rho = rho

    @property
    def name(self) -> str:
        return "Karras"

    def _validate(self, steps: int) -> None:
        super()._validate(steps)
        if self.rho <= 0:
            raise DegenerateScheduleError(f"rho must be > 0, got {self.rho}")

    def sigma_at(self, t: float) -> float:
        min_inv_rho = self.sigma_min ** (1 / self.rho)
        max_inv_rho = self.sigma_max ** (1 / self.rho)
        return (max_inv_rho + t * (min_inv_rho - max_inv_rho)) ** self.rho


class LinearNoiseSchedule(BaseNoiseSchedule):
    """Linear interpolation in log-sigma space."""

    @property
    def name(self) -> str:
        return "Linear"

    def sigma_at(self, t: float) -> float:
        log_min = math.log(self.sigma_min)
        log_max = math.log(self.sigma_max)
        return math.exp(log_max - t * (log_max - log_min))


class ExponentialNoiseSchedule(BaseNoiseSchedule):
    """
    Cosine-shaped decay from sigma_max to sigma_min.

    sigma(t) = sigma_min + (sigma_max - sigma_min) * 0.5 * (1 + cos(pi * t^beta))
    """

    def __init__(self, sigma_min: float = 0.0292, sigma_max: float = 14.6146,
                 num_train_timesteps: int = 1000, beta: float = 1.0):
        super().__init__(sigma_min, sigma_max, num_train_timesteps)
        self.beta = beta

    @property
    def name(self) -> str:
        return "Exponential"

    def _validate(self, steps: int) -> None:
        super()._validate(steps)
        if self.beta <= 0:
            raise DegenerateScheduleError(f"beta must be > 0, got {self.beta}")

    def sigma_at(self, t: float) -> float:
        decay = 0.5 * (1 + math.cos(math.pi * t ** self.beta))
        return self.sigma_min + (self.sigma_max - self.sigma_min) * decay


def create_noise_schedule(kind: str, **params) -> BaseNoiseSchedule:
    """
    Build a noise schedule by kind.

    Args:
        kind: "karras", "linear" or "exponential"
        **params: sigma_min, sigma_max, num_train_timesteps and the
                  kind-specific rho (karras) or beta (exponential)

    Raises:
        ValueError: If the kind is unknown
    """
    kind = kind.lower()
    if kind == "karras":
        params.pop("beta", None)
        return KarrasNoiseSchedule(**params)
    if kind == "linear":
        params.pop("rho", None)
        params.pop("beta", None)
        return LinearNoiseSchedule(**params)
    if kind == "exponential":
        params.pop("rho", None)
        return ExponentialNoiseSchedule(**params)
    raise ValueError(f"Unknown noise schedule type: {kind}. Available: {list(NOISE_SCHEDULE_TYPES)}")
