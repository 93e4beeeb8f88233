"""
Module: diffusion_core.schedulers.registry
Purpose: Closed set of scheduler kinds and the factory that builds them
Dependencies: None (wires together the scheduler modules)
"""

from enum import Enum
from typing import List, Optional, Union
import logging

from diffusion_core.config import Config, get_config
from diffusion_core.schedulers.base import BaseScheduler
from diffusion_core.schedulers.ddpm import DDPMScheduler
from diffusion_core.schedulers.dpmpp_2m_sde import DPMpp2MSDEScheduler
from diffusion_core.schedulers.euler import EulerScheduler
from diffusion_core.schedulers.heun import HeunScheduler
from diffusion_core.schedulers.lms import LMSScheduler
from diffusion_core.utils.tensor_pool import TensorPool

logger = logging.getLogger(__name__)


class SchedulerKind(str, Enum):
    EULER = "euler"
    EULER_KARRAS = "euler-karras"
    EULER_LINEAR = "euler-linear"
    EULER_EXPONENTIAL = "euler-exponential"
    HEUN = "heun"
    LMS = "lms"
    DPMPP_2M_SDE = "dpmpp-2m-sde"
    DDPM = "ddpm"

    @classmethod
    def parse(cls, value: Union[str, "SchedulerKind"]) -> "SchedulerKind":
        """
        Accept an enum member or its string value.

        Raises:
            ValueError: If the kind is unknown
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(value.lower())
        except ValueError:
            raise ValueError(
                f"Unknown scheduler type: {value}. Available: {available_schedulers()}"
            ) from None


# Noise curve used by each Euler variant; plain "euler" is the Karras default
_EULER_CURVES = {
    SchedulerKind.EULER: "karras",
    SchedulerKind.EULER_KARRAS: "karras",
    SchedulerKind.EULER_LINEAR: "linear",
    SchedulerKind.EULER_EXPONENTIAL: "exponential",
}


def available_schedulers() -> List[str]:
    """All scheduler kind names."""
    return [kind.value for kind in SchedulerKind]


def create_scheduler(kind: Union[str, SchedulerKind], pool: Optional[TensorPool] = None,
                     config: Optional[Config] = None, **params) -> BaseScheduler:
    """
    Build a scheduler by kind.

    Configuration supplies the defaults; explicit keyword arguments win.

    Args:
        kind: A SchedulerKind or its name (e.g. "euler-karras")
        pool: Optional TensorPool shared by the scheduler's buffers
        config: Configuration to read defaults from (defaults to get_config())
        **params: Overrides such as sigma_min, rho, order, eta, beta_schedule

    Returns:
        A fresh scheduler; pair it with a fresh SchedulerState per generation

    Raises:
        ValueError: If the kind is unknown

    Example:
        >>> scheduler = create_scheduler("lms", order=2)
        >>> scheduler.name
        'LMS-2'
    """
    kind = SchedulerKind.parse(kind)
    config = config or get_config()
    check_numerics = params.pop("check_numerics", config.debug["check_numerics"])

    if kind is SchedulerKind.DDPM:
        options = {
            "beta_start": config.schedulers["beta_start"],
            "beta_end": config.schedulers["beta_end"],
            "beta_schedule": config.schedulers["beta_schedule"],
            "num_train_timesteps": config.schedule["num_train_timesteps"],
        }
        options.update(params)
        scheduler = DDPMScheduler(pool=pool, check_numerics=check_numerics, **options)
    elif kind in _EULER_CURVES:
        curve = _EULER_CURVES[kind]
        options = config.get_schedule_params(curve)
        options.update(params)
        scheduler = EulerScheduler(curve, pool=pool, check_numerics=check_numerics, **options)
    else:
        options = config.get_schedule_params("karras")
        if kind is SchedulerKind.LMS:
            options["order"] = config.schedulers["lms_order"]
            options.update(params)
            scheduler = LMSScheduler(pool=pool, check_numerics=check_numerics, **options)
        elif kind is SchedulerKind.DPMPP_2M_SDE:
            options["eta"] = config.schedulers["eta"]
            options.update(params)
            scheduler = DPMpp2MSDEScheduler(pool=pool, check_numerics=check_numerics, **options)
        else:
            options.update(params)
            scheduler = HeunScheduler(pool=pool, check_numerics=check_numerics, **options)

    logger.debug(f"Created scheduler {scheduler.name} for kind '{kind.value}'")
    return scheduler
