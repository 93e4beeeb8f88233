"""
Sampling rules that walk a latent down a sigma curve.
"""

from diffusion_core.schedulers.base import (
    BaseScheduler,
    SchedulerPhase,
    SchedulerState,
    SigmaScheduler,
)
from diffusion_core.schedulers.ddpm import DDPMScheduler
from diffusion_core.schedulers.dpmpp_2m_sde import DPMpp2MSDEScheduler
from diffusion_core.schedulers.euler import EulerScheduler
from diffusion_core.schedulers.heun import HeunScheduler
from diffusion_core.schedulers.lms import LMSScheduler
from diffusion_core.schedulers.registry import (
    SchedulerKind,
    available_schedulers,
    create_scheduler,
)

__all__ = [
    "BaseScheduler",
    "SigmaScheduler",
    "SchedulerPhase",
    "SchedulerState",
    "EulerScheduler",
    "HeunScheduler",
    "LMSScheduler",
    "DPMpp2MSDEScheduler",
    "DDPMScheduler",
    "SchedulerKind",
    "available_schedulers",
    "create_scheduler",
]
