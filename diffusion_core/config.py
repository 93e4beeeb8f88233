"""
Module: diffusion_core.config
Purpose: Configuration management for the sampling core
Dependencies: pyyaml, pathlib

Defaults target Stable Diffusion 1.x models (SD 1.x sigma range, 1000
training timesteps, 512px VAE tiles).
"""

from pathlib import Path
from typing import Dict, Any, Optional
import copy
import logging
import os

import yaml

logger = logging.getLogger(__name__)

# Project root directory
PROJECT_ROOT = Path(__file__).parent.parent

# Directory holding optional local.yaml overrides
CONFIG_DIR = PROJECT_ROOT / "config"

# Environment variable pointing at an alternative YAML file
CONFIG_ENV_VAR = "DIFFUSION_CORE_CONFIG"


class Config:
    """
    Configuration manager for the sampling core.

    Every section is a plain dict so YAML overrides can be merged in
    key by key.

    Attributes:
        schedule (Dict[str, Any]): Sigma-curve parameters shared by all noise schedules
        schedulers (Dict[str, Any]): Scheduler defaults (kind, LMS order, SDE eta, DDPM betas)
        pool (Dict[str, Any]): Tensor pool settings
        tiling (Dict[str, Any]): Tiled VAE decode settings
        debug (Dict[str, Any]): Debug switches
        device (str): Compute device override (None for auto-detection)

    Example:
        >>> config = Config()
        >>> config.schedule["sigma_max"]
        14.6146
        >>> config.get_schedule_params("karras")["rho"]
        7.0
    """

    def __init__(self, config_file: Optional[Path] = None):
        """
        Initialize configuration with default values and optional overrides.

        Args:
            config_file: Optional path to YAML config file for overrides
        """
        self.schedule: Dict[str, Any] = {
            "sigma_min": 0.0292,
            "sigma_max": 14.6146,
            "num_train_timesteps": 1000,
            "rho": 7.0,  # Karras skew
            "beta": 1.0,  # Exponential (cosine) shape
        }

        self.schedulers: Dict[str, Any] = {
            "default": "euler-karras",
            "lms_order": 4,
            "eta": 1.0,  # DPM++ 2M SDE noise scale
            "beta_start": 0.00085,
            "beta_end": 0.012,
            "beta_schedule": "scaled_linear",
        }

        self.pool: Dict[str, Any] = {
            "capacity": 10,  # Buffers kept per (dtype, dims) key
        }

        self.tiling: Dict[str, Any] = {
            "tile_size_px": 512,
            "vae_scale_factor": 8,  # Spatial downsample of the VAE
            "max_overlap_latent": 8,  # 64px in image space
            "latent_channels": 4,
            "image_channels": 3,
            "vae_scaling_factor": 0.18215,
        }

        self.debug: Dict[str, Any] = {
            "check_numerics": False,
        }

        # Device configuration (None = auto-detect)
        self.device: Optional[str] = None

        if config_file and config_file.exists():
            self._load_overrides(config_file)

    def _load_overrides(self, config_file: Path) -> None:
        """
        Load configuration overrides from YAML file.

        Args:
            config_file: Path to YAML configuration file
        """
        with open(config_file, 'r') as f:
            overrides = yaml.safe_load(f)

        if overrides:
            for key, value in overrides.items():
                if hasattr(self, key) and isinstance(getattr(self, key), dict):
                    getattr(self, key).update(value)
                else:
                    setattr(self, key, value)
            logger.info(f"Loaded configuration overrides from {config_file}")

    def get_schedule_params(self, kind: str) -> Dict[str, Any]:
        """
        Get constructor parameters for a noise schedule kind.

        Args:
            kind: Noise schedule kind (karras, linear, exponential)

        Returns:
            Dictionary of keyword arguments for the schedule class

        Raises:
            KeyError: If the kind is not recognized
        """
        base = {
            "sigma_min": self.schedule["sigma_min"],
            "sigma_max": self.schedule["sigma_max"],
            "num_train_timesteps": self.schedule["num_train_timesteps"],
        }
        if kind == "karras":
            base["rho"] = self.schedule["rho"]
        elif kind == "exponential":
            base["beta"] = self.schedule["beta"]
        elif kind != "linear":
            raise KeyError(f"Unknown noise schedule: {kind}. Available: ['karras', 'linear', 'exponential']")
        return base

    def as_dict(self) -> Dict[str, Any]:
        """Return a deep copy of every section, suitable for dumping to YAML."""
        return {
            "schedule": copy.deepcopy(self.schedule),
            "schedulers": copy.deepcopy(self.schedulers),
            "pool": copy.deepcopy(self.pool),
            "tiling": copy.deepcopy(self.tiling),
            "debug": copy.deepcopy(self.debug),
            "device": self.device,
        }


# Global configuration instance
_config_instance: Optional[Config] = None


def get_config() -> Config:
    """
    Get global configuration instance (singleton pattern).

    Looks at $DIFFUSION_CORE_CONFIG first, then config/local.yaml.

    Returns:
        Shared Config instance

    Example:
        >>> from diffusion_core.config import get_config
        >>> config = get_config()
        >>> print(config.tiling["tile_size_px"])
    """
    global _config_instance
    if _config_instance is None:
        env_path = os.environ.get(CONFIG_ENV_VAR)
        if env_path:
            _config_instance = Config(Path(env_path))
        else:
            local_config = CONFIG_DIR / "local.yaml"
            _config_instance = Config(local_config if local_config.exists() else None)
    return _config_instance


def reset_config() -> None:
    """Drop the cached configuration so the next get_config() reloads it."""
    global _config_instance
    _config_instance = None
