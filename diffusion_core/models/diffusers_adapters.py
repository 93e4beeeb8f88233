"""
Module: diffusion_core.models.diffusers_adapters
Purpose: Adapt diffusers UNet/VAE models to the Denoiser and TileDecoder contracts
Dependencies: torch, diffusers (imported on first load)

The sampling core never runs a network itself. These adapters are the
glue between it and Hugging Face diffusers models; any module with the same
call signature (returning an object with a `.sample` tensor) works too.
"""

from typing import Optional, Union
import logging
import time

import torch

from diffusion_core.utils.device import get_device, preferred_dtype

logger = logging.getLogger(__name__)


class UNetDenoiser:
    """
    Denoiser backed by a UNet2DConditionModel.

    Args:
        unet: diffusers UNet (or compatible module)
        device: Device the UNet lives on (defaults to the UNet's own device)
        dtype: Dtype inputs are cast to (defaults to the UNet's dtype)
    """

    def __init__(self, unet: torch.nn.Module, device: Optional[torch.device] = None,
                 dtype: Optional[torch.dtype] = None):
        self.unet = unet
        first = next(unet.parameters(), None)
        self.device = device or (first.device if first is not None else torch.device("cpu"))
        self.dtype = dtype or (first.dtype if first is not None else torch.float32)

    def predict(self, latent: torch.Tensor, timestep: float,
                conditioning: torch.Tensor) -> torch.Tensor:
        """Noise prediction in the latent's own dtype and device."""
        model_input = latent.to(device=self.device, dtype=self.dtype)
        encoder_hidden_states = conditioning.to(device=self.device, dtype=self.dtype)
        t = torch.tensor(timestep, device=self.device)
        with torch.no_grad():
            output = self.unet(model_input, t, encoder_hidden_states=encoder_hidden_states)
        eps = output.sample if hasattr(output, "sample") else output[0]
        return eps.to(device=latent.device, dtype=latent.dtype)


class VAETileDecoder:
    """
    TileDecoder backed by an AutoencoderKL.

    Args:
        vae: diffusers AutoencoderKL (or compatible module with decode())
        device: Device the VAE lives on (defaults to the VAE's own device)
        dtype: Dtype inputs are cast to (defaults to the VAE's dtype)
    """

    def __init__(self, vae: torch.nn.Module, device: Optional[torch.device] = None,
                 dtype: Optional[torch.dtype] = None):
        self.vae = vae
        first = next(vae.parameters(), None)
        self.device = device or (first.device if first is not None else torch.device("cpu"))
        self.dtype = dtype or (first.dtype if first is not None else torch.float32)

    def decode(self, latent_tile: torch.Tensor) -> torch.Tensor:
        """Decode a latent tile to a float32 [-1, 1] RGB tile."""
        with torch.no_grad():
            output = self.vae.decode(latent_tile.to(device=self.device, dtype=self.dtype))
        image = output.sample if hasattr(output, "sample") else output[0]
        return image.to(torch.float32)

    __call__ = decode


def _load(loader, model_id: str, subfolder: str, device: Optional[Union[str, torch.device]],
          cache_dir: Optional[str], label: str):
    device = get_device(device) if not isinstance(device, torch.device) else device
    dtype = preferred_dtype(device)

    logger.info(f"Loading {label} from {model_id} ({subfolder}) on {device} as {dtype}")
    start_time = time.time()
    try:
        model = loader.from_pretrained(
            model_id,
            subfolder=subfolder,
            torch_dtype=dtype,
            cache_dir=cache_dir,
        )
    except Exception as e:
        logger.error(f"Failed to load {label}: {e}")
        raise RuntimeError(f"Could not load {label} from {model_id}: {e}") from e

    model = model.to(device)
    model.eval()
    logger.info(f"✓ {label} loaded in {time.time() - start_time:.1f}s")
    return model, device, dtype


def load_unet(model_id: str, subfolder: str = "unet",
              device: Optional[Union[str, torch.device]] = None,
              cache_dir: Optional[str] = None) -> UNetDenoiser:
    """
    Load a UNet2DConditionModel and wrap it as a Denoiser.

    float16 is used on MPS/CUDA, float32 on CPU.

    Raises:
        RuntimeError: If the model cannot be loaded
    """
    from diffusers import UNet2DConditionModel

    unet, device, dtype = _load(UNet2DConditionModel, model_id, subfolder, device, cache_dir, "UNet")
    return UNetDenoiser(unet, device=device, dtype=dtype)


def load_vae(model_id: str, subfolder: str = "vae",
             device: Optional[Union[str, torch.device]] = None,
             cache_dir: Optional[str] = None) -> VAETileDecoder:
    """
    Load an AutoencoderKL and wrap it as a TileDecoder.

    Raises:
        RuntimeError: If the model cannot be loaded
    """
    from diffusers import AutoencoderKL

    vae, device, dtype = _load(AutoencoderKL, model_id, subfolder, device, cache_dir, "VAE")
    return VAETileDecoder(vae, device=device, dtype=dtype)
