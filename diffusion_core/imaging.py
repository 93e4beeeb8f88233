"""
Module: diffusion_core.imaging
Purpose: Convert decoded image tensors and raw latents into PIL images
Dependencies: torch, numpy, PIL
"""

from typing import List
import logging

import numpy as np
import torch
from PIL import Image

logger = logging.getLogger(__name__)

# Rough latent-channel -> RGB mix used for in-loop previews (rows: R, G, B)
PREVIEW_MIX = torch.tensor([
    [0.5, 0.0, 0.3, 0.0],
    [0.2, 0.6, 0.0, 0.0],
    [0.0, 0.0, 0.4, 0.4],
], dtype=torch.float32)


def tensor_to_pil(image: torch.Tensor) -> List[Image.Image]:
    """
    Convert a [-1, 1] NCHW image tensor to PIL RGB images, one per batch entry.

    Args:
        image: Decoder output of shape [B, 3, H, W]

    Returns:
        List of PIL images
    """
    if image.dim() == 3:
        image = image.unsqueeze(0)
    if image.dim() != 4 or image.shape[1] != 3:
        raise ValueError(f"Expected a [B, 3, H, W] image tensor, got {list(image.shape)}")

    image = (image.detach().to(torch.float32) / 2 + 0.5).clamp(0, 1)
    array = image.cpu().permute(0, 2, 3, 1).numpy()
    array = (array * 255).round().astype(np.uint8)
    return [Image.fromarray(frame) for frame in array]


def latent_preview(latent: torch.Tensor, size: int = 64) -> Image.Image:
    """
    Fast latent -> RGB approximation for progress previews.

    No VAE is involved: channels are mixed linearly, squashed with tanh,
    passed through a smoothstep contrast curve and scaled up with nearest
    neighbour sampling. Only the first batch entry is previewed.

    Args:
        latent: [B, 4, h, w] latent
        size: Longest side of the preview in pixels
    """
    if latent.dim() != 4 or latent.shape[1] != PREVIEW_MIX.shape[1]:
        raise ValueError(f"Expected a [B, 4, h, w] latent, got {list(latent.shape)}")

    channels = latent[0].detach().to(torch.float32).cpu()
    rgb = torch.einsum("rc,chw->rhw", PREVIEW_MIX, channels)
    rgb = (torch.tanh(rgb / 4.0) + 1) / 2
    rgb = rgb * rgb * (3.0 - 2.0 * rgb)
    array = (rgb.clamp(0, 1).permute(1, 2, 0).numpy() * 255).round().astype(np.uint8)

    preview = Image.fromarray(array)
    height, width = array.shape[:2]
    scale = size / max(height, width)
    target = (max(1, round(width * scale)), max(1, round(height * scale)))
    return preview.resize(target, Image.NEAREST)
