"""
Example: Basic Python API Usage

This example drives the sampling core directly with a toy denoiser and a
toy decoder, so it runs on CPU without downloading any model weights.
The last example shows the same flow with real diffusers models.
"""

import torch
import torch.nn.functional as F

from diffusion_core import (
    CancellationToken,
    SamplingPipeline,
    TensorPool,
    available_schedulers,
    create_scheduler,
    decode_latents,
)
from diffusion_core.imaging import tensor_to_pil
from diffusion_core.utils.noise import NoiseGenerator, latent_shape
from diffusion_core.utils.performance import PerformanceMonitor


class ToyDenoiser:
    """Predicts part of the latent as noise, pulling samples towards zero."""

    def predict(self, latent, timestep, conditioning):
        return latent * 0.1 + conditioning.mean()


def toy_decode(latent_tile):
    """First three latent channels, upsampled 8x and squashed into [-1, 1]."""
    return torch.tanh(F.interpolate(latent_tile[:, :3].float(), scale_factor=8, mode="nearest"))


def example_single_generation():
    """Sample one latent and decode it to a PIL image."""
    print("=== Single Generation ===\n")

    pool = TensorPool()
    monitor = PerformanceMonitor()
    scheduler = create_scheduler("euler-karras", pool=pool)
    pipeline = SamplingPipeline(ToyDenoiser(), scheduler, pool=pool, monitor=monitor)

    noise = NoiseGenerator(seed=42).randn(latent_shape(512, 512))
    result = pipeline.sample(
        noise,
        steps=20,
        positive=torch.full((1, 77, 768), 0.05),
        negative=torch.zeros(1, 77, 768),
        guidance_scale=7.5,
    )

    image = decode_latents(result.latent, 512, 512, toy_decode, tile_size_px=256, pool=pool)
    pil_image = tensor_to_pil(image)[0]

    print(f"✓ {result.steps_completed} steps, image {pil_image.size[0]}x{pil_image.size[1]}")
    print(f"  Pool hit rate: {pool.stats().hit_rate:.1f}%\n")
    print(monitor.format_report(pool.stats()))


def example_compare_schedulers():
    """Run every scheduler kind from the same seed."""
    print("\n=== Scheduler Comparison ===\n")

    noise = NoiseGenerator(seed=7).randn(latent_shape(256, 256))
    positive = torch.full((1, 77, 768), 0.05)

    for kind in available_schedulers():
        scheduler = create_scheduler(kind)
        result = SamplingPipeline(ToyDenoiser(), scheduler).sample(
            noise, 10, positive, guidance_scale=1.0
        )
        print(f"  {scheduler.name:<22} latent std {float(result.latent.std()):.4f}")


def example_cancellation():
    """Stop a run part way and keep the last complete latent."""
    print("\n=== Cancellation ===\n")

    token = CancellationToken()

    def stop_after_five(step_index, latent):
        if step_index == 4:
            token.cancel("preview looked good enough")

    result = SamplingPipeline(ToyDenoiser(), create_scheduler("lms")).sample(
        NoiseGenerator(seed=1).randn(latent_shape(256, 256)),
        steps=30,
        positive=torch.zeros(1, 77, 768),
        guidance_scale=1.0,
        cancel=token,
        on_step=stop_after_five,
    )

    print(f"✓ Cancelled: {result.cancelled}, steps completed: {result.steps_completed}\n")


def example_with_diffusers(model_id="runwayml/stable-diffusion-v1-5"):
    """
    Same flow with real Stable Diffusion weights.

    Text encoding is outside the core, so the conditioning tensors here are
    placeholders; pass real CLIP embeddings to get a meaningful image.
    """
    from diffusion_core.models import load_unet, load_vae

    denoiser = load_unet(model_id)
    decoder = load_vae(model_id)

    pool = TensorPool(device=denoiser.device)
    pipeline = SamplingPipeline(denoiser, create_scheduler("dpmpp-2m-sde", pool=pool), pool=pool)
    noise = NoiseGenerator(seed=42, device=denoiser.device).randn(latent_shape(512, 512),
                                                                   dtype=denoiser.dtype)
    cond = torch.zeros(1, 77, 768, device=denoiser.device, dtype=denoiser.dtype)

    result = pipeline.sample(noise, 25, positive=cond, negative=cond, guidance_scale=7.5)
    image = decode_latents(result.latent, 512, 512, decoder, pool=pool)
    tensor_to_pil(image)[0].save("diffusion_core_example.png")
    print("✓ Saved diffusion_core_example.png")


if __name__ == "__main__":
    example_single_generation()
    example_compare_schedulers()
    example_cancellation()

    # Uncomment to run with real weights (downloads several GB):
    # example_with_diffusers()
