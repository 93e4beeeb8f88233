"""
Module: tests.test_pipeline
Purpose: Sampling loop behaviour with fake denoisers: guidance passes, cancellation, pooling
"""

import sys
from pathlib import Path

import pytest
import torch
import torch.nn.functional as F

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from diffusion_core.config import Config
from diffusion_core.interfaces import CancellationToken, Denoiser
from diffusion_core.pipeline import SamplingPipeline, decode_latents
from diffusion_core.schedulers import create_scheduler
from diffusion_core.utils.noise import NoiseGenerator, latent_shape
from diffusion_core.utils.performance import PerformanceMonitor
from diffusion_core.utils.tensor_pool import TensorPool

SHAPE = (1, 4, 8, 8)


class RecordingDenoiser:
    """Predicts a constant eps per conditioning value and records every call."""

    def __init__(self, eps_value: float = 0.0):
        self.eps_value = eps_value
        self.calls = []

    def predict(self, latent, timestep, conditioning):
        self.calls.append((tuple(latent.shape), timestep, conditioning.clone()))
        return torch.full(latent.shape, self.eps_value, dtype=latent.dtype)


class ConditionedDenoiser:
    """eps equals the mean of the conditioning, so neg/pos predictions differ."""

    def predict(self, latent, timestep, conditioning):
        per_item = conditioning.reshape(conditioning.shape[0], -1).mean(dim=1)
        return per_item.view(-1, 1, 1, 1).expand(latent.shape).to(latent.dtype).clone()


def _scheduler(kind="euler-karras", pool=None):
    return create_scheduler(kind, pool=pool, config=Config())


def test_fake_denoiser_satisfies_protocol():
    assert isinstance(RecordingDenoiser(), Denoiser)


def test_zero_eps_keeps_scaled_initial_noise():
    denoiser = RecordingDenoiser(0.0)
    pipeline = SamplingPipeline(denoiser, _scheduler())
    noise = torch.randn(SHAPE)

    result = pipeline.sample(noise, 5, positive=torch.ones(1, 2), guidance_scale=1.0)

    assert result.steps_completed == 5
    assert not result.cancelled
    assert torch.allclose(result.latent, noise * result.schedule.sigmas[0], atol=1e-5)


def test_guidance_above_one_runs_two_passes():
    denoiser = RecordingDenoiser()
    pipeline = SamplingPipeline(denoiser, _scheduler())
    positive, negative = torch.ones(1, 2), torch.zeros(1, 2)

    pipeline.sample(torch.randn(SHAPE), 4, positive, negative, guidance_scale=7.5)

    assert len(denoiser.calls) == 8
    assert torch.equal(denoiser.calls[0][2], negative)
    assert torch.equal(denoiser.calls[1][2], positive)
    assert denoiser.calls[0][1] == 999.0


def test_guidance_at_most_one_runs_positive_only():
    denoiser = RecordingDenoiser()
    pipeline = SamplingPipeline(denoiser, _scheduler())

    pipeline.sample(torch.randn(SHAPE), 3, torch.ones(1, 2), torch.zeros(1, 2), guidance_scale=1.0)

    assert len(denoiser.calls) == 3
    assert all(torch.equal(call[2], torch.ones(1, 2)) for call in denoiser.calls)


def test_batched_cfg_matches_two_pass_cfg():
    noise = torch.randn(SHAPE)
    positive, negative = torch.full((1, 3), 0.2), torch.full((1, 3), -0.1)

    two_pass = SamplingPipeline(ConditionedDenoiser(), _scheduler())
    batched = SamplingPipeline(ConditionedDenoiser(), _scheduler(), batch_cfg=True)

    a = two_pass.sample(noise, 4, positive, negative, guidance_scale=5.0)
    b = batched.sample(noise, 4, positive, negative, guidance_scale=5.0)

    assert torch.allclose(a.latent, b.latent, atol=1e-5)


def test_batched_cfg_sends_one_double_batch():
    denoiser = RecordingDenoiser()
    pipeline = SamplingPipeline(denoiser, _scheduler(), batch_cfg=True)

    pipeline.sample(torch.randn(SHAPE), 2, torch.ones(1, 2), torch.zeros(1, 2), guidance_scale=3.0)

    assert len(denoiser.calls) == 2
    assert denoiser.calls[0][0] == (2, 4, 8, 8)


def test_missing_negative_with_guidance_raises():
    pipeline = SamplingPipeline(RecordingDenoiser(), _scheduler())
    with pytest.raises(ValueError):
        pipeline.sample(torch.randn(SHAPE), 3, torch.ones(1, 2), None, guidance_scale=7.5)


def test_cancellation_returns_last_complete_latent():
    token = CancellationToken()
    seen = {}

    def on_step(index, latent):
        seen[index] = latent.clone()
        if index == 2:
            token.cancel("enough")

    pipeline = SamplingPipeline(RecordingDenoiser(0.1), _scheduler())
    result = pipeline.sample(torch.randn(SHAPE), 10, torch.ones(1, 2), guidance_scale=1.0,
                             cancel=token, on_step=on_step)

    assert result.cancelled
    assert result.steps_completed == 3
    assert torch.equal(result.latent, seen[2])


def test_cancelled_before_start_returns_initial_latent():
    token = CancellationToken()
    token.cancel()
    denoiser = RecordingDenoiser()
    noise = torch.randn(SHAPE)

    result = SamplingPipeline(denoiser, _scheduler()).sample(
        noise, 5, torch.ones(1, 2), guidance_scale=1.0, cancel=token
    )

    assert result.steps_completed == 0
    assert denoiser.calls == []
    assert torch.allclose(result.latent, noise * result.schedule.sigmas[0])


def test_denoiser_errors_propagate_unchanged():
    class Broken:
        def predict(self, latent, timestep, conditioning):
            raise RuntimeError("device lost")

    pipeline = SamplingPipeline(Broken(), _scheduler())
    with pytest.raises(RuntimeError, match="device lost"):
        pipeline.sample(torch.randn(SHAPE), 3, torch.ones(1, 2), guidance_scale=1.0)


@pytest.mark.parametrize("kind", ["euler-karras", "heun", "lms", "dpmpp-2m-sde", "ddpm"])
def test_pool_is_reused_across_steps(kind):
    pool = TensorPool()
    monitor = PerformanceMonitor()
    pipeline = SamplingPipeline(ConditionedDenoiser(), _scheduler(kind, pool), pool=pool,
                                monitor=monitor)

    result = pipeline.sample(torch.randn(SHAPE), 8, torch.full((1, 2), 0.1),
                             torch.zeros(1, 2), guidance_scale=7.5)

    assert result.steps_completed == 8
    assert torch.isfinite(result.latent).all()
    stats = pool.stats()
    assert stats.hits > stats.misses, f"{kind}: pool barely reused ({stats})"
    stages = {m.name for m in monitor.stage_metrics()}
    assert {"unet", "guidance", "scheduler_step", "step"} <= stages


def test_progress_callback_counts_steps():
    progress = []
    SamplingPipeline(RecordingDenoiser(), _scheduler()).sample(
        torch.randn(SHAPE), 4, torch.ones(1, 2), guidance_scale=1.0,
        on_progress=lambda done, total: progress.append((done, total)),
    )
    assert progress == [(1, 4), (2, 4), (3, 4), (4, 4)]


def test_decode_latents_undoes_vae_scaling():
    latent = torch.randn(1, 4, 32, 32) * 0.18215

    def decode(tile):
        return F.interpolate(tile[:, :3].float(), scale_factor=8, mode="nearest")

    tiled = decode_latents(latent, 256, 256, decode, tiled=True, tile_size_px=128)
    single = decode_latents(latent, 256, 256, decode, tiled=False)

    expected = decode(latent / 0.18215)
    assert torch.allclose(tiled, expected, atol=1e-4)
    assert torch.allclose(single, expected, atol=1e-4)


def test_noise_generator_and_latent_shape():
    assert latent_shape(512, 768) == [1, 4, 96, 64]
    with pytest.raises(ValueError):
        latent_shape(500, 512)

    generator = NoiseGenerator(seed=42)
    first = generator.randn(latent_shape(64, 64))
    generator.set_seed(42)
    second = generator.randn(latent_shape(64, 64))

    assert torch.equal(first, second)
    assert first.shape == (1, 4, 8, 8)
    assert generator.randn([2, 2], dtype=torch.float16).dtype == torch.float16

    uniform = generator.uniform([1000], low=-1.0, high=1.0)
    assert float(uniform.min()) >= -1.0 and float(uniform.max()) <= 1.0


def test_monitor_counts_pool_reuse_and_creation():
    pool = TensorPool()
    monitor = PerformanceMonitor()
    pipeline = SamplingPipeline(ConditionedDenoiser(), _scheduler("euler-karras", pool), pool=pool,
                                monitor=monitor)

    pipeline.sample(torch.randn(SHAPE), 20, torch.full((1, 2), 0.1), torch.zeros(1, 2),
                    guidance_scale=7.5)

    stats = pool.stats()
    assert monitor.tensor_ops["reuse"] == stats.hits
    assert monitor.tensor_ops["create"] == stats.misses
    assert monitor.tensor_ops["dispose"] == 60
    suggestions = monitor.optimization_suggestions(stats)
    assert not any("Low tensor reuse" in s for s in suggestions), suggestions
    assert not any("hit rate" in s for s in suggestions), suggestions
