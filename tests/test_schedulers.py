"""
Module: tests.test_schedulers
Purpose: Update rules, state machine and factory of the scheduler family
"""

import sys
from pathlib import Path

import pytest
import torch

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from diffusion_core.config import Config
from diffusion_core.errors import InvalidStepIndexError, ShapeMismatchError
from diffusion_core.schedulers import (
    DDPMScheduler,
    DPMpp2MSDEScheduler,
    EulerScheduler,
    HeunScheduler,
    LMSScheduler,
    SchedulerKind,
    SchedulerPhase,
    SchedulerState,
    available_schedulers,
    create_scheduler,
)
from diffusion_core.schedulers.dpmpp_2m_sde import sde_noise_std
from diffusion_core.utils.tensor_pool import TensorPool

SHAPE = (1, 4, 8, 8)


def _full(value):
    return torch.full(SHAPE, float(value))


# -- Euler ----------------------------------------------------------------------

def test_euler_zero_eps_is_idempotent():
    """eps == 0 means the model already sees x0; the sample must not move."""
    scheduler = EulerScheduler()
    state = SchedulerState()
    scheduler.generate_timesteps(10, state)
    sample = torch.randn(SHAPE)

    for i in range(3):
        out = scheduler.step(torch.zeros(SHAPE), sample, i, state)
        assert torch.allclose(out, sample), f"Sample moved at step {i}"


def test_euler_update_matches_closed_form():
    scheduler = EulerScheduler("linear")
    state = SchedulerState()
    schedule = scheduler.generate_timesteps(5, state)
    sample = torch.randn(SHAPE)
    eps = torch.randn(SHAPE)

    out = scheduler.step(eps, sample, 0, state)

    expected = sample + eps * (schedule.sigmas[1] - schedule.sigmas[0])
    assert torch.allclose(out, expected, rtol=1e-5, atol=1e-4)


def test_scale_model_input_and_initial_noise():
    scheduler = EulerScheduler()
    state = SchedulerState()
    schedule = scheduler.generate_timesteps(4, state)
    sample = torch.ones(SHAPE)

    scaled = scheduler.scale_model_input(sample, 0, state)
    sigma = schedule.sigmas[0]
    assert torch.allclose(scaled, sample / (sigma ** 2 + 1) ** 0.5)

    noise = scheduler.scale_initial_noise(torch.ones(SHAPE), schedule)
    assert torch.allclose(noise, torch.full(SHAPE, sigma))


def test_euler_keeps_half_precision():
    scheduler = EulerScheduler()
    state = SchedulerState()
    scheduler.generate_timesteps(4, state)
    sample = torch.randn(SHAPE, dtype=torch.float16)

    out = scheduler.step(torch.zeros(SHAPE, dtype=torch.float16), sample, 0, state)

    assert out.dtype == torch.float16
    assert torch.equal(out, sample)


def test_euler_names_follow_curve():
    assert EulerScheduler("karras").name == "Euler (Karras)"
    assert EulerScheduler("linear").name == "Euler (Linear)"
    assert EulerScheduler("exponential").name == "Euler (Exponential)"


# -- State machine --------------------------------------------------------------

def test_state_machine_phases():
    scheduler = EulerScheduler()
    state = SchedulerState()
    assert state.phase is SchedulerPhase.UNINITIALIZED

    scheduler.generate_timesteps(2, state)
    assert state.phase is SchedulerPhase.READY

    sample = torch.zeros(SHAPE)
    sample = scheduler.step(torch.zeros(SHAPE), sample, 0, state)
    assert state.phase is SchedulerPhase.STEPPING

    scheduler.step(torch.zeros(SHAPE), sample, 1, state)
    assert state.phase is SchedulerPhase.DONE
    assert state.is_done
    assert state.steps_taken == 2


def test_step_before_generate_timesteps_raises():
    scheduler = EulerScheduler()
    with pytest.raises(InvalidStepIndexError):
        scheduler.step(torch.zeros(SHAPE), torch.zeros(SHAPE), 0, SchedulerState())
    with pytest.raises(InvalidStepIndexError):
        scheduler.scale_model_input(torch.zeros(SHAPE), 0, SchedulerState())


def test_step_index_out_of_range_raises():
    scheduler = EulerScheduler()
    state = SchedulerState()
    scheduler.generate_timesteps(3, state)

    with pytest.raises(InvalidStepIndexError):
        scheduler.step(torch.zeros(SHAPE), torch.zeros(SHAPE), 3, state)
    with pytest.raises(InvalidStepIndexError):
        scheduler.step(torch.zeros(SHAPE), torch.zeros(SHAPE), -1, state)
    # also an IndexError for callers that catch the builtin
    with pytest.raises(IndexError):
        scheduler.step(torch.zeros(SHAPE), torch.zeros(SHAPE), 10, state)


def test_step_after_done_requires_reset():
    scheduler = EulerScheduler()
    state = SchedulerState()
    scheduler.generate_timesteps(1, state)
    scheduler.step(torch.zeros(SHAPE), torch.zeros(SHAPE), 0, state)

    with pytest.raises(InvalidStepIndexError):
        scheduler.step(torch.zeros(SHAPE), torch.zeros(SHAPE), 0, state)

    scheduler.reset(state)
    assert state.phase is SchedulerPhase.READY
    scheduler.step(torch.zeros(SHAPE), torch.zeros(SHAPE), 0, state)


def test_shape_mismatch_raises():
    scheduler = EulerScheduler()
    state = SchedulerState()
    scheduler.generate_timesteps(3, state)

    with pytest.raises(ShapeMismatchError):
        scheduler.step(torch.zeros(1, 4, 8, 4), torch.zeros(SHAPE), 0, state)


# -- Heun -----------------------------------------------------------------------

def test_heun_first_step_is_euler_then_averages():
    scheduler = HeunScheduler()
    state = SchedulerState()
    schedule = scheduler.generate_timesteps(5, state)
    s = schedule.sigmas

    x1 = scheduler.step(_full(1.0), torch.zeros(SHAPE), 0, state)
    assert state.last_order == 1
    assert torch.allclose(x1, _full(s[1] - s[0]), atol=1e-4)

    x2 = scheduler.step(_full(3.0), x1, 1, state)
    assert state.last_order == 2
    expected = x1 + 2.0 * (s[2] - s[1])
    assert torch.allclose(x2, expected, atol=1e-4)
    assert "heun-lite" in scheduler.name


def test_heun_reset_forgets_previous_eps():
    scheduler = HeunScheduler()
    state = SchedulerState()
    scheduler.generate_timesteps(5, state)
    scheduler.step(_full(1.0), torch.zeros(SHAPE), 0, state)
    assert state.prev_model_output is not None

    scheduler.reset(state)

    assert state.prev_model_output is None
    assert state.steps_taken == 0


# -- LMS ------------------------------------------------------------------------

def test_lms_order_ramps_up_until_history_is_full():
    scheduler = LMSScheduler(order=4)
    state = SchedulerState()
    scheduler.generate_timesteps(7, state)
    sample = torch.randn(SHAPE)

    orders = []
    for i in range(6):
        sample = scheduler.step(_full(0.5), sample, i, state)
        orders.append(state.last_order)

    assert orders == [1, 2, 3, 4, 4, 4]
    assert len(state.derivatives) == 4


def test_lms_second_order_coefficients():
    scheduler = LMSScheduler(order=2)
    state = SchedulerState()
    schedule = scheduler.generate_timesteps(4, state)
    s = schedule.sigmas

    x1 = scheduler.step(_full(1.0), torch.zeros(SHAPE), 0, state)
    x2 = scheduler.step(_full(3.0), x1, 1, state)

    # 3/2 * 3 - 1/2 * 1 = 4
    expected = x1 + 4.0 * (s[2] - s[1])
    assert torch.allclose(x2, expected, rtol=1e-4, atol=1e-3)


def test_lms_releases_evicted_derivatives_to_pool():
    pool = TensorPool()
    scheduler = LMSScheduler(order=2, pool=pool)
    state = SchedulerState()
    scheduler.generate_timesteps(5, state)
    sample = torch.zeros(SHAPE)

    for i in range(4):
        sample = scheduler.step(_full(1.0), sample, i, state)

    assert len(state.derivatives) == 2
    assert pool.stats().hits > 0, "Evicted derivatives should be recycled"


@pytest.mark.parametrize("order", [0, 5])
def test_lms_rejects_invalid_order(order):
    with pytest.raises(ValueError):
        LMSScheduler(order=order)


# -- DPM++ 2M SDE ---------------------------------------------------------------

def test_dpmpp_second_order_extrapolation():
    scheduler = DPMpp2MSDEScheduler(eta=0.0)
    state = SchedulerState()
    schedule = scheduler.generate_timesteps(5, state)
    s = schedule.sigmas

    x1 = scheduler.step(_full(1.0), torch.zeros(SHAPE), 0, state)
    assert torch.allclose(x1, _full(s[1] - s[0]), atol=1e-4)

    x2 = scheduler.step(_full(2.0), x1, 1, state)
    r = (s[2] - s[1]) / (s[1] - s[0])
    corrected = 2.0 + r * (2.0 - 1.0)
    assert torch.allclose(x2, x1 + corrected * (s[2] - s[1]), atol=1e-3)
    assert state.last_order == 2


def test_sde_noise_variance_is_clamped():
    assert sde_noise_std(14.6, 10.0, 0.0) == 0.0
    assert sde_noise_std(1.0, 0.0, 1.0) == 0.0
    assert sde_noise_std(14.6, 10.0, 1.0) < 1e-3


def test_dpmpp_is_reproducible_with_generator():
    outputs = []
    for _ in range(2):
        scheduler = DPMpp2MSDEScheduler(eta=1.0, generator=torch.Generator().manual_seed(7))
        state = SchedulerState()
        scheduler.generate_timesteps(3, state)
        outputs.append(scheduler.step(_full(0.3), torch.ones(SHAPE), 0, state))

    assert torch.equal(outputs[0], outputs[1])


# -- DDPM -----------------------------------------------------------------------

def test_ddpm_timesteps_and_sigmas():
    scheduler = DDPMScheduler()
    state = SchedulerState()
    schedule = scheduler.generate_timesteps(4, state)

    assert schedule.timesteps == [999, 666, 333, 0]
    assert schedule.sigmas[-1] == 0.0
    for a, b in zip(schedule.sigmas, schedule.sigmas[1:]):
        assert a > b

    assert scheduler.generate_timesteps(1, SchedulerState()).timesteps == [999]


def test_ddpm_round_trip():
    """Reconstructing pred_x0 and re-noising with the same eps returns x_t."""
    scheduler = DDPMScheduler()
    x_t = torch.randn(SHAPE)
    eps = torch.randn(SHAPE)

    for t in (0, 250, 999):
        pred_x0 = scheduler.predict_original_sample(x_t, eps, t)
        rebuilt = scheduler.add_noise(pred_x0, eps, t)
        assert torch.allclose(rebuilt, x_t, atol=1e-4), f"Round trip failed at t={t}"


def test_ddpm_step_formula_and_identity_scaling():
    scheduler = DDPMScheduler()
    state = SchedulerState()
    schedule = scheduler.generate_timesteps(2, state)
    x = torch.randn(SHAPE)
    eps = torch.randn(SHAPE)

    scaled = scheduler.scale_model_input(x, 0, state)
    assert torch.equal(scaled, x) and scaled is not x
    assert torch.equal(scheduler.scale_initial_noise(x, schedule), x)

    out = scheduler.step(eps, x, 0, state)
    a_t = scheduler.alpha_prod(999)
    a_prev = scheduler.alpha_prod(0)
    pred_x0 = (x - (1 - a_t) ** 0.5 * eps) / a_t ** 0.5
    expected = a_prev ** 0.5 * pred_x0 + (1 - a_prev) ** 0.5 * eps
    assert torch.allclose(out, expected, rtol=1e-4, atol=1e-3)


def test_ddpm_rejects_unknown_beta_schedule():
    with pytest.raises(ValueError):
        DDPMScheduler(beta_schedule="cosine")
    linear = DDPMScheduler(beta_schedule="linear")
    assert float(linear.betas[0]) == pytest.approx(0.00085)


# -- Factory --------------------------------------------------------------------

def test_every_kind_builds_and_steps():
    config = Config()
    assert len(available_schedulers()) == 8

    for kind in available_schedulers():
        scheduler = create_scheduler(kind, config=config)
        state = SchedulerState()
        scheduler.generate_timesteps(3, state)
        sample = torch.randn(SHAPE)
        for i in range(3):
            sample = scheduler.step(torch.zeros(SHAPE), sample, i, state)
        assert state.is_done, f"{kind} did not finish"
        assert torch.isfinite(sample).all()


def test_factory_defaults_and_overrides():
    config = Config()

    assert create_scheduler("lms", config=config).name == "LMS-4"
    assert create_scheduler(SchedulerKind.LMS, config=config, order=2).name == "LMS-2"
    assert create_scheduler("euler-linear", config=config).name == "Euler (Linear)"
    assert create_scheduler("EULER", config=config).name == "Euler (Karras)"
    assert isinstance(create_scheduler("ddpm", config=config), DDPMScheduler)

    with pytest.raises(ValueError, match="Unknown scheduler type"):
        create_scheduler("plms", config=config)


def test_pooled_outputs_are_recycled_across_steps():
    pool = TensorPool()
    scheduler = create_scheduler("euler-karras", pool=pool, config=Config())
    state = SchedulerState()
    scheduler.generate_timesteps(6, state)
    sample = scheduler.scale_initial_noise(torch.randn(SHAPE), state.schedule)

    for i in range(6):
        out = scheduler.step(torch.zeros(SHAPE), sample, i, state)
        pool.release(sample)
        sample = out

    stats = pool.stats()
    assert stats.allocated <= 2
    assert stats.hits >= 5
