"""
Module: tests.test_tensor_pool
Purpose: Buffer reuse, zeroing, capacity and ownership rules of TensorPool
"""

import sys
from pathlib import Path

import pytest
import torch

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from diffusion_core.errors import TensorOwnershipError
from diffusion_core.utils.tensor_pool import TensorPool, normalize_device, resolve_dtype


def test_reacquired_buffer_is_zeroed():
    """A recycled buffer never leaks its previous contents."""
    pool = TensorPool()
    first = pool.acquire("f32", (1, 4, 8, 8))
    first.fill_(3.5)
    pool.release(first)

    again = pool.acquire("f32", (1, 4, 8, 8))

    assert again is first, "Expected the released buffer to be reused"
    assert torch.count_nonzero(again) == 0


def test_keys_separate_dtype_and_dims():
    pool = TensorPool()
    half = pool.acquire(torch.float16, (2, 2))
    pool.release(half)

    other_dims = pool.acquire(torch.float16, (2, 3))
    other_dtype = pool.acquire(torch.float32, (2, 2))

    assert other_dims is not half
    assert other_dtype is not half
    assert other_dtype.dtype == torch.float32
    assert pool.pooled_count("f16", (2, 2)) == 1


def test_capacity_per_key_is_never_exceeded():
    pool = TensorPool(capacity=2)
    buffers = [pool.acquire("f32", (4,)) for _ in range(5)]
    for buffer in buffers:
        pool.release(buffer)

    assert pool.pooled_count("f32", (4,)) == 2
    assert len(pool) == 2


def test_double_release_raises():
    pool = TensorPool()
    tensor = pool.acquire("f32", (3, 3))
    pool.release(tensor)

    with pytest.raises(TensorOwnershipError):
        pool.release(tensor)


def test_release_after_reacquire_is_allowed():
    pool = TensorPool()
    tensor = pool.acquire("f32", (3,))
    pool.release(tensor)
    tensor = pool.acquire("f32", (3,))
    pool.release(tensor)

    assert pool.pooled_count("f32", (3,)) == 1


def test_stats_track_hits_and_misses():
    pool = TensorPool()
    a = pool.acquire("f32", (2,))
    pool.release(a)
    pool.acquire("f32", (2,))
    pool.acquire("f32", (2,))

    stats = pool.stats()
    assert stats.allocated == 2
    assert stats.reused == 1
    assert stats.hits == 1
    assert stats.misses == 2
    assert stats.hit_rate == pytest.approx(100 / 3)


def test_set_capacity_trims_and_clear_resets():
    pool = TensorPool(capacity=4)
    for buffer in [pool.acquire("f32", (2,)) for _ in range(4)]:
        pool.release(buffer)

    pool.set_capacity(1)
    assert pool.pooled_count("f32", (2,)) == 1

    pool.clear()
    assert len(pool) == 0
    assert pool.stats().misses == 0


def test_clone_and_acquire_like():
    pool = TensorPool()
    source = torch.arange(6, dtype=torch.float32).reshape(2, 3)

    copy = pool.clone(source)
    like = pool.acquire_like(source)

    assert torch.equal(copy, source)
    assert copy is not source
    assert like.shape == source.shape and like.dtype == source.dtype


def test_dtype_aliases():
    assert resolve_dtype("f16") is torch.float16
    assert resolve_dtype("F32") is torch.float32
    with pytest.raises(ValueError):
        resolve_dtype("int8")
    with pytest.raises(ValueError):
        resolve_dtype(torch.int64)
    with pytest.raises(ValueError):
        TensorPool(capacity=-1)


def test_bare_accelerator_device_keys_like_its_tensors():
    """Tensors on "mps" report mps:0, so both spellings must share a key."""
    pool = TensorPool()

    assert normalize_device("mps") == torch.device("mps", 0)
    assert normalize_device(torch.device("mps", 0)) == torch.device("mps", 0)
    assert normalize_device("cpu") == torch.device("cpu")
    assert pool._key(torch.float32, (2,), torch.device("mps")) == pool._key(torch.float32, (2,), "mps:0")
    assert pool._key(torch.float32, (2,), torch.device("cpu")) == pool._key(torch.float32, (2,), "cpu")
    assert TensorPool(device="mps").device == torch.device("mps", 0)


@pytest.mark.skipif(not torch.cuda.is_available(), reason="needs CUDA")
def test_bare_cuda_device_recycles_buffers():
    pool = TensorPool(device="cuda")
    tensor = pool.acquire("f32", (4, 4))
    pool.release(tensor)

    assert pool.acquire("f32", (4, 4)) is tensor
