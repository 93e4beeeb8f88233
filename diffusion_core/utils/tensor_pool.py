"""
Module: diffusion_core.utils.tensor_pool
Purpose: Keyed recycler for fixed-shape buffers reused across sampling steps
Dependencies: torch

A pool is an explicit object handed to every component that needs scratch
tensors. It is single-consumer: one generation, one thread. Concurrent
generations each get their own pool.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Union
import logging

import torch

from diffusion_core.errors import TensorOwnershipError

logger = logging.getLogger(__name__)

PoolKey = Tuple[torch.dtype, Tuple[int, ...], str]

_DTYPE_ALIASES = {
    "f16": torch.float16,
    "float16": torch.float16,
    "half": torch.float16,
    "f32": torch.float32,
    "float32": torch.float32,
    "float": torch.float32,
}


def resolve_dtype(dtype: Union[str, torch.dtype]) -> torch.dtype:
    """Map "f16"/"f32" style names onto torch dtypes."""
    if isinstance(dtype, torch.dtype):
        if dtype not in (torch.float16, torch.float32):
            raise ValueError(f"Unsupported pool dtype: {dtype}")
        return dtype
    try:
        return _DTYPE_ALIASES[dtype.lower()]
    except KeyError:
        raise ValueError(f"Unsupported pool dtype: {dtype}") from None


def normalize_device(device: Union[str, torch.device]) -> torch.device:
    """
    Device as tensors report it.

    A bare "cuda" or "mps" gets its index filled in (tensors on it report
    cuda:N / mps:0); CPU never carries one.
    """
    device = torch.device(device)
    if device.type == "cpu":
        return torch.device("cpu")
    if device.index is None:
        index = torch.cuda.current_device() if device.type == "cuda" else 0
        return torch.device(device.type, index)
    return device


@dataclass
class PoolStats:
    """Snapshot of pool counters."""
    allocated: int
    reused: int
    hits: int
    misses: int
    pooled: int
    keys: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return (self.hits / total) * 100 if total else 0.0


class TensorPool:
    """
    Keyed allocator that recycles buffers by (dtype, dims, device).

    acquire() pops a matching buffer and zeroes it, or allocates a new one.
    release() hands the buffer back; once the per-key list is at capacity
    the buffer is simply dropped.

    Example:
        >>> pool = TensorPool(capacity=4)
        >>> t = pool.acquire("f32", (1, 4, 64, 64))
        >>> pool.release(t)
        >>> again = pool.acquire("f32", (1, 4, 64, 64))
        >>> bool(again.abs().sum() == 0)
        True
    """

    def __init__(self, capacity: int = 10, device: Optional[Union[str, torch.device]] = None):
        if capacity < 0:
            raise ValueError("Pool capacity must be >= 0")
        self.capacity = capacity
        self.device = normalize_device(device) if device is not None else torch.device("cpu")
        self._pools: Dict[PoolKey, List[torch.Tensor]] = {}
        # ids of tensors currently owned by the pool
        self._owned: Dict[int, PoolKey] = {}
        self._allocated = 0
        self._reused = 0
        self._hits = 0
        self._misses = 0

    def _key(self, dtype: torch.dtype, dims: Sequence[int], device: torch.device) -> PoolKey:
        return (dtype, tuple(int(d) for d in dims), str(normalize_device(device)))

    def acquire(
        self,
        dtype: Union[str, torch.dtype],
        dims: Sequence[int],
        device: Optional[Union[str, torch.device]] = None,
    ) -> torch.Tensor:
        """
        Get a zero-filled tensor of the given dtype and dims.

        Args:
            dtype: torch.float16/torch.float32 or "f16"/"f32"
            dims: Tensor shape
            device: Placement (defaults to the pool's device)

        Returns:
            A tensor the caller now owns exclusively
        """
        dtype = resolve_dtype(dtype)
        device = normalize_device(device) if device is not None else self.device
        key = self._key(dtype, dims, device)
        pool = self._pools.get(key)

        if pool:
            tensor = pool.pop()
            del self._owned[id(tensor)]
            tensor.zero_()
            self._reused += 1
            self._hits += 1
            return tensor

        self._allocated += 1
        self._misses += 1
        return torch.zeros(key[1], dtype=dtype, device=device)

    def acquire_like(self, tensor: torch.Tensor) -> torch.Tensor:
        """Acquire a zeroed buffer matching another tensor's dtype, dims and device."""
        return self.acquire(tensor.dtype, tensor.shape, tensor.device)

    def clone(self, tensor: torch.Tensor) -> torch.Tensor:
        """Acquire a buffer and copy tensor into it."""
        out = self.acquire_like(tensor)
        out.copy_(tensor)
        return out

    def release(self, tensor: torch.Tensor) -> None:
        """
        Return a tensor to the pool.

        Ownership transfers to the pool: the caller must drop its reference
        and must not write to the buffer again.

        Raises:
            TensorOwnershipError: If the tensor is already sitting in the pool
        """
        if id(tensor) in self._owned:
            raise TensorOwnershipError(
                f"Tensor {list(tensor.shape)} ({tensor.dtype}) released twice"
            )

        key = self._key(tensor.dtype, tensor.shape, tensor.device)
        pool = self._pools.setdefault(key, [])
        if len(pool) < self.capacity:
            pool.append(tensor)
            self._owned[id(tensor)] = key
        else:
            logger.debug(f"Pool full for {list(key[1])} {key[0]}, discarding buffer")

    def pooled_count(self, dtype: Union[str, torch.dtype], dims: Sequence[int],
                     device: Optional[Union[str, torch.device]] = None) -> int:
        """Number of buffers currently waiting under one key."""
        device = normalize_device(device) if device is not None else self.device
        return len(self._pools.get(self._key(resolve_dtype(dtype), dims, device), []))

    def stats(self) -> PoolStats:
        """Get pool statistics."""
        return PoolStats(
            allocated=self._allocated,
            reused=self._reused,
            hits=self._hits,
            misses=self._misses,
            pooled=sum(len(p) for p in self._pools.values()),
            keys=len(self._pools),
        )

    def set_capacity(self, capacity: int) -> None:
        """Change the per-key capacity, trimming lists that now exceed it."""
        if capacity < 0:
            raise ValueError("Pool capacity must be >= 0")
        self.capacity = capacity
        for pool in self._pools.values():
            while len(pool) > capacity:
                dropped = pool.pop()
                del self._owned[id(dropped)]

    def clear(self) -> None:
        """Drop every pooled buffer and reset counters."""
        self._pools.clear()
        self._owned.clear()
        self._allocated = 0
        self._reused = 0
        self._hits = 0
        self._misses = 0

    def __len__(self) -> int:
        return sum(len(p) for p in self._pools.values())

    def __repr__(self) -> str:
        return f"TensorPool(capacity={self.capacity}, pooled={len(self)}, keys={len(self._pools)})"
