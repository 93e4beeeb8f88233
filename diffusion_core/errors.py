"""
Module: diffusion_core.errors
Purpose: Exception types raised by the sampling core

Cancellation is deliberately absent here: a cancelled run returns its last
complete result instead of raising.
"""


class DiffusionCoreError(Exception):
    """Base class for all sampling-core errors."""


class ShapeMismatchError(DiffusionCoreError, ValueError):
    """Two tensors with incompatible dims were combined elementwise."""

    def __init__(self, expected, actual, operation: str = "elementwise op"):
        self.expected = tuple(expected)
        self.actual = tuple(actual)
        self.operation = operation
        super().__init__(
            f"{operation}: shape mismatch, expected {list(self.expected)} got {list(self.actual)}"
        )


class InvalidStepIndexError(DiffusionCoreError, IndexError):
    """Stepping outside the schedule, or before timesteps were generated."""


class DegenerateScheduleError(DiffusionCoreError, ValueError):
    """Schedule parameters cannot produce a valid sigma curve."""


class TensorOwnershipError(DiffusionCoreError, RuntimeError):
    """A pooled tensor was released twice."""


def check_same_shape(a, b, operation: str = "elementwise op") -> None:
    """
    Raise ShapeMismatchError unless both tensors share exactly the same dims.

    No broadcasting is ever attempted.
    """
    if tuple(a.shape) != tuple(b.shape):
        raise ShapeMismatchError(a.shape, b.shape, operation)
