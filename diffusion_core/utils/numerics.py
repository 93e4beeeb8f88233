"""
Debug-mode NaN/Inf detection.

Numerical drift is a quality problem, not a correctness fault, so these
helpers only log. They never raise.
"""

from typing import Optional
import logging

import torch

logger = logging.getLogger(__name__)


def find_first_nonfinite(tensor: torch.Tensor) -> Optional[int]:
    """Flat index of the first NaN/Inf element, or None if every value is finite."""
    bad = ~torch.isfinite(tensor.reshape(-1))
    if not bool(bad.any()):
        return None
    return int(torch.nonzero(bad, as_tuple=False)[0].item())


def check_finite(tensor: torch.Tensor, label: str) -> bool:
    """
    Log a warning naming the first non-finite sample index.

    Returns:
        True when every element is finite
    """
    index = find_first_nonfinite(tensor)
    if index is None:
        return True
    value = tensor.reshape(-1)[index].item()
    logger.warning(f"{label}: non-finite value {value} at flat index {index}")
    return False
