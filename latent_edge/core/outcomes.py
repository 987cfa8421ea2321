"""The 8-way possession outcome space shared by labels, network and simulator.

Index order is fixed and used everywhere a transition vector appears::

    0 2pt_make   1 2pt_miss   2 3pt_make   3 3pt_miss
    4 ft_make    5 ft_miss    6 oreb       7 turnover
"""

from __future__ import annotations

from typing import Final, Sequence, Tuple

import numpy as np

from latent_edge.core.errors import InvalidDistributionError

OUTCOME_LABELS: Final[Tuple[str, ...]] = (
    "2pt_make",
    "2pt_miss",
    "3pt_make",
    "3pt_miss",
    "ft_make",
    "ft_miss",
    "oreb",
    "turnover",
)

N_OUTCOMES: Final[int] = len(OUTCOME_LABELS)

TWO_MAKE, TWO_MISS, THREE_MAKE, THREE_MISS, FT_MAKE, FT_MISS, OREB, TURNOVER = range(N_OUTCOMES)

#: Points awarded when a possession terminates in each outcome.
OUTCOME_POINTS: Final[np.ndarray] = np.array([2, 0, 3, 0, 1, 0, 0, 0], dtype=np.int32)
OUTCOME_POINTS.setflags(write=False)

#: Sum tolerance for a valid transition distribution.
DISTRIBUTION_TOLERANCE: Final[float] = 1e-4


def validate_distribution(probs: Sequence[float], tol: float = DISTRIBUTION_TOLERANCE) -> bool:
    """Return True if ``probs`` is a valid 8-way categorical distribution.

    Rejects wrong length, non-finite entries, entries outside ``[0, 1]``,
    and sums deviating from 1 by more than ``tol``.
    """
    try:
        arr = np.asarray(probs, dtype=float)
    except (TypeError, ValueError):
        return False
    if arr.shape != (N_OUTCOMES,):
        return False
    if not np.all(np.isfinite(arr)):
        return False
    if np.any(arr < 0.0) or np.any(arr > 1.0):
        return False
    return abs(float(arr.sum()) - 1.0) <= tol


def require_valid_distribution(
    probs: Sequence[float],
    tol: float = DISTRIBUTION_TOLERANCE,
    what: str = "transition distribution",
) -> np.ndarray:
    """Return ``probs`` as a float array or raise ``InvalidDistributionError``."""
    if not validate_distribution(probs, tol):
        raise InvalidDistributionError(f"Invalid {what}: {list(np.ravel(probs))!r}")
    return np.asarray(probs, dtype=float)


def frozen_label(probs: Sequence[float]) -> np.ndarray:
    """Copy ``probs`` into a read-only float array."""
    arr = np.array(probs, dtype=float)
    arr.setflags(write=False)
    return arr
