"""
Transition label computer.

Turns a game's play-by-play log into the ground-truth 8-way possession
outcome distribution for each side.  These labels are the training targets
for the transition network, the positives / negatives for contrastive
pretraining, and the observations the posterior updater folds in.

Play-by-play events carry four fields::

    team    team id that performed the action
    vh      side, "H" (home) or "V" (visitor)
    action  GOOD | MISS | REBOUND | TURNOVER   (other actions are ignored)
    type    shot type for GOOD / MISS:  LAYUP JUMPER DUNK TIPIN HOOK (two),
            3PTR (three), FT (free throw);  OFF / DEF for REBOUND

A "possession-ending event" is any counted event except a defensive
rebound, which belongs to the other side's possession.  Probabilities are
counts over that total.

Usage::

    labels = compute_game_labels(pbp_df, home_team_id="duke", away_team_id="unc")
    labels.home        # np.ndarray(8), read-only, sums to 1
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Union

import numpy as np
import pandas as pd

from latent_edge.core.outcomes import (
    DISTRIBUTION_TOLERANCE,
    N_OUTCOMES,
    frozen_label,
    require_valid_distribution,
    validate_distribution,
)

logger = logging.getLogger(__name__)

TWO_POINT_TYPES = frozenset({"LAYUP", "JUMPER", "DUNK", "TIPIN", "HOOK"})
THREE_POINT_TYPE = "3PTR"
FREE_THROW_TYPE = "FT"

PlayByPlay = Union[pd.DataFrame, Iterable[Mapping]]

# Re-exported so callers validate labels through this module.
__all__ = [
    "OutcomeCounts",
    "GameLabels",
    "count_outcomes",
    "calculate_transition_probabilities",
    "compute_game_labels",
    "validate_distribution",
    "require_valid_distribution",
]


# ---------------------------------------------------------------------------
# Counts
# ---------------------------------------------------------------------------

@dataclass
class OutcomeCounts:
    """Raw event counts for one side of one game."""

    two_point_makes: int = 0
    two_point_misses: int = 0
    three_point_makes: int = 0
    three_point_misses: int = 0
    free_throw_makes: int = 0
    free_throw_misses: int = 0
    offensive_rebounds: int = 0
    defensive_rebounds: int = 0
    turnovers: int = 0

    def as_vector(self) -> np.ndarray:
        """Counts in outcome-index order (defensive rebounds excluded)."""
        return np.array([
            self.two_point_makes,
            self.two_point_misses,
            self.three_point_makes,
            self.three_point_misses,
            self.free_throw_makes,
            self.free_throw_misses,
            self.offensive_rebounds,
            self.turnovers,
        ], dtype=float)

    @property
    def total_possessions(self) -> int:
        return int(self.as_vector().sum())


@dataclass
class GameLabels:
    """Both sides' labels for one game."""

    home: np.ndarray
    away: np.ndarray
    home_counts: OutcomeCounts = field(default_factory=OutcomeCounts, repr=False)
    away_counts: OutcomeCounts = field(default_factory=OutcomeCounts, repr=False)

    def to_payload(self) -> dict:
        return {
            "home": [float(p) for p in self.home],
            "away": [float(p) for p in self.away],
        }


def _as_frame(plays: PlayByPlay) -> pd.DataFrame:
    if isinstance(plays, pd.DataFrame):
        return plays
    return pd.DataFrame(list(plays), columns=["team", "vh", "action", "type"])


def count_outcomes(plays: PlayByPlay, team_id: str, side: str) -> OutcomeCounts:
    """Count possession outcomes for ``team_id`` playing on ``side`` (H / V)."""
    df = _as_frame(plays)
    if df.empty:
        return OutcomeCounts()

    mine = df[(df["team"].astype(str) == str(team_id)) & (df["vh"] == side)]
    action = mine["action"].astype(str).str.upper()
    kind = mine["type"].fillna("").astype(str).str.upper()

    made = action == "GOOD"
    missed = action == "MISS"
    is_two = kind.isin(TWO_POINT_TYPES)
    is_three = kind == THREE_POINT_TYPE
    is_ft = kind == FREE_THROW_TYPE
    rebound = action == "REBOUND"

    return OutcomeCounts(
        two_point_makes=int((made & is_two).sum()),
        two_point_misses=int((missed & is_two).sum()),
        three_point_makes=int((made & is_three).sum()),
        three_point_misses=int((missed & is_three).sum()),
        free_throw_makes=int((made & is_ft).sum()),
        free_throw_misses=int((missed & is_ft).sum()),
        offensive_rebounds=int((rebound & (kind == "OFF")).sum()),
        defensive_rebounds=int((rebound & (kind == "DEF")).sum()),
        turnovers=int((action == "TURNOVER").sum()),
    )


# ---------------------------------------------------------------------------
# Probabilities
# ---------------------------------------------------------------------------

def calculate_transition_probabilities(counts: Union[OutcomeCounts, Iterable[float]]) -> np.ndarray:
    """
    Convert counts to an 8-way distribution.

    Zero total possessions returns the all-zero vector (not NaN).  Any
    floating-point drift beyond the distribution tolerance is normalized
    away so the result sums to 1.
    """
    vec = counts.as_vector() if isinstance(counts, OutcomeCounts) else np.asarray(list(counts), dtype=float)
    if vec.shape != (N_OUTCOMES,):
        raise ValueError(f"Expected {N_OUTCOMES} outcome counts, got shape {vec.shape}")
    if np.any(vec < 0):
        raise ValueError(f"Outcome counts must be non-negative: {vec.tolist()}")

    total = vec.sum()
    if total == 0:
        return frozen_label(np.zeros(N_OUTCOMES))

    probs = vec / total
    drift = abs(probs.sum() - 1.0)
    if drift > DISTRIBUTION_TOLERANCE:
        probs = probs / probs.sum()
    return frozen_label(probs)


def compute_game_labels(plays: PlayByPlay, home_team_id: str, away_team_id: str) -> GameLabels:
    """Labels for both sides of one game."""
    df = _as_frame(plays)
    home_counts = count_outcomes(df, home_team_id, "H")
    away_counts = count_outcomes(df, away_team_id, "V")

    labels = GameLabels(
        home=calculate_transition_probabilities(home_counts),
        away=calculate_transition_probabilities(away_counts),
        home_counts=home_counts,
        away_counts=away_counts,
    )
    logger.debug(
        "Computed transition labels home=%s (%d poss) away=%s (%d poss)",
        home_team_id, home_counts.total_possessions,
        away_team_id, away_counts.total_possessions,
    )
    return labels
