"""Tagged transition-matrix variants and the single ingestion boundary.

Matrices reach the simulator in several shapes:

* the 8-way array form: ``{"home": {"transitionProbs": [8 floats]}, ...}``
* the legacy basketball aggregate form: ``{"home": {"scoreProb": 0.52,
  "twoPointProb": 0.6, "threePointProb": 0.3, "freeThrowProb": 0.1,
  "freeThrowPct": 0.75, "turnoverProb": 0.15}, ...}``
* football / hockey aggregate forms keyed by ``scoreProb`` plus
  ``touchdownProb`` etc.

:func:`transition_matrix_from_payload` converts every shape exactly once
into one of three frozen variants.  Nothing downstream inspects payload
shape again; the simulator dispatches on the variant's ``kind``.

Legacy conversion
-----------------
A legacy basketball side describes "score with probability ``s``, then pick
2 / 3 / FT by share".  It maps onto the 8-way outcome space as::

    2pt_make = s·two            3pt_make = s·three
    ft_make  = s·ft·pct         ft_miss  = s·ft·(1 − pct)
    turnover = min(turnoverProb, remaining mass)
    2pt_miss / 3pt_miss = rest of the mass, split by the two/three shot mix
    oreb     = 0

A free-throw make is worth one point in the 8-way space.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Mapping, Optional, Union

import numpy as np

from latent_edge.core.errors import InvalidDistributionError
from latent_edge.core.outcomes import (
    FT_MAKE,
    FT_MISS,
    N_OUTCOMES,
    THREE_MAKE,
    THREE_MISS,
    TURNOVER,
    TWO_MAKE,
    TWO_MISS,
    frozen_label,
    validate_distribution,
)
from latent_edge.core.sport_config import (
    FAMILY_BASKETBALL,
    FAMILY_FOOTBALL,
    FAMILY_HOCKEY,
    SportConfig,
)


# ---------------------------------------------------------------------------
# Per-side profiles for the aggregate families
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DriveProfile:
    """Football: probability a drive scores, then the scoring mix."""

    score_prob: float
    touchdown_prob: float = 0.55
    field_goal_prob: float = 0.35
    safety_prob: float = 0.01
    extra_point_pct: float = 0.95


@dataclass(frozen=True)
class ShotProfile:
    """Hockey: probability a possession produces a goal."""

    score_prob: float


# ---------------------------------------------------------------------------
# Matrix variants
# ---------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class BasketballMatrix:
    """8-way outcome distribution per side."""

    kind: ClassVar[str] = FAMILY_BASKETBALL

    home: np.ndarray
    away: np.ndarray
    possessions: int = 70
    sport: str = "ncaa_basketball"

    def __post_init__(self) -> None:
        for side in ("home", "away"):
            probs = getattr(self, side)
            if not validate_distribution(probs):
                raise InvalidDistributionError(
                    f"{side} transition probabilities are not a valid distribution: "
                    f"{list(np.ravel(probs))!r}"
                )
            object.__setattr__(self, side, frozen_label(probs))
        object.__setattr__(self, "possessions", int(round(self.possessions)))


@dataclass(frozen=True)
class FootballMatrix:
    kind: ClassVar[str] = FAMILY_FOOTBALL

    home: DriveProfile
    away: DriveProfile
    possessions: int = 12
    sport: str = "nfl"


@dataclass(frozen=True)
class HockeyMatrix:
    kind: ClassVar[str] = FAMILY_HOCKEY

    home: ShotProfile
    away: ShotProfile
    possessions: int = 60
    sport: str = "nhl"


TransitionMatrix = Union[BasketballMatrix, FootballMatrix, HockeyMatrix]
MATRIX_TYPES = (BasketballMatrix, FootballMatrix, HockeyMatrix)


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------

def legacy_basketball_probs(side: Mapping[str, Any], config: Optional[SportConfig] = None) -> np.ndarray:
    """Convert one legacy aggregate basketball side to an 8-way vector."""
    cfg = config or SportConfig.ncaa_basketball()
    s = float(np.clip(side.get("scoreProb", cfg.base_score_rate), 0.0, 1.0))
    two = float(side.get("twoPointProb", cfg.two_point_rate))
    three = float(side.get("threePointProb", cfg.three_point_rate))
    ft = float(side.get("freeThrowProb", cfg.free_throw_rate))
    pct = float(np.clip(side.get("freeThrowPct", cfg.free_throw_pct), 0.0, 1.0))

    shares = np.clip(np.array([two, three, ft], dtype=float), 0.0, None)
    if shares.sum() > 1.0:
        shares = shares / shares.sum()
    two, three, ft = shares

    probs = np.zeros(N_OUTCOMES)
    probs[TWO_MAKE] = s * two
    probs[THREE_MAKE] = s * three
    probs[FT_MAKE] = s * ft * pct
    probs[FT_MISS] = s * ft * (1.0 - pct)

    remaining = max(0.0, 1.0 - probs.sum())
    turnover = min(float(side.get("turnoverProb", cfg.turnover_rate)), remaining)
    probs[TURNOVER] = max(0.0, turnover)
    remaining -= probs[TURNOVER]

    mix = two + three
    two_share = two / mix if mix > 0 else 0.5
    probs[TWO_MISS] = remaining * two_share
    probs[THREE_MISS] = remaining * (1.0 - two_share)
    return probs / probs.sum()


def _basketball_side(side: Any, config: SportConfig) -> np.ndarray:
    if isinstance(side, Mapping):
        if "transitionProbs" in side:
            return np.asarray(side["transitionProbs"], dtype=float)
        if "scoreProb" in side:
            return legacy_basketball_probs(side, config)
        raise InvalidDistributionError(f"Unrecognized basketball side payload keys: {sorted(side)}")
    return np.asarray(side, dtype=float)


def _football_side(side: Mapping[str, Any], config: SportConfig) -> DriveProfile:
    return DriveProfile(
        score_prob=float(side["scoreProb"]),
        touchdown_prob=float(side.get("touchdownProb", config.touchdown_share)),
        field_goal_prob=float(side.get("fieldGoalProb", config.field_goal_share)),
        safety_prob=float(side.get("safetyProb", config.safety_share)),
        extra_point_pct=float(side.get("extraPointPct", config.extra_point_pct)),
    )


def transition_matrix_from_payload(
    payload: Union[TransitionMatrix, Mapping[str, Any]],
    default_sport: str = "ncaa_basketball",
) -> TransitionMatrix:
    """Convert any supported matrix payload into its tagged variant.

    Already-converted variants pass straight through.

    Raises:
        UnsupportedSportError: The payload names an unknown sport.
        InvalidDistributionError: A basketball side is not a valid 8-way
            distribution after conversion.
        KeyError / ValueError / TypeError: The payload is malformed.
    """
    if isinstance(payload, MATRIX_TYPES):
        return payload
    if not isinstance(payload, Mapping):
        raise TypeError(f"Transition matrix payload must be a mapping, got {type(payload).__name__}")

    sport = payload.get("sport") or default_sport
    config = SportConfig.for_sport(sport)
    possessions = payload.get("possessions") or config.avg_possessions
    home, away = payload["home"], payload["away"]

    if config.family == FAMILY_BASKETBALL:
        return BasketballMatrix(
            home=_basketball_side(home, config),
            away=_basketball_side(away, config),
            possessions=possessions,
            sport=sport,
        )
    if config.family == FAMILY_FOOTBALL:
        return FootballMatrix(
            home=_football_side(home, config),
            away=_football_side(away, config),
            possessions=int(round(possessions)),
            sport=sport,
        )
    return HockeyMatrix(
        home=ShotProfile(score_prob=float(home["scoreProb"])),
        away=ShotProfile(score_prob=float(away["scoreProb"])),
        possessions=int(round(possessions)),
        sport=sport,
    )


def matrix_to_payload(matrix: TransitionMatrix) -> Dict[str, Any]:
    """Serialize a variant back to the array / aggregate payload form."""
    if isinstance(matrix, BasketballMatrix):
        return {
            "sport": matrix.sport,
            "possessions": matrix.possessions,
            "home": {"transitionProbs": [float(p) for p in matrix.home]},
            "away": {"transitionProbs": [float(p) for p in matrix.away]},
        }
    if isinstance(matrix, FootballMatrix):
        def _side(p: DriveProfile) -> Dict[str, float]:
            return {
                "scoreProb": p.score_prob,
                "touchdownProb": p.touchdown_prob,
                "fieldGoalProb": p.field_goal_prob,
                "safetyProb": p.safety_prob,
                "extraPointPct": p.extra_point_pct,
            }
        return {
            "sport": matrix.sport,
            "possessions": matrix.possessions,
            "home": _side(matrix.home),
            "away": _side(matrix.away),
        }
    return {
        "sport": matrix.sport,
        "possessions": matrix.possessions,
        "home": {"scoreProb": matrix.home.score_prob},
        "away": {"scoreProb": matrix.away.score_prob},
    }
