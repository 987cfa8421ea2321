"""Sport-level configuration: all sport-specific constants in one place.

This module is the **registry** for every constant that differs between
sports.  Nowhere else in the codebase should possession counts, home-court
figures, or box-score fallback rates be hard-coded.

Architecture
------------
:class:`SportConfig` is a frozen dataclass carrying all per-sport constants.
Named constructors (:meth:`SportConfig.ncaa_basketball`,
:meth:`SportConfig.nba`, ...) return pre-populated instances and
:meth:`SportConfig.for_sport` resolves a sport id string.  To add a new sport:

1. Add a ``@classmethod`` constructor here.
2. Register it in ``_CONSTRUCTORS``.
3. Teach :mod:`latent_edge.core.transition_matrix` its matrix variant if the
   sport does not fit one of the existing families.

An unknown sport id is the only *fatal* configuration error in the engine;
:meth:`for_sport` raises :class:`~latent_edge.core.errors.UnsupportedSportError`.

Typical usage::

    from latent_edge.core.sport_config import SportConfig

    cfg = SportConfig.for_sport("ncaa_basketball")

    # Override a single constant:
    from dataclasses import replace
    custom_cfg = replace(cfg, home_advantage_pts=3.0)
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Final

from latent_edge.core.errors import UnsupportedSportError


#: Sport identifier strings used in API routes and DB records.
SPORT_ID_NCAAB: Final[str] = "ncaa_basketball"
SPORT_ID_NBA: Final[str] = "nba"
SPORT_ID_NFL: Final[str] = "nfl"
SPORT_ID_NCAAF: Final[str] = "ncaa_football"
SPORT_ID_NHL: Final[str] = "nhl"

#: Matrix families.  Each family maps to one transition-matrix variant.
FAMILY_BASKETBALL: Final[str] = "basketball"
FAMILY_FOOTBALL: Final[str] = "football"
FAMILY_HOCKEY: Final[str] = "hockey"


@dataclass(frozen=True)
class SportConfig:
    """Immutable configuration bundle for a single sport.

    Attributes:
        sport_id: Identifier string (``"ncaa_basketball"``, ``"nba"``, ...).
        sport_name: Human-readable name for logging.
        family: Matrix family (``"basketball"``, ``"football"``, ``"hockey"``).

        --- Game shape ---
        avg_possessions: Possessions (drives, shot opportunities) per team
            per game used when no pace data is available.
        home_advantage_pts: Expected margin boost for the home team.
            Neutral-site games zero this via :meth:`neutral_site`.

        --- Box-score fallbacks (basketball) ---
        two_point_rate / three_point_rate / free_throw_rate: Attempt shares
            used when a team has no field-goal attempts on record.
        two_point_pct / three_point_pct / free_throw_pct: Make percentages
            used when the corresponding attempts are zero.
        turnover_rate: Turnovers per possession when possessions are unknown.
        oreb_rate: Offensive rebound rate when no rebounds are on record.
        turnover_cap / oreb_cap: Hard caps on the derived rates.

        --- Aggregate scoring (all families) ---
        base_efficiency: League-average efficiency used to scale
            offence-vs-defence ratios (points per 100 possessions for
            basketball, points per game for football, goals for hockey).
        base_score_rate: Default per-possession scoring rate when no
            shooting data is available.
        score_prob_floor / score_prob_ceiling: Clamp bounds for the derived
            per-possession scoring probability.
        form_bonus_scale: Scoring-probability swing across the full range
            of recent form (0 → 1 win rate).

        --- Football scoring mix ---
        touchdown_share / field_goal_share / safety_share: Conditional
            distribution of points given a scoring drive.
        extra_point_pct: Probability the try after a touchdown is good.
    """

    # Identity
    sport_id: str
    sport_name: str
    family: str

    # Game shape
    avg_possessions: int
    home_advantage_pts: float

    # Box-score fallbacks
    two_point_rate: float = 0.60
    three_point_rate: float = 0.30
    free_throw_rate: float = 0.10
    two_point_pct: float = 0.50
    three_point_pct: float = 0.33
    free_throw_pct: float = 0.75
    turnover_rate: float = 0.15
    oreb_rate: float = 0.30
    turnover_cap: float = 0.50
    oreb_cap: float = 0.60

    # Aggregate scoring
    base_efficiency: float = 100.0
    base_score_rate: float = 0.50
    score_prob_floor: float = 0.05
    score_prob_ceiling: float = 0.95
    form_bonus_scale: float = 0.05

    # Football scoring mix
    touchdown_share: float = 0.55
    field_goal_share: float = 0.35
    safety_share: float = 0.01
    extra_point_pct: float = 0.95

    # ------------------------------------------------------------------ #
    #  Named constructors                                                  #
    # ------------------------------------------------------------------ #

    @classmethod
    def ncaa_basketball(cls) -> SportConfig:
        """NCAA D1 basketball: 70 possessions, 3.5 pt home court."""
        return cls(
            sport_id=SPORT_ID_NCAAB,
            sport_name="NCAA Basketball",
            family=FAMILY_BASKETBALL,
            avg_possessions=70,
            home_advantage_pts=3.5,
        )

    @classmethod
    def nba(cls) -> SportConfig:
        """NBA: 100 possessions, 3.0 pt home court, better FT shooting."""
        return cls(
            sport_id=SPORT_ID_NBA,
            sport_name="NBA",
            family=FAMILY_BASKETBALL,
            avg_possessions=100,
            home_advantage_pts=3.0,
            three_point_rate=0.40,
            two_point_rate=0.50,
            three_point_pct=0.36,
            free_throw_pct=0.78,
            turnover_rate=0.13,
            oreb_rate=0.27,
            base_efficiency=112.0,
        )

    @classmethod
    def nfl(cls) -> SportConfig:
        """NFL: 12 drives per team, 2.5 pt home field."""
        return cls(
            sport_id=SPORT_ID_NFL,
            sport_name="NFL",
            family=FAMILY_FOOTBALL,
            avg_possessions=12,
            home_advantage_pts=2.5,
            base_efficiency=20.0,
            base_score_rate=0.40,
        )

    @classmethod
    def ncaa_football(cls) -> SportConfig:
        """NCAA football: 12 drives per team, 3.0 pt home field."""
        return cls(
            sport_id=SPORT_ID_NCAAF,
            sport_name="NCAA Football",
            family=FAMILY_FOOTBALL,
            avg_possessions=12,
            home_advantage_pts=3.0,
            base_efficiency=20.0,
            base_score_rate=0.40,
        )

    @classmethod
    def nhl(cls) -> SportConfig:
        """NHL: 60 shot opportunities per team, 0.5 goal home ice."""
        return cls(
            sport_id=SPORT_ID_NHL,
            sport_name="NHL",
            family=FAMILY_HOCKEY,
            avg_possessions=60,
            home_advantage_pts=0.5,
            base_efficiency=3.0,
            base_score_rate=0.10,
            score_prob_floor=0.01,
            score_prob_ceiling=0.50,
            form_bonus_scale=0.02,
        )

    @classmethod
    def for_sport(cls, sport_id: str) -> SportConfig:
        """Resolve a sport id to its configuration.

        Raises:
            UnsupportedSportError: If ``sport_id`` is not registered.
        """
        try:
            factory = _CONSTRUCTORS[sport_id]
        except KeyError:
            raise UnsupportedSportError(
                f"Unsupported sport {sport_id!r}; expected one of "
                f"{sorted(_CONSTRUCTORS)}"
            ) from None
        return factory()

    # ------------------------------------------------------------------ #
    #  Convenience accessors                                               #
    # ------------------------------------------------------------------ #

    def is_basketball(self) -> bool:
        """Return True if this config represents a basketball sport."""
        return self.family == FAMILY_BASKETBALL

    def neutral_site(self) -> SportConfig:
        """Return a copy of this config with home advantage zeroed out."""
        return replace(self, home_advantage_pts=0.0)

    def __repr__(self) -> str:
        return (
            f"SportConfig(sport_id={self.sport_id!r}, "
            f"family={self.family!r}, "
            f"possessions={self.avg_possessions}, "
            f"home_adv={self.home_advantage_pts})"
        )


_CONSTRUCTORS = {
    SPORT_ID_NCAAB: SportConfig.ncaa_basketball,
    SPORT_ID_NBA: SportConfig.nba,
    SPORT_ID_NFL: SportConfig.nfl,
    SPORT_ID_NCAAF: SportConfig.ncaa_football,
    SPORT_ID_NHL: SportConfig.nhl,
}

SUPPORTED_SPORTS: Final[tuple] = tuple(_CONSTRUCTORS)
