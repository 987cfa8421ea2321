"""
Fallback transition matrices from aggregate team statistics.

When the latent path cannot run (no posterior yet, no trained network) the
simulator still needs a matrix.  This module builds one from numbers that
are always available:

* **Box scores** (:meth:`TransitionMatrixBuilder.build_from_box_scores`):
  a full 8-way distribution per side from shot attempts, makes, rebounds
  and turnovers.
* **Season aggregates** (:meth:`TransitionMatrixBuilder.build_matrix`):
  a scoring probability from effective FG% (offence vs the opponent's
  defence) plus a small recent-form bonus, clamped to the sport's range.
* **Nothing** (:meth:`TransitionMatrixBuilder.generic_matrix`): league
  defaults with the home-court adjustment.

Every function here is pure: same aggregates in, same matrix out.

Basketball box-score conversion::

    turnover      = min(TO / possessions, 0.50)
    shares        = (2PA, 3PA, FTA) / Σ               (non-turnover mass split)
    make / miss   = share · pct  /  share · (1 − pct)
    oreb          = ORB rate · (2pt_miss + 3pt_miss)   (min(ORB / total REB, 0.60))

Home advantage moves ``pts / (2·possessions)`` of probability from 2pt_miss
to 2pt_make: each flipped possession is worth two points, so over
``possessions`` trips the home side gains ``pts`` on average.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np

from latent_edge.core.outcomes import (
    FT_MAKE,
    FT_MISS,
    N_OUTCOMES,
    OREB,
    THREE_MAKE,
    THREE_MISS,
    TURNOVER,
    TWO_MAKE,
    TWO_MISS,
    frozen_label,
)
from latent_edge.core.sport_config import FAMILY_BASKETBALL, FAMILY_FOOTBALL, SportConfig
from latent_edge.core.transition_matrix import (
    BasketballMatrix,
    DriveProfile,
    FootballMatrix,
    HockeyMatrix,
    ShotProfile,
    TransitionMatrix,
    legacy_basketball_probs,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------

@dataclass
class TeamBoxScore:
    """
    Box-score totals and/or season aggregates for one team.

    Box-score fields drive :func:`basketball_outcome_probs`; the aggregate
    fields (efficiencies, eFG%, rates, recent form) drive
    :meth:`TransitionMatrixBuilder.build_matrix`.  Missing values fall back
    to the sport's league defaults.

    ``recent_form`` holds recent results as 1.0 (win) / 0.0 (loss).
    """

    team: str = ""
    fgm: int = 0
    fga: int = 0
    fg3m: int = 0
    fg3a: int = 0
    ftm: int = 0
    fta: int = 0
    oreb: int = 0
    rebounds: int = 0
    turnovers: int = 0
    possessions: Optional[float] = None
    pace: Optional[float] = None
    points: Optional[int] = None

    offensive_efficiency: Optional[float] = None
    defensive_efficiency: Optional[float] = None
    effective_fg_pct: Optional[float] = None
    turnover_rate: Optional[float] = None
    offensive_rebound_rate: Optional[float] = None
    free_throw_pct: Optional[float] = None
    recent_form: List[float] = field(default_factory=list)


@dataclass(frozen=True)
class ShotDistribution:
    two_point_rate: float
    three_point_rate: float
    free_throw_rate: float
    two_point_pct: float
    three_point_pct: float
    free_throw_pct: float


# ---------------------------------------------------------------------------
# Rate helpers
# ---------------------------------------------------------------------------

def estimate_possessions(fga: int, oreb: int, to: int, fta: int) -> float:
    """
    Estimate possessions from box-score stats.

    Formula: Poss ≈ FGA - OREB + TO + 0.475 * FTA
    """
    return fga - oreb + to + 0.475 * fta


def extract_shot_distribution(box: TeamBoxScore, config: Optional[SportConfig] = None) -> ShotDistribution:
    """Attempt rates (FT rate is FTA/FGA) and per-type percentages."""
    cfg = config or SportConfig.ncaa_basketball()
    fga = box.fga or 0
    fg2a = fga - (box.fg3a or 0)
    if fga <= 0:
        return ShotDistribution(
            cfg.two_point_rate, cfg.three_point_rate, cfg.free_throw_rate,
            cfg.two_point_pct, cfg.three_point_pct, cfg.free_throw_pct,
        )
    return ShotDistribution(
        two_point_rate=fg2a / fga,
        three_point_rate=(box.fg3a or 0) / fga,
        free_throw_rate=(box.fta or 0) / fga,
        two_point_pct=(box.fgm - box.fg3m) / fg2a if fg2a > 0 else cfg.two_point_pct,
        three_point_pct=box.fg3m / box.fg3a if box.fg3a else cfg.three_point_pct,
        free_throw_pct=box.ftm / box.fta if box.fta else cfg.free_throw_pct,
    )


def turnover_rate(turnovers: float, possessions: float, cap: float = 0.50, default: float = 0.15) -> float:
    if not possessions or possessions <= 0:
        return default
    return min(cap, turnovers / possessions)


def offensive_rebound_rate(
    offensive_rebounds: float,
    team_rebounds: float,
    opponent_rebounds: float,
    cap: float = 0.60,
    default: float = 0.30,
) -> float:
    total = (team_rebounds or 0) + (opponent_rebounds or 0)
    if total <= 0:
        return default
    return min(cap, offensive_rebounds / total)


def _form_bonus(recent_form: Sequence[float], scale: float) -> float:
    if not recent_form:
        return 0.0
    return (float(np.mean(recent_form)) - 0.5) * scale


def _with_offensive_rebounds(probs: np.ndarray, rate: float) -> np.ndarray:
    """Convert ``rate`` of the field-goal miss mass into offensive rebounds."""
    out = np.array(probs, dtype=float)
    for idx in (TWO_MISS, THREE_MISS):
        moved = out[idx] * rate
        out[idx] -= moved
        out[OREB] += moved
    return out


def apply_home_advantage(probs: Sequence[float], pts: float, possessions: float) -> np.ndarray:
    """Shift ``pts / (2·possessions)`` from 2pt_miss to 2pt_make (bounded by the miss mass)."""
    out = np.array(probs, dtype=float)
    if pts <= 0 or possessions <= 0:
        return frozen_label(out)
    shift = min(pts / (2.0 * possessions), out[TWO_MISS])
    out[TWO_MISS] -= shift
    out[TWO_MAKE] += shift
    return frozen_label(out)


def basketball_outcome_probs(
    box: TeamBoxScore,
    opponent: Optional[TeamBoxScore] = None,
    config: Optional[SportConfig] = None,
) -> np.ndarray:
    """8-way distribution for ``box``'s offence from its box score."""
    cfg = config or SportConfig.ncaa_basketball()
    dist = extract_shot_distribution(box, cfg)

    possessions = box.possessions or estimate_possessions(box.fga, box.oreb, box.turnovers, box.fta)
    to = turnover_rate(box.turnovers, possessions, cfg.turnover_cap, cfg.turnover_rate)
    orb = offensive_rebound_rate(
        box.oreb, box.rebounds, opponent.rebounds if opponent else 0, cfg.oreb_cap, cfg.oreb_rate
    )

    shares = np.array([dist.two_point_rate, dist.three_point_rate, dist.free_throw_rate], dtype=float)
    if shares.sum() <= 0:
        shares = np.array([cfg.two_point_rate, cfg.three_point_rate, cfg.free_throw_rate])
    shares = shares / shares.sum() * (1.0 - to)
    two, three, ft = shares

    probs = np.zeros(N_OUTCOMES)
    probs[TWO_MAKE] = two * dist.two_point_pct
    probs[TWO_MISS] = two * (1.0 - dist.two_point_pct)
    probs[THREE_MAKE] = three * dist.three_point_pct
    probs[THREE_MISS] = three * (1.0 - dist.three_point_pct)
    probs[FT_MAKE] = ft * dist.free_throw_pct
    probs[FT_MISS] = ft * (1.0 - dist.free_throw_pct)
    probs[TURNOVER] = to
    probs = _with_offensive_rebounds(probs, orb)
    return frozen_label(probs / probs.sum())


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------

class TransitionMatrixBuilder:
    """Sport-aware construction of fallback matrices.

    Raises:
        UnsupportedSportError: ``sport`` is not a known sport id.
    """

    def __init__(self, sport: str = "ncaa_basketball"):
        self.config = SportConfig.for_sport(sport)
        self.sport = sport

    def _home_config(self, is_neutral: bool) -> SportConfig:
        return self.config.neutral_site() if is_neutral else self.config

    def _score_prob(self, offence: TeamBoxScore, defence: TeamBoxScore) -> float:
        cfg = self.config
        off_efg = offence.effective_fg_pct if offence.effective_fg_pct is not None else cfg.base_score_rate
        def_efg = defence.effective_fg_pct if defence.effective_fg_pct is not None else cfg.base_score_rate
        base = (off_efg + (1.0 - def_efg)) / 2.0
        prob = base + _form_bonus(offence.recent_form, cfg.form_bonus_scale)
        return float(np.clip(prob, cfg.score_prob_floor, cfg.score_prob_ceiling))

    def _points_per_score(self) -> float:
        cfg = self.config
        if cfg.family == FAMILY_FOOTBALL:
            shares = cfg.touchdown_share + cfg.field_goal_share + cfg.safety_share
            return (
                cfg.touchdown_share * (6 + cfg.extra_point_pct)
                + cfg.field_goal_share * 3
                + cfg.safety_share * 2
            ) / shares
        return 1.0

    def _home_score_bump(self, pts: float, possessions: float) -> float:
        if pts <= 0 or possessions <= 0:
            return 0.0
        return pts / (possessions * self._points_per_score())

    def _ppp(self, offence: TeamBoxScore, defence: TeamBoxScore) -> float:
        off = offence.offensive_efficiency or self.config.base_efficiency
        dfn = defence.defensive_efficiency or self.config.base_efficiency
        if self.config.is_basketball():
            return (off / 100.0) * (100.0 / dfn)
        return off / self.config.avg_possessions

    # ------------------------------------------------------------------ #

    def _basketball_side(self, offence: TeamBoxScore, defence: TeamBoxScore) -> np.ndarray:
        cfg = self.config
        side = {
            "scoreProb": self._score_prob(offence, defence),
            "twoPointProb": cfg.two_point_rate,
            "threePointProb": cfg.three_point_rate,
            "freeThrowProb": cfg.free_throw_rate,
            "freeThrowPct": offence.free_throw_pct if offence.free_throw_pct is not None else cfg.free_throw_pct,
            "turnoverProb": offence.turnover_rate if offence.turnover_rate is not None else cfg.turnover_rate,
        }
        probs = legacy_basketball_probs(side, cfg)
        orb = offence.offensive_rebound_rate if offence.offensive_rebound_rate is not None else cfg.oreb_rate
        return _with_offensive_rebounds(probs, min(orb, cfg.oreb_cap))

    def build_matrix(
        self,
        home_stats: TeamBoxScore,
        away_stats: TeamBoxScore,
        is_neutral: bool = False,
    ) -> TransitionMatrix:
        """Matrix from season aggregates (eFG%, rates, pace, recent form)."""
        cfg = self.config
        home_adj = self._home_config(is_neutral).home_advantage_pts
        possessions = ((home_stats.pace or cfg.avg_possessions) + (away_stats.pace or cfg.avg_possessions)) / 2.0

        logger.debug(
            "Building %s matrix: possessions=%.1f home_adj=%.1f home_ppp=%.2f away_ppp=%.2f",
            self.sport, possessions, home_adj,
            self._ppp(home_stats, away_stats), self._ppp(away_stats, home_stats),
        )

        if cfg.family == FAMILY_BASKETBALL:
            home = apply_home_advantage(self._basketball_side(home_stats, away_stats), home_adj, possessions)
            away = self._basketball_side(away_stats, home_stats)
            return BasketballMatrix(home=home, away=away, possessions=possessions, sport=self.sport)

        bump = self._home_score_bump(home_adj, possessions)
        home_prob = float(np.clip(self._score_prob(home_stats, away_stats) + bump, cfg.score_prob_floor, cfg.score_prob_ceiling))
        away_prob = self._score_prob(away_stats, home_stats)
        return self._aggregate_matrix(home_prob, away_prob, possessions)

    def _aggregate_matrix(self, home_prob: float, away_prob: float, possessions: float) -> TransitionMatrix:
        cfg = self.config
        if cfg.family == FAMILY_FOOTBALL:
            def drive(p: float) -> DriveProfile:
                return DriveProfile(
                    score_prob=p,
                    touchdown_prob=cfg.touchdown_share,
                    field_goal_prob=cfg.field_goal_share,
                    safety_prob=cfg.safety_share,
                    extra_point_pct=cfg.extra_point_pct,
                )
            return FootballMatrix(drive(home_prob), drive(away_prob), int(round(possessions)), self.sport)
        return HockeyMatrix(ShotProfile(home_prob), ShotProfile(away_prob), int(round(possessions)), self.sport)

    def build_from_box_scores(
        self,
        home: TeamBoxScore,
        away: TeamBoxScore,
        is_neutral: bool = False,
    ) -> BasketballMatrix:
        """Basketball matrix from the two teams' box scores."""
        if not self.config.is_basketball():
            raise ValueError(f"Box-score matrices are basketball-only, not {self.sport}")
        home_poss = home.possessions or estimate_possessions(home.fga, home.oreb, home.turnovers, home.fta)
        away_poss = away.possessions or estimate_possessions(away.fga, away.oreb, away.turnovers, away.fta)
        possessions = (home_poss + away_poss) / 2.0 if home_poss > 0 and away_poss > 0 else self.config.avg_possessions

        home_adj = self._home_config(is_neutral).home_advantage_pts
        home_probs = apply_home_advantage(basketball_outcome_probs(home, away, self.config), home_adj, possessions)
        away_probs = basketball_outcome_probs(away, home, self.config)
        return BasketballMatrix(home=home_probs, away=away_probs, possessions=possessions, sport=self.sport)

    def generic_matrix(self, is_neutral: bool = False) -> TransitionMatrix:
        """League-average matrix with the home-court adjustment."""
        cfg = self.config
        home_adj = self._home_config(is_neutral).home_advantage_pts
        if cfg.family == FAMILY_BASKETBALL:
            base = _with_offensive_rebounds(legacy_basketball_probs({"scoreProb": cfg.base_score_rate}, cfg), cfg.oreb_rate)
            return BasketballMatrix(
                home=apply_home_advantage(base, home_adj, cfg.avg_possessions),
                away=base,
                possessions=cfg.avg_possessions,
                sport=self.sport,
            )
        bump = self._home_score_bump(home_adj, cfg.avg_possessions)
        home_prob = float(np.clip(cfg.base_score_rate + bump, cfg.score_prob_floor, cfg.score_prob_ceiling))
        return self._aggregate_matrix(home_prob, cfg.base_score_rate, cfg.avg_possessions)
