"""
Season rollover for team posteriors.

Between seasons rosters turn over, so last season's posterior is too
confident.  At the first game of a new season each posterior is regressed
toward the neutral prior::

    mu'    = mean_retention · mu                   (0.8 by default)
    sigma' = clamp( sqrt(sigma² + inter_year_variance) )   (+0.25 variance)

``games_processed`` restarts at zero and a history record is appended so
the size of each rollover can be audited later.
"""

import logging
from datetime import date, datetime
from typing import Optional, Union

import numpy as np

from latent_edge.core.model_config import LatentConfig, SeasonConfig
from latent_edge.core.posterior import TeamPosterior, confidence_from_games
from latent_edge.utils.clock import utc_now

logger = logging.getLogger(__name__)

__all__ = [
    "SeasonTransitionManager",
    "confidence_from_games",
    "extract_season",
    "season_start_date",
    "season_progress",
]

DateLike = Union[date, datetime, str]


def _as_date(value: DateLike) -> date:
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if isinstance(value, datetime):
        return value.date()
    return value


def extract_season(game_date: DateLike, start_month: int = 11) -> str:
    """Season label for a date: Nov 2025 → ``"2025-26"``, Feb 2026 → ``"2025-26"``."""
    d = _as_date(game_date)
    first_year = d.year if d.month >= start_month else d.year - 1
    return f"{first_year}-{str(first_year + 1)[-2:]}"


def season_start_date(season: str, start_month: int = 11) -> date:
    """First day of a season label (``"2025-26"`` → 2025-11-01)."""
    return date(int(season.split("-")[0]), start_month, 1)


def season_progress(game_date: DateLike, season_start: Optional[date] = None, season_length_days: float = 150.0) -> float:
    """Days since season start over the nominal season length (may exceed 1)."""
    d = _as_date(game_date)
    start = season_start or season_start_date(extract_season(d))
    return max(0.0, (d - start).days / season_length_days)


class SeasonTransitionManager:
    """Applies the inter-season regression to posteriors."""

    def __init__(self, config: Optional[SeasonConfig] = None, latent_config: Optional[LatentConfig] = None):
        self.config = config or SeasonConfig()
        self.latent_config = latent_config or LatentConfig()

    def season_for(self, game_date: DateLike) -> str:
        return extract_season(game_date, self.config.season_start_month)

    def needs_transition(self, posterior: TeamPosterior, season: str) -> bool:
        """True when the posterior was last updated in an earlier season."""
        if posterior.season is None:
            return False
        return posterior.season < season

    def apply(self, posterior: TeamPosterior, new_season: str) -> TeamPosterior:
        cfg = self.config
        lat = self.latent_config
        mu = posterior.mu * cfg.mean_retention
        raw_sigma = np.sqrt(posterior.variance + cfg.inter_year_variance)
        sigma = np.clip(raw_sigma, lat.min_uncertainty, lat.max_uncertainty)
        if not np.array_equal(sigma, raw_sigma):
            logger.warning(
                "Clamped rollover sigma for %s (raw max %.4f)", posterior.team_id, float(raw_sigma.max())
            )

        record = {
            "from_season": posterior.season,
            "to_season": new_season,
            "avg_sigma_before": round(posterior.mean_uncertainty, 6),
            "avg_sigma_after": round(float(np.mean(sigma)), 6),
            "games_processed": posterior.games_processed,
        }
        logger.info(
            "Season rollover %s: %s → %s, avg sigma %.3f → %.3f",
            posterior.team_id, posterior.season, new_season,
            record["avg_sigma_before"], record["avg_sigma_after"],
        )
        return posterior.with_update(
            mu,
            sigma,
            season=new_season,
            games_processed=0,
            last_updated=utc_now(),
            season_history=list(posterior.season_history) + [record],
        )

    def maybe_apply(self, posterior: TeamPosterior, season: str) -> TeamPosterior:
        if self.needs_transition(posterior, season):
            return self.apply(posterior, season)
        return posterior
