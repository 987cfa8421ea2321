"""Game context: the fixed-width feature vector consumed by the network.

The external scheduling component supplies raw game facts; this module turns
them into ``CONTEXT_DIM`` features normalized to ``[0, 1]``.  Out-of-range
raw inputs (a 10-day layoff, a 3,000-mile trip, a game deep into March)
are allowed to exceed 1 rather than being clipped.

Feature layout::

    0  venue          1.0 home, 0.0 away, 0.5 neutral site
    1  postseason     flag
    2  rest days      rest_days / 7
    3  travel         miles / 2500
    4  conference     flag
    5  rivalry        flag
    6  TV             flag
    7  time of day    tip-off hour / 24
    8  day of week    weekday / 6   (Monday = 0)
    9  season progress  days since season start / 150
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import Optional, Union

import numpy as np

CONTEXT_DIM = 10

_REST_DAYS_SCALE = 7.0
_TRAVEL_MILES_SCALE = 2500.0
_SEASON_LENGTH_DAYS = 150.0


@dataclass(frozen=True)
class GameContext:
    """Raw facts about one game from one team's perspective.

    ``season_progress`` may be supplied directly; otherwise it is derived
    from ``game_date`` and ``season_start`` (and defaults to mid-season when
    neither is known).
    """

    is_home: bool = True
    is_neutral: bool = False
    is_postseason: bool = False
    rest_days: float = 2.0
    travel_distance_miles: float = 0.0
    is_conference: bool = False
    is_rivalry: bool = False
    is_tv: bool = False
    tip_off_hour: float = 19.0
    game_date: Optional[Union[date, datetime]] = None
    season_start: Optional[date] = None
    season_progress: Optional[float] = None

    def venue_indicator(self) -> float:
        if self.is_neutral:
            return 0.5
        return 1.0 if self.is_home else 0.0

    def progress(self) -> float:
        if self.season_progress is not None:
            return max(0.0, float(self.season_progress))
        if self.game_date is not None and self.season_start is not None:
            game_day = self.game_date.date() if isinstance(self.game_date, datetime) else self.game_date
            return max(0.0, (game_day - self.season_start).days / _SEASON_LENGTH_DAYS)
        return 0.5

    def to_vector(self) -> np.ndarray:
        """Normalized ``CONTEXT_DIM`` feature vector."""
        weekday = self.game_date.weekday() if self.game_date is not None else 5
        return np.array([
            self.venue_indicator(),
            float(self.is_postseason),
            max(0.0, self.rest_days) / _REST_DAYS_SCALE,
            max(0.0, self.travel_distance_miles) / _TRAVEL_MILES_SCALE,
            float(self.is_conference),
            float(self.is_rivalry),
            float(self.is_tv),
            (self.tip_off_hour % 24) / 24.0,
            weekday / 6.0,
            self.progress(),
        ], dtype=float)

    def for_opponent(self) -> GameContext:
        """The same game seen from the other bench (neutral stays neutral)."""
        return replace(self, is_home=not self.is_home)

    @property
    def is_back_to_back(self) -> bool:
        return self.rest_days < 2


def context_vector(context: Union[GameContext, np.ndarray, list, None]) -> np.ndarray:
    """Coerce a ``GameContext``, raw vector, or ``None`` to a feature vector."""
    if context is None:
        return GameContext().to_vector()
    if isinstance(context, GameContext):
        return context.to_vector()
    vec = np.asarray(context, dtype=float)
    if vec.shape != (CONTEXT_DIM,):
        raise ValueError(f"Game context must have {CONTEXT_DIM} features, got shape {vec.shape}")
    return vec
