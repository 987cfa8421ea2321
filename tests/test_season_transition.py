"""
Tests for season labels and the inter-season regression
Run with: pytest tests/test_season_transition.py -v
"""

from datetime import date, datetime

import numpy as np
import pytest

from latent_edge.core.posterior import TeamPosterior
from latent_edge.services.season_transition import (
    SeasonTransitionManager,
    extract_season,
    season_progress,
    season_start_date,
)


class TestSeasonLabels:
    """Date → season"""

    def test_november_starts_season(self):
        assert extract_season(date(2025, 11, 1)) == "2025-26"

    def test_spring_belongs_to_previous_year(self):
        assert extract_season(date(2026, 2, 14)) == "2025-26"

    def test_october_is_prior_season(self):
        assert extract_season(date(2025, 10, 31)) == "2024-25"

    def test_accepts_datetime_and_string(self):
        assert extract_season(datetime(2025, 12, 5, 19, 30)) == "2025-26"
        assert extract_season("2026-03-20") == "2025-26"

    def test_century_rollover(self):
        assert extract_season(date(2099, 12, 1)) == "2099-00"

    def test_start_date(self):
        assert season_start_date("2025-26") == date(2025, 11, 1)

    def test_progress(self):
        assert season_progress(date(2025, 11, 1)) == 0.0
        assert season_progress(date(2026, 3, 31)) == pytest.approx(1.0)


class TestRollover:
    """Regression toward the neutral prior"""

    def setup_method(self):
        self.manager = SeasonTransitionManager()

    def _posterior(self, sigma, season="2024-25", games=30):
        return TeamPosterior("duke", np.ones(16), np.full(16, sigma), games_processed=games, season=season)

    def test_mean_shrinks(self):
        rolled = self.manager.apply(self._posterior(0.5), "2025-26")
        np.testing.assert_allclose(rolled.mu, 0.8)

    def test_variance_grows(self):
        rolled = self.manager.apply(self._posterior(0.5), "2025-26")
        np.testing.assert_allclose(rolled.sigma, np.sqrt(0.5))

    def test_sigma_clamped(self):
        rolled = self.manager.apply(self._posterior(2.0), "2025-26")
        np.testing.assert_allclose(rolled.sigma, 2.0)

    def test_resets_games_and_records_history(self):
        rolled = self.manager.apply(self._posterior(0.5), "2025-26")
        assert rolled.games_processed == 0
        assert rolled.season == "2025-26"
        assert rolled.season_history[-1]["from_season"] == "2024-25"
        assert rolled.season_history[-1]["games_processed"] == 30

    def test_original_untouched(self):
        original = self._posterior(0.5)
        self.manager.apply(original, "2025-26")
        assert original.games_processed == 30
        assert original.season_history == []

    def test_needs_transition(self):
        assert self.manager.needs_transition(self._posterior(0.5), "2025-26")
        assert not self.manager.needs_transition(self._posterior(0.5, season="2025-26"), "2025-26")
        assert not self.manager.needs_transition(self._posterior(0.5, season=None), "2025-26")

    def test_maybe_apply_returns_same_object_when_current(self):
        current = self._posterior(0.5, season="2025-26")
        assert self.manager.maybe_apply(current, "2025-26") is current
