"""
Tests for the TeamPosterior value type and the in-memory store
Run with: pytest tests/test_posterior.py -v
"""

from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from latent_edge.core.errors import InvalidPosteriorError
from latent_edge.core.posterior import (
    InMemoryPosteriorStore,
    TeamPosterior,
    confidence_from_games,
)
from latent_edge.utils.clock import utc_now


class TestConfidence:
    """Games → confidence curve"""

    def test_zero_games(self):
        assert confidence_from_games(0) == 0.0

    def test_monotonic(self):
        values = [confidence_from_games(g) for g in range(0, 30)]
        assert all(b >= a for a, b in zip(values, values[1:]))
        assert values[-1] < 1.0

    def test_more_games_more_confident(self):
        assert confidence_from_games(5) > confidence_from_games(2)

    def test_property_matches_function(self):
        p = TeamPosterior("duke", np.zeros(16), np.ones(16), games_processed=7)
        assert p.confidence == pytest.approx(confidence_from_games(7))


class TestValidation:
    """Posterior bounds"""

    def test_neutral_is_valid(self):
        p = TeamPosterior.neutral("duke")
        assert p.latent_dim == 16
        assert np.all(p.mu == 0) and np.all(p.sigma == 1)
        assert p.is_valid()

    def test_sigma_at_lower_bound(self):
        assert TeamPosterior("a", np.zeros(16), np.full(16, 0.1)).is_valid()

    def test_sigma_above_upper_bound(self):
        with pytest.raises(InvalidPosteriorError):
            TeamPosterior("a", np.zeros(16), np.full(16, 2.5)).validate()

    def test_wrong_length(self):
        assert not TeamPosterior("a", np.zeros(8), np.ones(8)).is_valid()

    def test_non_finite(self):
        mu = np.zeros(16)
        mu[3] = np.nan
        assert not TeamPosterior("a", mu, np.ones(16)).is_valid()

    def test_arrays_are_read_only(self):
        p = TeamPosterior.neutral("duke")
        with pytest.raises(ValueError):
            p.mu[0] = 1.0


class TestPayload:
    """Persistence format"""

    def test_round_trip(self):
        p = TeamPosterior.neutral("duke", season="2025-26", team_name="Duke")
        p = p.with_update(np.full(16, 0.3), np.full(16, 0.7), games_processed=4)
        restored = TeamPosterior.from_payload("duke", p.to_payload())
        np.testing.assert_allclose(restored.mu, p.mu)
        np.testing.assert_allclose(restored.sigma, p.sigma)
        assert restored.games_processed == 4
        assert restored.season == "2025-26"
        assert restored.team_name == "Duke"
        assert restored.last_updated == p.last_updated

    def test_payload_tag(self):
        assert TeamPosterior.neutral("duke").to_payload()["type"] == "bayesian_posterior"

    def test_legacy_payload(self):
        restored = TeamPosterior.from_payload("duke", {"mu": [0.0] * 16, "sigma": [1.0] * 16})
        assert restored.games_processed == 0
        assert restored.season is None

    def test_missing_fields(self):
        with pytest.raises(InvalidPosteriorError):
            TeamPosterior.from_payload("duke", {"mu": [0.0] * 16})


class TestInMemoryStore:
    """Dict-backed store"""

    def test_get_or_create(self):
        store = InMemoryPosteriorStore()
        assert store.get_posterior("duke") is None
        created = store.get_or_create_posterior("duke", season="2025-26")
        assert created.season == "2025-26"
        assert store.get_or_create_posterior("duke") is created

    def test_update_after_game_counts(self):
        store = InMemoryPosteriorStore()
        prior = store.get_or_create_posterior("duke")
        store.update_posterior_after_game("duke", prior, season="2025-26")
        stored = store.get_posterior("duke")
        assert stored.games_processed == 1
        assert stored.season == "2025-26"


class TestTimestamps:
    """Naive UTC timestamps"""

    def test_utc_now_is_naive_utc(self):
        now = utc_now()
        assert now.tzinfo is None
        reference = datetime.now(timezone.utc).replace(tzinfo=None)
        assert abs(reference - now) < timedelta(seconds=5)

    def test_neutral_posterior_stamped_in_utc(self):
        posterior = TeamPosterior.neutral("duke")
        assert posterior.last_updated.tzinfo is None
        assert abs(utc_now() - posterior.last_updated) < timedelta(seconds=5)
