"""
Tests for the SQL-backed repositories (in-memory SQLite)
Run with: pytest tests/test_repositories.py -v
"""

import json
from datetime import datetime

import numpy as np
import pytest

from conftest import one_hot_pair
from latent_edge.core.errors import InvalidDistributionError, InvalidPosteriorError, ModelIntegrityError
from latent_edge.core.posterior import TeamPosterior
from latent_edge.models import Team
from latent_edge.services.negative_sampler import NegativeSampleCache
from latent_edge.services.repositories import (
    EncoderModelRepository,
    GameLabelRepository,
    PosteriorRepository,
    session_scope,
)

UNIFORM = [0.125] * 8


@pytest.fixture
def posteriors(session_factory):
    return PosteriorRepository(session_factory)


@pytest.fixture
def encoders(session_factory):
    return EncoderModelRepository(session_factory)


@pytest.fixture
def labels(session_factory):
    return GameLabelRepository(session_factory)


class TestPosteriorRepository:
    """teams.statistical_representation"""

    def test_missing_team(self, posteriors):
        assert posteriors.get_posterior("nobody") is None

    def test_get_or_create_neutral(self, posteriors):
        created = posteriors.get_or_create_posterior("duke", season="2025-26", name="Duke")
        assert created.games_processed == 0
        stored = posteriors.get_posterior("duke")
        np.testing.assert_array_equal(stored.mu, np.zeros(16))
        assert stored.team_name == "Duke"
        assert stored.season == "2025-26"

    def test_get_or_create_keeps_existing(self, posteriors):
        posteriors.save_posterior(TeamPosterior("duke", np.ones(16), np.full(16, 0.4), games_processed=3))
        again = posteriors.get_or_create_posterior("duke")
        assert again.games_processed == 3

    def test_save_round_trip(self, posteriors):
        original = TeamPosterior(
            "duke", np.linspace(-1, 1, 16), np.full(16, 0.4),
            games_processed=9, season="2025-26", last_updated=datetime(2026, 1, 10, 12, 0),
        )
        posteriors.save_posterior(original)
        stored = posteriors.get_posterior("duke")
        np.testing.assert_allclose(stored.mu, original.mu)
        assert stored.games_processed == 9
        assert stored.last_updated == original.last_updated

    def test_update_after_game(self, posteriors):
        prior = posteriors.get_or_create_posterior("duke")
        posteriors.update_posterior_after_game("duke", prior, season="2025-26")
        assert posteriors.get_posterior("duke").games_processed == 1

    def test_rejects_non_positive_sigma(self, posteriors):
        with pytest.raises(InvalidPosteriorError):
            posteriors.save_posterior(TeamPosterior("duke", np.zeros(16), np.zeros(16)))
        assert posteriors.get_posterior("duke") is None

    def test_malformed_row_reads_as_missing(self, posteriors, session_factory):
        with session_scope(session_factory) as db:
            db.add(Team(team_id="broken", statistical_representation="{not json"))
        assert posteriors.get_posterior("broken") is None

    def test_teams_with_posteriors(self, posteriors, session_factory):
        posteriors.get_or_create_posterior("unc")
        posteriors.get_or_create_posterior("duke", sport="ncaa_basketball")
        posteriors.get_or_create_posterior("celtics", sport="nba")
        with session_scope(session_factory) as db:
            db.add(Team(team_id="empty"))
        assert posteriors.get_teams_with_posteriors() == ["celtics", "duke", "unc"]
        assert posteriors.get_teams_with_posteriors("nba") == ["celtics"]

    def test_batch_load(self, posteriors):
        posteriors.get_or_create_posterior("duke")
        posteriors.get_or_create_posterior("unc")
        loaded = posteriors.batch_load_posteriors(["duke", "unc", "kansas"])
        assert set(loaded) == {"duke", "unc"}
        assert posteriors.batch_load_posteriors([]) == {}


class TestEncoderModelRepository:
    """Versioned, freezable encoder weights"""

    def test_save_and_get(self, encoders):
        record = encoders.save_model("v1", b"weights", b"decoder", latent_dim=16, input_dim=80)
        assert record.weights_hash is not None
        fetched = encoders.get_model("v1")
        assert fetched.encoder_weights == b"weights"
        assert fetched.decoder_weights == b"decoder"
        assert not fetched.frozen

    def test_freeze_requires_completed_training(self, encoders):
        encoders.save_model("v1", b"weights")
        with pytest.raises(ModelIntegrityError):
            encoders.freeze_model("v1")

    def test_freeze_unknown(self, encoders):
        with pytest.raises(ModelIntegrityError):
            encoders.freeze_model("ghost")

    def test_freeze_is_idempotent(self, encoders):
        encoders.save_model("v1", b"weights", training_completed=True)
        first = encoders.freeze_model("v1")
        second = encoders.freeze_model("v1")
        assert first.frozen and second.frozen
        assert first.frozen_at == second.frozen_at

    def test_frozen_version_immutable(self, encoders):
        encoders.save_model("v1", b"weights", training_completed=True)
        encoders.freeze_model("v1")
        with pytest.raises(ModelIntegrityError):
            encoders.save_model("v1", b"other")
        assert encoders.get_model("v1").encoder_weights == b"weights"

    def test_latest_frozen(self, encoders):
        assert encoders.get_latest_frozen_model() is None
        encoders.save_model("v1", b"a", training_completed=True)
        encoders.freeze_model("v1")
        encoders.save_model("v2", b"b", training_completed=True)
        encoders.freeze_model("v2")
        encoders.save_model("v3", b"c", training_completed=True)
        assert encoders.get_latest_frozen_model().model_version == "v2"

    def test_integrity(self, encoders):
        encoders.save_model("v1", b"weights", training_completed=True)
        assert not encoders.validate_model_integrity("v1")
        encoders.freeze_model("v1")
        assert encoders.validate_model_integrity("v1")
        assert not encoders.validate_model_integrity("missing")


class TestGameLabelRepository:
    """games.transition_probabilities"""

    def _store(self, labels, game_id, pair, **kwargs):
        fields = dict(home_team_id="duke", away_team_id="unc", game_date=datetime(2025, 12, 1))
        fields.update(kwargs)
        labels.store_labels(game_id, pair, **fields)

    def test_store_and_read(self, labels):
        self._store(labels, "g1", one_hot_pair(0), home_score=80, away_score=70)
        payload = json.loads(labels.get_labels("g1"))
        assert payload["home"][0] == 1.0
        game = labels.get_game("g1")
        assert game["home_team_id"] == "duke"
        assert labels.get_game("g2") is None

    def test_invalid_label_rejected(self, labels):
        with pytest.raises(InvalidDistributionError):
            self._store(labels, "g1", {"home": [0.5] * 8, "away": UNIFORM})
        assert labels.get_labels("g1") is None

    def test_new_game_needs_metadata(self, labels):
        with pytest.raises(ValueError):
            labels.store_labels("g1", {"home": UNIFORM, "away": UNIFORM})

    def test_relabel_existing_game(self, labels):
        self._store(labels, "g1", one_hot_pair(0))
        labels.store_labels("g1", one_hot_pair(3))
        assert json.loads(labels.get_labels("g1"))["home"][3] == 1.0

    def test_fetch_excludes_game(self, labels):
        for i in range(4):
            self._store(labels, f"g{i}", one_hot_pair(i))
        fetched = labels.fetch_labels(10, exclude_game_id="g2")
        assert set(fetched) == {"g0", "g1", "g3"}
        assert len(labels.fetch_labels(2)) == 2

    def test_labelled_games_in_date_order(self, labels):
        self._store(labels, "late", one_hot_pair(0), game_date=datetime(2026, 2, 1))
        self._store(labels, "early", one_hot_pair(1), game_date=datetime(2025, 11, 10))
        self._store(labels, "hoops", one_hot_pair(2), sport="nba")
        games = labels.labelled_games("ncaa_basketball")
        assert [g["external_id"] for g in games] == ["early", "late"]

    def test_feeds_negative_sampler(self, labels):
        for i in range(5):
            self._store(labels, f"g{i}", one_hot_pair(i))
        cache = NegativeSampleCache(labels, rng=np.random.default_rng(0))
        negatives = cache.sample_negatives("g0", 6)
        assert negatives.shape == (6, 8)
        assert not np.any(negatives[:, 0] == 1.0)
