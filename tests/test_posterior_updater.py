"""
Tests for the Bayesian posterior updater
Run with: pytest tests/test_posterior_updater.py -v
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import date

import numpy as np
import pytest

from conftest import StubNetwork
from latent_edge.core.errors import InvalidDistributionError, LatentEdgeError
from latent_edge.core.game_context import GameContext
from latent_edge.core.model_config import UpdaterConfig
from latent_edge.core.posterior import InMemoryPosteriorStore, TeamPosterior
from latent_edge.services.posterior_updater import (
    BayesianPosteriorUpdater,
    GameObservation,
    apply_context_adjustments,
    build_likelihood_input,
    fuse_gaussians,
    prediction_error,
)

LABEL = np.array([0.4, 0.2, 0.1, 0.1, 0.1, 0.0, 0.05, 0.05])
WEAK_LABEL = np.array([0.05, 0.3, 0.0, 0.3, 0.0, 0.05, 0.0, 0.3])


@pytest.fixture
def store():
    return InMemoryPosteriorStore()


@pytest.fixture
def updater(uniform_network, store):
    return BayesianPosteriorUpdater(uniform_network, store)


class TestPureMath:
    """Gaussian fusion and error terms"""

    def test_fusion_tightens(self):
        mu, sigma = fuse_gaussians(np.zeros(4), np.ones(4), np.full(4, 2.0), np.full(4, 0.5))
        assert np.all(sigma <= 0.5)
        assert np.all((mu > 0) & (mu < 2.0))

    @pytest.mark.parametrize("seed", range(8))
    def test_fusion_sigma_below_both_inputs(self, seed):
        rng = np.random.default_rng(seed)
        prior_mu, lik_mu = rng.normal(0, 2, 16), rng.normal(0, 2, 16)
        prior_sigma, lik_sigma = rng.uniform(0.1, 2.0, 16), rng.uniform(0.1, 2.0, 16)
        _, sigma = fuse_gaussians(prior_mu, prior_sigma, lik_mu, lik_sigma)
        assert np.all(sigma <= np.minimum(prior_sigma, lik_sigma) + 1e-12)

    @pytest.mark.parametrize("weight", [0.05, 0.3, 0.7, 1.0])
    @pytest.mark.parametrize("seed", range(4))
    def test_fusion_mean_between_inputs(self, seed, weight):
        rng = np.random.default_rng(seed)
        prior_mu, lik_mu = rng.normal(0, 2, 16), rng.normal(0, 2, 16)
        prior_sigma, lik_sigma = rng.uniform(0.1, 2.0, 16), rng.uniform(0.1, 2.0, 16)
        mu, sigma = fuse_gaussians(prior_mu, prior_sigma, lik_mu, lik_sigma, weight=weight)
        lo, hi = np.minimum(prior_mu, lik_mu), np.maximum(prior_mu, lik_mu)
        assert np.all((mu >= lo - 1e-12) & (mu <= hi + 1e-12))
        assert np.all(sigma <= prior_sigma + 1e-12)

    def test_fusion_weight_zero_keeps_prior(self):
        mu, sigma = fuse_gaussians(np.zeros(4), np.ones(4), np.full(4, 2.0), np.full(4, 0.5), weight=0.0)
        np.testing.assert_allclose(mu, 0.0)
        np.testing.assert_allclose(sigma, 1.0)

    def test_prediction_error_bounds(self):
        assert prediction_error(LABEL, LABEL) < prediction_error(np.full(8, 0.125), LABEL)
        one_hot = np.eye(8)
        assert prediction_error(one_hot[0], one_hot[1]) == pytest.approx(1.0, abs=1e-6)

    def test_likelihood_input_width(self):
        p = TeamPosterior.neutral("duke")
        assert build_likelihood_input(p, None).shape == (74,)


class TestContextAdjustments:
    """Sigma multipliers and clamping"""

    def setup_method(self):
        self.cfg = UpdaterConfig()
        self.sigma = np.full(16, 0.5)

    def test_regular_game_unchanged(self):
        out = apply_context_adjustments(self.sigma, GameContext(rest_days=3), self.cfg)
        np.testing.assert_allclose(out, 0.5)

    def test_neutral_site(self):
        out = apply_context_adjustments(self.sigma, GameContext(is_neutral=True, rest_days=3), self.cfg)
        np.testing.assert_allclose(out, 0.55)

    def test_postseason_and_back_to_back(self):
        ctx = GameContext(is_postseason=True, rest_days=1)
        out = apply_context_adjustments(self.sigma, ctx, self.cfg)
        np.testing.assert_allclose(out, 0.5 * 0.95 * 1.15)

    def test_vector_context(self):
        vec = GameContext(is_neutral=True, rest_days=3).to_vector()
        out = apply_context_adjustments(self.sigma, vec, self.cfg)
        np.testing.assert_allclose(out, 0.55)

    def test_clamps_both_ends(self):
        low = apply_context_adjustments(np.full(4, 0.05), GameContext(rest_days=3), self.cfg)
        high = apply_context_adjustments(np.full(4, 3.0), GameContext(rest_days=3), self.cfg)
        np.testing.assert_allclose(low, 0.1)
        np.testing.assert_allclose(high, 2.0)


class TestUpdatePosterior:
    """Single pure update"""

    def test_uncertainty_shrinks(self, updater):
        prior = TeamPosterior.neutral("duke")
        post = updater.update_posterior(prior, LABEL, GameContext(rest_days=3))
        assert post.mean_uncertainty < prior.mean_uncertainty
        assert post.is_valid()

    def test_strong_game_raises_mean(self, updater):
        post = updater.update_posterior(TeamPosterior.neutral("duke"), LABEL, GameContext(rest_days=3))
        assert np.all(post.mu > 0)

    def test_weak_game_lowers_mean(self, updater):
        post = updater.update_posterior(TeamPosterior.neutral("duke"), WEAK_LABEL, GameContext(rest_days=3))
        assert np.all(post.mu < 0)

    def test_prior_not_mutated(self, updater):
        prior = TeamPosterior.neutral("duke")
        updater.update_posterior(prior, LABEL)
        np.testing.assert_array_equal(prior.sigma, np.ones(16))

    def test_invalid_label(self, updater):
        with pytest.raises(InvalidDistributionError):
            updater.update_posterior(TeamPosterior.neutral("duke"), np.full(8, 0.5))

    def test_network_sees_opponent(self, store):
        seen = []

        class RecordingNetwork(StubNetwork):
            def forward(self, inputs):
                seen.append(np.array(inputs))
                return super().forward(inputs)

        updater = BayesianPosteriorUpdater(RecordingNetwork(), store)
        opponent = TeamPosterior("unc", np.full(16, 0.7), np.full(16, 0.5))
        updater.update_posterior(TeamPosterior.neutral("duke"), LABEL, opponent=opponent)
        np.testing.assert_allclose(seen[0][32:48], 0.7)

    def test_online_training(self, store):
        network = StubNetwork()
        updater = BayesianPosteriorUpdater(network, store, UpdaterConfig(online_training=True))
        updater.update_posterior(TeamPosterior.neutral("duke"), LABEL)
        assert network.train_calls == 1


class TestStoredUpdates:
    """Read-modify-write against a store"""

    def test_update_team_counts_game(self, updater, store):
        updater.update_team("duke", LABEL, game_date=date(2025, 12, 1))
        stored = store.get_posterior("duke")
        assert stored.games_processed == 1
        assert stored.season == "2025-26"

    def test_requires_repository(self, uniform_network):
        with pytest.raises(LatentEdgeError):
            BayesianPosteriorUpdater(uniform_network).update_team("duke", LABEL)

    def test_concurrent_updates_not_lost(self, updater, store):
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda _: updater.update_team("duke", LABEL, game_date=date(2025, 12, 1)), range(20)))
        assert store.get_posterior("duke").games_processed == 20

    def test_update_game_both_sides(self, updater, store):
        obs = GameObservation("g1", "duke", "unc", LABEL, WEAK_LABEL, game_date=date(2025, 12, 1))
        result = updater.update_game(obs)
        assert result.success
        assert store.get_posterior("duke").games_processed == 1
        assert store.get_posterior("unc").games_processed == 1
        assert store.get_posterior("duke").mu[0] > store.get_posterior("unc").mu[0]

    def test_update_game_partial_failure(self, updater, store):
        obs = GameObservation("g1", "duke", "unc", LABEL, np.full(8, 0.5), game_date=date(2025, 12, 1))
        result = updater.update_game(obs)
        assert result.home_updated and not result.away_updated
        assert len(result.errors) == 1
        assert store.get_posterior("unc").games_processed == 0

    def test_batch_update(self, updater):
        games = [
            GameObservation(f"g{i}", "duke", "unc", LABEL, WEAK_LABEL, game_date=date(2025, 12, 1))
            for i in range(3)
        ]
        results = updater.batch_update(games)
        assert all(r.success for r in results)


class TestRollover:
    """Season boundaries through the updater"""

    def test_first_game_of_new_season_rolls_over(self, updater, store):
        store.save_posterior(
            TeamPosterior("duke", np.ones(16), np.full(16, 0.5), games_processed=30, season="2024-25")
        )
        updater.update_team("duke", LABEL, game_date=date(2025, 12, 1))
        stored = store.get_posterior("duke")
        assert stored.games_processed == 1
        assert len(stored.season_history) == 1
        assert stored.season_history[0]["to_season"] == "2025-26"

    def test_rollover_teams(self, updater, store):
        store.save_posterior(TeamPosterior("duke", np.ones(16), np.full(16, 0.5), season="2024-25"))
        store.save_posterior(TeamPosterior("unc", np.ones(16), np.full(16, 0.5), season="2025-26"))
        summary = updater.rollover_teams(["duke", "unc", "missing"], "2025-26")
        assert summary == {"rolled": 1, "unchanged": 2}
        np.testing.assert_allclose(store.get_posterior("duke").mu, 0.8)
