"""
Tests for the Monte Carlo game simulator
Run with: pytest tests/test_mcmc_simulator.py -v
"""

from unittest.mock import MagicMock

import numpy as np
import pytest

from conftest import StubNetwork
from latent_edge.core.errors import UnsupportedSportError
from latent_edge.core.game_context import GameContext
from latent_edge.core.model_config import SimulatorConfig
from latent_edge.core.posterior import InMemoryPosteriorStore, TeamPosterior
from latent_edge.core.transition_matrix import BasketballMatrix
from latent_edge.services.mcmc_simulator import (
    DATA_SOURCE_GENERATED,
    DATA_SOURCE_LATENT,
    DATA_SOURCE_MATRIX,
    MCMCSimulator,
    prediction_confidence,
    sample_from_distribution,
    simulate_basketball_side,
)
from latent_edge.services.transition_matrix_builder import TransitionMatrixBuilder

LEGACY = {"home": {"scoreProb": 0.55}, "away": {"scoreProb": 0.50}}
ALL_OREB = [0, 0, 0, 0, 0, 0, 1, 0]


@pytest.fixture
def simulator():
    return MCMCSimulator(config=SimulatorConfig(iterations=2000))


@pytest.fixture
def populated_store():
    store = InMemoryPosteriorStore()
    store.save_posterior(TeamPosterior("duke", np.zeros(16), np.full(16, 0.3), team_name="Duke"))
    store.save_posterior(TeamPosterior("unc", np.zeros(16), np.full(16, 0.5), team_name="North Carolina"))
    return store


class TestMatrixSimulation:
    """Direct matrix simulation"""

    @pytest.mark.parametrize("seed", [1, 2, 3])
    def test_stronger_home_side_favoured(self, simulator, seed):
        result = simulator.simulate(LEGACY, seed=seed)
        assert result.home_win_prob > 0.5
        assert result.avg_margin > 0
        assert result.iterations == 2000

    def test_probabilities_cover_all_games(self, simulator):
        result = simulator.simulate(LEGACY, seed=4)
        total = result.home_win_prob + result.away_win_prob + result.tie_prob
        assert total == pytest.approx(1.0)

    def test_seeded_runs_repeat(self, simulator):
        a = simulator.simulate(LEGACY, seed=11)
        b = simulator.simulate(LEGACY, seed=11)
        np.testing.assert_array_equal(a.home_scores, b.home_scores)

    def test_all_oreb_side_scores_nothing(self, simulator):
        m = BasketballMatrix(home=ALL_OREB, away=ALL_OREB, possessions=20)
        result = simulator.simulate(m, seed=0)
        assert result.tie_prob == 1.0
        assert result.avg_home_score == 0.0

    def test_oreb_chain_capped(self):
        probs = np.tile([0.1, 0, 0, 0, 0, 0, 0.9, 0], (50, 1))
        points = simulate_basketball_side(probs, possessions=10, rng=np.random.default_rng(0), max_chain=3)
        # every possession ends in a make once the chain cap removes oreb
        np.testing.assert_array_equal(points, 20)

    def test_possessions_override(self, simulator):
        result = simulator.simulate(LEGACY, seed=0, possessions=10, iterations=50)
        assert result.possessions == 10
        assert result.avg_home_score < 40

    def test_to_dict(self, simulator):
        out = simulator.simulate(LEGACY, seed=0, iterations=100).to_dict()
        assert out["data_source"] == DATA_SOURCE_MATRIX
        assert out["margin_5th"] <= out["margin_95th"]
        assert out["uncertainty"] is None

    def test_football_scores(self, simulator):
        result = simulator.simulate(TransitionMatrixBuilder("nfl").generic_matrix(), seed=0)
        assert 15 < result.avg_home_score < 35
        assert np.all(result.home_scores != 1)

    def test_hockey_scores(self, simulator):
        result = simulator.simulate(TransitionMatrixBuilder("nhl").generic_matrix(is_neutral=True), seed=0)
        assert result.avg_away_score == pytest.approx(6.0, abs=0.5)
        assert result.away_scores.min() >= 0

    def test_analytic_estimate_tracks_simulation(self, simulator):
        result = simulator.simulate(LEGACY, seed=6)
        assert result.analytic_home_win_prob == pytest.approx(result.home_win_prob, abs=0.05)

    def test_hockey_analytic_estimate(self, simulator):
        result = simulator.simulate(TransitionMatrixBuilder("nhl").generic_matrix(), seed=6)
        assert result.analytic_home_win_prob == pytest.approx(result.home_win_prob, abs=0.05)

    def test_analytic_estimate_all_ties(self, simulator):
        m = BasketballMatrix(home=ALL_OREB, away=ALL_OREB, possessions=5)
        assert simulator.simulate(m, seed=0, iterations=20).analytic_home_win_prob == 0.0


class TestMatchup:
    """Source selection and degradation"""

    def test_latent_path(self, populated_store):
        sim = MCMCSimulator(StubNetwork(), populated_store, SimulatorConfig(iterations=500))
        result = sim.simulate_matchup("duke", "unc", GameContext(), seed=0)
        assert result.data_source == DATA_SOURCE_LATENT
        assert result.uncertainty.home_team_uncertainty == pytest.approx(0.3)
        assert result.uncertainty.home_team_name == "Duke"
        assert result.home_win_prob + result.away_win_prob + result.tie_prob == pytest.approx(1.0)

    def test_latent_path_single_forward_pass(self, populated_store):
        network = StubNetwork()
        sim = MCMCSimulator(network, populated_store, SimulatorConfig(iterations=200))
        sim.simulate_matchup("duke", "unc", seed=0)
        assert network.forward_calls == 1

    def test_latent_path_deterministic(self, populated_store):
        sim = MCMCSimulator(StubNetwork(), populated_store, SimulatorConfig(iterations=300))
        a = sim.simulate_matchup("duke", "unc", seed=5)
        b = sim.simulate_matchup("duke", "unc", seed=5)
        np.testing.assert_array_equal(a.home_scores, b.home_scores)

    def test_missing_posterior_uses_generated(self, populated_store):
        sim = MCMCSimulator(StubNetwork(), populated_store, SimulatorConfig(iterations=200))
        result = sim.simulate_matchup("duke", "kansas", seed=0)
        assert result.data_source == DATA_SOURCE_GENERATED
        assert result.uncertainty is None

    def test_invalid_posterior_uses_fallback_matrix(self, populated_store):
        populated_store.save_posterior(TeamPosterior("unc", np.zeros(16), np.full(16, 5.0)))
        sim = MCMCSimulator(StubNetwork(), populated_store, SimulatorConfig(iterations=200))
        result = sim.simulate_matchup("duke", "unc", fallback_matrix=LEGACY, seed=0)
        assert result.data_source == DATA_SOURCE_MATRIX

    def test_no_network_uses_fallback_matrix(self, populated_store):
        sim = MCMCSimulator(None, populated_store, SimulatorConfig(iterations=200))
        result = sim.simulate_matchup("duke", "unc", fallback_matrix=LEGACY, seed=0)
        assert result.data_source == DATA_SOURCE_MATRIX

    def test_store_error_falls_back(self):
        store = MagicMock()
        store.get_posterior.side_effect = RuntimeError("database unavailable")
        sim = MCMCSimulator(StubNetwork(), store, SimulatorConfig(iterations=200))
        result = sim.simulate_matchup("duke", "unc", seed=0)
        assert result.data_source == DATA_SOURCE_GENERATED
        store.get_posterior.assert_called_once_with("duke")

    @pytest.mark.parametrize(
        "bad",
        [
            {"home": {"transitionProbs": [0.5] * 8}, "away": {"scoreProb": 0.5}},
            [[0.1] * 8, [0.1] * 8],
            "not a matrix",
        ],
    )
    def test_bad_fallback_matrix_uses_generated(self, simulator, bad):
        result = simulator.simulate_matchup("duke", "unc", fallback_matrix=bad, seed=0)
        assert result.data_source == DATA_SOURCE_GENERATED

    @pytest.mark.parametrize("context", [np.ones(9), np.ones((2, 10)), "home"])
    def test_malformed_context_uses_generated(self, context):
        sim = MCMCSimulator(posterior_store=InMemoryPosteriorStore(), config=SimulatorConfig(iterations=100))
        result = sim.simulate_matchup("a", "b", context=context, seed=1)
        assert result.data_source == DATA_SOURCE_GENERATED
        assert result.iterations == 100

    def test_malformed_context_on_latent_path_degrades(self, populated_store):
        sim = MCMCSimulator(StubNetwork(), populated_store, SimulatorConfig(iterations=100))
        result = sim.simulate_matchup("duke", "unc", context=np.ones(9), fallback_matrix=LEGACY, seed=1)
        assert result.data_source == DATA_SOURCE_MATRIX

    def test_raw_neutral_context_vector(self, simulator):
        vec = GameContext(is_neutral=True).to_vector()
        result = simulator.simulate_matchup("a", "b", context=vec, seed=0, iterations=4000)
        assert abs(result.avg_margin) < 1.5

    def test_network_error_falls_back(self, populated_store):
        class BrokenNetwork(StubNetwork):
            def forward(self, inputs):
                raise RuntimeError("weights missing")

        sim = MCMCSimulator(BrokenNetwork(), populated_store, SimulatorConfig(iterations=200))
        result = sim.simulate_matchup("duke", "unc", seed=0)
        assert result.data_source == DATA_SOURCE_GENERATED

    def test_invalid_network_output_falls_back(self, populated_store):
        sim = MCMCSimulator(StubNetwork(np.full(8, 0.5)), populated_store, SimulatorConfig(iterations=200))
        result = sim.simulate_matchup("duke", "unc", seed=0)
        assert result.data_source == DATA_SOURCE_GENERATED

    def test_unsupported_sport_raises(self, simulator):
        with pytest.raises(UnsupportedSportError):
            simulator.simulate_matchup("duke", "unc", sport="cricket")

    def test_non_basketball_skips_latent(self, populated_store):
        network = StubNetwork()
        sim = MCMCSimulator(network, populated_store, SimulatorConfig(iterations=200))
        result = sim.simulate_matchup("duke", "unc", sport="nhl", seed=0)
        assert result.data_source == DATA_SOURCE_GENERATED
        assert result.sport == "nhl"
        assert network.forward_calls == 0

    def test_neutral_site_generated_matrix_is_even(self, simulator):
        result = simulator.simulate_matchup("a", "b", GameContext(is_neutral=True), seed=0, iterations=4000)
        assert abs(result.avg_margin) < 1.5


class TestUncertainty:
    """Confidence from posterior spread"""

    def test_confidence_bounds(self):
        assert prediction_confidence(np.full(16, 0.1), np.full(16, 0.1)) == pytest.approx(1.0)
        assert prediction_confidence(np.ones(16), np.ones(16)) == pytest.approx(0.0)
        assert prediction_confidence(np.full(16, 2.0), np.full(16, 2.0)) == 0.0

    def test_tighter_posteriors_more_confident(self):
        assert prediction_confidence(np.full(4, 0.2), np.full(4, 0.2)) > prediction_confidence(
            np.full(4, 0.6), np.full(4, 0.6)
        )

    def test_sampling_shape(self):
        draws = sample_from_distribution(np.zeros(16), np.ones(16), np.random.default_rng(0), size=100)
        assert draws.shape == (100, 16)
