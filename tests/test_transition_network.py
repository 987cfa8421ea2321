"""
Tests for the transition probability network
Run with: pytest tests/test_transition_network.py -v
"""

import numpy as np
import pytest

from latent_edge.core.errors import InvalidDistributionError, ModelIntegrityError
from latent_edge.core.game_context import GameContext
from latent_edge.core.outcomes import OUTCOME_LABELS
from latent_edge.services.transition_network import (
    TransitionProbabilityNetwork,
    load_default_network,
)


@pytest.fixture
def network():
    return TransitionProbabilityNetwork(seed=7)


def _row(network, rng):
    mu_a, mu_b = rng.normal(size=16), rng.normal(size=16)
    return network.build_input(mu_a, np.ones(16), mu_b, np.ones(16), GameContext())


class TestForward:
    """Inference"""

    def test_input_width(self, network):
        assert network.input_dim == 74

    def test_single_row(self, network):
        probs = network.forward(_row(network, np.random.default_rng(0)))
        assert probs.shape == (8,)
        assert probs.sum() == pytest.approx(1.0, abs=1e-9)
        assert np.all(probs >= 0)

    def test_batch(self, network):
        rng = np.random.default_rng(1)
        batch = np.stack([_row(network, rng) for _ in range(5)])
        probs = network.predict_batch(batch)
        assert probs.shape == (5, 8)
        np.testing.assert_allclose(probs.sum(axis=1), 1.0, atol=1e-9)

    def test_deterministic(self, network):
        row = _row(network, np.random.default_rng(2))
        np.testing.assert_array_equal(network.forward(row), network.forward(row))

    def test_same_seed_same_weights(self):
        row = _row(TransitionProbabilityNetwork(seed=3), np.random.default_rng(3))
        a = TransitionProbabilityNetwork(seed=3).forward(row)
        b = TransitionProbabilityNetwork(seed=3).forward(row)
        np.testing.assert_allclose(a, b)

    def test_labeled_prediction(self, network):
        out = network.predict_labeled(np.zeros(16), np.ones(16), np.zeros(16), np.ones(16))
        assert list(out) == list(OUTCOME_LABELS)

    def test_wrong_latent_length(self, network):
        with pytest.raises(ValueError):
            network.build_input(np.zeros(8), np.ones(16), np.zeros(16), np.ones(16))

    def test_wrong_width(self, network):
        with pytest.raises(ValueError):
            network.forward(np.zeros(70))


class TestTraining:
    """Gradient steps"""

    def test_loss_decreases(self, network):
        row = _row(network, np.random.default_rng(4))
        target = np.array([0.4, 0.2, 0.1, 0.1, 0.1, 0.0, 0.05, 0.05])
        first = network.train_step(row, target)
        for _ in range(100):
            last = network.train_step(row, target)
        assert last < first
        assert network.steps == 101

    def test_invalid_target(self, network):
        row = _row(network, np.random.default_rng(5))
        with pytest.raises(InvalidDistributionError):
            network.compute_gradients(row, np.full(8, 0.5))

    def test_fit_returns_epoch_losses(self, network, tmp_path):
        rng = np.random.default_rng(6)
        x = np.stack([_row(network, rng) for _ in range(10)])
        y = np.tile([0.5, 0.1, 0.1, 0.1, 0.1, 0.0, 0.05, 0.05], (10, 1))
        path = tmp_path / "net.pt"
        history = network.fit(x, y, epochs=3, batch_size=4, seed=0, checkpoint_path=path)
        assert len(history) == 3
        assert path.exists()


class TestPersistence:
    """Save / load"""

    def test_bytes_round_trip(self, network):
        row = _row(network, np.random.default_rng(8))
        restored = TransitionProbabilityNetwork.from_bytes(network.state_bytes())
        np.testing.assert_allclose(restored.forward(row), network.forward(row))

    def test_file_round_trip(self, network, tmp_path):
        path = tmp_path / "models" / "net.pt"
        network.save(path)
        restored = TransitionProbabilityNetwork.load(path)
        assert restored.architecture() == network.architecture()

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            TransitionProbabilityNetwork.load(tmp_path / "nope.pt")
        assert load_default_network(str(tmp_path / "nope.pt")) is None

    def test_architecture_mismatch(self, network):
        small = TransitionProbabilityNetwork(latent_dim=8, seed=1)
        with pytest.raises(ModelIntegrityError):
            small.load_state_bytes(network.state_bytes())
