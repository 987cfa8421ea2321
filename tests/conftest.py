"""
Shared fixtures: in-memory database, stub network, in-memory label source.
"""

import json

import numpy as np
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from latent_edge.core.differentiable import DifferentiableModel
from latent_edge.core.outcomes import N_OUTCOMES
from latent_edge.models import Base
from latent_edge.services.negative_sampler import LabelSource


class StubNetwork(DifferentiableModel):
    """Returns the same distribution for every input row."""

    model_name = "StubNetwork"

    def __init__(self, probs=None):
        self.probs = np.full(N_OUTCOMES, 1.0 / N_OUTCOMES) if probs is None else np.asarray(probs, dtype=float)
        self.forward_calls = 0
        self.train_calls = 0

    def forward(self, inputs):
        self.forward_calls += 1
        arr = np.asarray(inputs, dtype=float)
        if arr.ndim == 1:
            return self.probs.copy()
        return np.tile(self.probs, (arr.shape[0], 1))

    def compute_gradients(self, inputs, targets):
        self.train_calls += 1
        return 0.0

    def apply_gradients(self):
        pass

    def state_bytes(self):
        return json.dumps(self.probs.tolist()).encode()

    def load_state_bytes(self, data):
        self.probs = np.asarray(json.loads(data), dtype=float)


class DictLabelSource(LabelSource):
    """Label source over a plain ``{game_id: {"home": [...], "away": [...]}}`` dict."""

    def __init__(self, games=None):
        self.games = dict(games or {})
        self.fetch_calls = 0

    def fetch_labels(self, limit, exclude_game_id=None):
        self.fetch_calls += 1
        out = {}
        for game_id, payload in self.games.items():
            if game_id == exclude_game_id:
                continue
            out[game_id] = payload
            if len(out) >= limit:
                break
        return out

    def get_labels(self, game_id):
        return self.games.get(game_id)


def one_hot_pair(i: int) -> dict:
    """Distinguishable labels: home all on outcome i % 8, away on (i + 1) % 8."""
    home = [0.0] * N_OUTCOMES
    away = [0.0] * N_OUTCOMES
    home[i % N_OUTCOMES] = 1.0
    away[(i + 1) % N_OUTCOMES] = 1.0
    return {"home": home, "away": away}


@pytest.fixture
def uniform_network():
    return StubNetwork()


@pytest.fixture
def label_source():
    return DictLabelSource({f"g{i}": one_hot_pair(i) for i in range(6)})


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()
