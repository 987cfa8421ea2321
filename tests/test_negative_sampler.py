"""
Tests for the negative sample cache
Run with: pytest tests/test_negative_sampler.py -v
"""

import json
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from conftest import DictLabelSource, one_hot_pair
from latent_edge.services.negative_sampler import (
    NegativeSampleCache,
    deserialize_label,
    deserialize_label_pair,
)


class TestDeserialize:
    """Label payload parsing"""

    def test_list(self):
        arr = deserialize_label([0.125] * 8)
        assert arr.shape == (8,)
        assert not arr.flags.writeable

    def test_json_text_and_bytes(self):
        text = json.dumps([0.125] * 8)
        assert deserialize_label(text) is not None
        assert deserialize_label(text.encode()) is not None

    def test_invalid_returns_none(self):
        assert deserialize_label("not json") is None
        assert deserialize_label([0.5] * 8) is None
        assert deserialize_label(None) is None

    def test_pair(self):
        pair = deserialize_label_pair(json.dumps(one_hot_pair(2)))
        assert set(pair) == {"home", "away"}

    def test_pair_missing_side(self):
        assert deserialize_label_pair({"home": [0.125] * 8}) is None


class TestSampling:
    """Negative draws"""

    def test_excludes_positive_game(self, label_source):
        cache = NegativeSampleCache(label_source, rng=np.random.default_rng(0))
        negatives = cache.sample_negatives("g0", 10)
        assert negatives.shape == (10, 8)
        # g0 home is the only label with all mass on outcome 0
        assert not np.any(negatives[:, 0] == 1.0)

    def test_returns_fewer_when_short(self):
        source = DictLabelSource({"g0": one_hot_pair(0), "g1": one_hot_pair(1)})
        cache = NegativeSampleCache(source, rng=np.random.default_rng(0))
        negatives = cache.sample_negatives("g0", 10)
        assert negatives.shape == (2, 8)

    def test_empty_source(self):
        cache = NegativeSampleCache(DictLabelSource(), rng=np.random.default_rng(0))
        negatives = cache.sample_negatives("g0", 5)
        assert negatives.shape == (0, 8)

    def test_seeded_draws_repeat(self, label_source):
        a = NegativeSampleCache(label_source, rng=np.random.default_rng(5)).sample_negatives("g1", 4)
        b = NegativeSampleCache(label_source, rng=np.random.default_rng(5)).sample_negatives("g1", 4)
        np.testing.assert_array_equal(a, b)

    def test_contrastive_pair(self, label_source):
        cache = NegativeSampleCache(label_source, rng=np.random.default_rng(0))
        pair = cache.sample_contrastive_pair("g2", 4)
        assert pair["negatives"].shape == (4, 8)
        np.testing.assert_array_equal(pair["home"], label_source.games["g2"]["home"])

    def test_contrastive_pair_unknown_game(self, label_source):
        cache = NegativeSampleCache(label_source)
        assert cache.sample_contrastive_pair("missing", 4) is None


class TestCacheLifecycle:
    """Refresh, capacity, atomic swap"""

    def test_refresh_interval(self, label_source):
        cache = NegativeSampleCache(label_source, refresh_interval=2, rng=np.random.default_rng(0))
        for _ in range(3):
            cache.sample_negatives("g0", 2)
        stats = cache.stats()
        assert stats["refreshes"] == 2
        assert stats["samples_served"] == 3

    def test_cache_size_cap(self, label_source):
        cache = NegativeSampleCache(label_source, cache_size=3, rng=np.random.default_rng(0))
        cache.refresh()
        assert cache.stats()["cache_size"] == 3

    def test_snapshot_unchanged_by_refresh(self, label_source):
        cache = NegativeSampleCache(label_source)
        cache.refresh()
        before = cache.snapshot()
        label_source.games["g99"] = one_hot_pair(3)
        cache.refresh()
        assert "g99" not in before
        assert "g99" in cache.snapshot()

    def test_snapshot_is_read_only(self, label_source):
        cache = NegativeSampleCache(label_source)
        cache.refresh()
        with pytest.raises(TypeError):
            cache.snapshot()["new"] = one_hot_pair(0)

    def test_clear(self, label_source):
        cache = NegativeSampleCache(label_source)
        cache.sample_negatives("g0", 2)
        cache.clear()
        assert cache.stats()["cache_size"] == 0
        assert cache.stats()["samples_served"] == 0

    def test_invalid_arguments(self, label_source):
        with pytest.raises(ValueError):
            NegativeSampleCache(label_source, cache_size=0)
        with pytest.raises(ValueError):
            NegativeSampleCache(label_source, refresh_interval=0)

    def test_concurrent_sampling(self, label_source):
        cache = NegativeSampleCache(label_source, refresh_interval=3, rng=np.random.default_rng(0))
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda i: cache.sample_negatives(f"g{i % 6}", 4), range(40)))
        assert all(r.shape == (4, 8) for r in results)
        assert cache.stats()["samples_served"] == 40

    def test_random_draws_hold_lock(self, label_source):
        cache = NegativeSampleCache(label_source, rng=np.random.default_rng(0))
        inner = cache._rng
        held = []

        class RecordingRng:
            def choice(self, *args, **kwargs):
                held.append(cache._lock.locked())
                return inner.choice(*args, **kwargs)

        cache._rng = RecordingRng()
        cache.sample_negatives("g0", 4)
        cache.sample_negatives("g1", 4)
        assert held == [True, True]
