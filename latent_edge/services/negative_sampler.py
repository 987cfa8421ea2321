"""
Negative-sample cache for contrastive pretraining.

Holds a bounded pool of other games' transition labels
(``game_id → {"home": label, "away": label}``) and draws K negatives for a
positive game, never including that game's own labels.

Refresh contract
----------------
* The pool is (re)loaded from the injected :class:`LabelSource` when it is
  empty, and every ``refresh_interval`` sampling calls thereafter.
* When the pool (minus the positive game) cannot supply K negatives, up to
  ``2·K`` more games are fetched on demand and merged into the pool.

Concurrency
-----------
The pool is an immutable mapping replaced wholesale under a lock (atomic
swap).  A reader takes a reference to the current mapping once and works
from that snapshot, so a concurrent refresh never changes the data under it.

The cache is an ordinary object passed to whoever needs it.  There is no
module-level instance.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

import numpy as np

from latent_edge.core.outcomes import N_OUTCOMES, validate_distribution

logger = logging.getLogger(__name__)

LabelPair = Mapping[str, np.ndarray]


class LabelSource(ABC):
    """Where labelled games come from (normally the ``games`` table)."""

    @abstractmethod
    def fetch_labels(self, limit: int, exclude_game_id: Optional[str] = None) -> Dict[str, Any]:
        """Return up to ``limit`` games as ``{game_id: raw_payload}``.

        ``raw_payload`` is a dict ``{"home": [...], "away": [...]}`` or its
        JSON text.  Games should be returned in random order.
        """

    @abstractmethod
    def get_labels(self, game_id: str) -> Optional[Any]:
        """Return one game's raw label payload, or None."""


def deserialize_label(data: Any) -> Optional[np.ndarray]:
    """Parse one side's label.  Returns None for missing or invalid data."""
    if data is None:
        return None
    try:
        if isinstance(data, (bytes, bytearray)):
            data = data.decode("utf-8")
        if isinstance(data, str):
            data = json.loads(data)
        arr = np.asarray(data, dtype=float)
    except (ValueError, TypeError, UnicodeDecodeError) as exc:
        logger.warning("Failed to deserialize transition probabilities: %s", exc)
        return None
    if not validate_distribution(arr):
        logger.warning("Discarding invalid transition label %s", arr.tolist() if arr.ndim else arr)
        return None
    arr.setflags(write=False)
    return arr


def deserialize_label_pair(payload: Any) -> Optional[Dict[str, np.ndarray]]:
    """Parse ``{"home": ..., "away": ...}`` (dict or JSON text)."""
    try:
        if isinstance(payload, (bytes, bytearray)):
            payload = payload.decode("utf-8")
        if isinstance(payload, str):
            payload = json.loads(payload)
    except (ValueError, UnicodeDecodeError) as exc:
        logger.warning("Failed to deserialize label payload: %s", exc)
        return None
    if not isinstance(payload, Mapping):
        return None
    home = deserialize_label(payload.get("home"))
    away = deserialize_label(payload.get("away"))
    if home is None or away is None:
        return None
    return {"home": home, "away": away}


class NegativeSampleCache:
    """Bounded, refreshable pool of negative transition labels."""

    def __init__(
        self,
        source: LabelSource,
        cache_size: int = 1000,
        refresh_interval: int = 100,
        rng: Optional[np.random.Generator] = None,
    ):
        if cache_size <= 0:
            raise ValueError("cache_size must be positive")
        if refresh_interval <= 0:
            raise ValueError("refresh_interval must be positive")
        self.source = source
        self.cache_size = cache_size
        self.refresh_interval = refresh_interval
        self._rng = rng or np.random.default_rng()
        self._lock = threading.Lock()
        self._pool: Mapping[str, LabelPair] = MappingProxyType({})
        self._samples_served = 0
        self._refreshes = 0

    # ------------------------------------------------------------------ #
    #  Pool management                                                     #
    # ------------------------------------------------------------------ #

    def _parse_games(self, raw_games: Mapping[str, Any]) -> Dict[str, LabelPair]:
        parsed: Dict[str, LabelPair] = {}
        for game_id, payload in raw_games.items():
            pair = deserialize_label_pair(payload)
            if pair is not None:
                parsed[str(game_id)] = pair
        return parsed

    def refresh(self) -> int:
        """Reload the pool from the source.  Returns the new pool size."""
        fresh = self._parse_games(self.source.fetch_labels(self.cache_size))
        with self._lock:
            self._pool = MappingProxyType(fresh)
            self._refreshes += 1
        logger.info("Refreshed negative sample cache: %d games", len(fresh))
        return len(fresh)

    def _merge(self, extra: Dict[str, LabelPair]) -> Mapping[str, LabelPair]:
        with self._lock:
            merged = dict(self._pool)
            for game_id, pair in extra.items():
                if len(merged) >= self.cache_size and game_id not in merged:
                    break
                merged[game_id] = pair
            self._pool = MappingProxyType(merged)
            return self._pool

    def snapshot(self) -> Mapping[str, LabelPair]:
        """The current pool.  Safe to iterate while a refresh happens."""
        return self._pool

    # ------------------------------------------------------------------ #
    #  Sampling                                                            #
    # ------------------------------------------------------------------ #

    @staticmethod
    def _flatten(pool: Mapping[str, LabelPair], exclude_game_id: Optional[str]) -> List[np.ndarray]:
        labels: List[np.ndarray] = []
        for game_id, pair in pool.items():
            if game_id == exclude_game_id:
                continue
            labels.append(pair["home"])
            labels.append(pair["away"])
        return labels

    def sample_negatives(self, positive_game_id: Optional[str], count: int) -> np.ndarray:
        """Draw up to ``count`` negative labels, excluding ``positive_game_id``.

        Returns:
            ``(k, 8)`` array with ``k <= count``.  ``k`` is smaller than
            ``count`` only when the source cannot supply enough labelled
            games.
        """
        exclude = str(positive_game_id) if positive_game_id is not None else None

        with self._lock:
            due = len(self._pool) == 0 or self._samples_served % self.refresh_interval == 0
            self._samples_served += 1
        if due:
            self.refresh()

        pool = self.snapshot()
        available = self._flatten(pool, exclude)

        if len(available) < count:
            logger.warning(
                "Insufficient negative samples in cache (%d < %d), fetching more",
                len(available), count,
            )
            extra = self._parse_games(self.source.fetch_labels(count * 2, exclude_game_id=exclude))
            extra.pop(exclude, None)
            pool = self._merge(extra)
            available = self._flatten(pool, exclude)
            if len(available) < count:
                # The pool is capped; on-demand games still count for this draw.
                seen = set(pool)
                for game_id, pair in extra.items():
                    if game_id not in seen:
                        available.extend((pair["home"], pair["away"]))

        if not available:
            return np.empty((0, N_OUTCOMES))

        k = min(count, len(available))
        with self._lock:
            idx = self._rng.choice(len(available), size=k, replace=False)
        return np.stack([available[i] for i in idx])

    def sample_contrastive_pair(self, game_id: str, count: int) -> Optional[Dict[str, np.ndarray]]:
        """Positive labels for ``game_id`` plus ``count`` negatives.

        Returns None when the game has no usable labels.
        """
        positive = deserialize_label_pair(self.source.get_labels(game_id))
        if positive is None:
            logger.warning("Game %s has no usable transition labels", game_id)
            return None
        return {
            "home": positive["home"],
            "away": positive["away"],
            "negatives": self.sample_negatives(game_id, count),
        }

    # ------------------------------------------------------------------ #
    #  Introspection                                                       #
    # ------------------------------------------------------------------ #

    def stats(self) -> Dict[str, int]:
        return {
            "cache_size": len(self._pool),
            "max_cache_size": self.cache_size,
            "samples_served": self._samples_served,
            "refreshes": self._refreshes,
            "refresh_interval": self.refresh_interval,
        }

    def clear(self) -> None:
        with self._lock:
            self._pool = MappingProxyType({})
            self._samples_served = 0
        logger.debug("Cleared negative sample cache")
