"""``TeamPosterior``: the per-team Gaussian skill representation.

A posterior is a diagonal Gaussian over the latent space: one mean and one
standard deviation per dimension.  It is created as a neutral prior
(``mu = 0``, ``sigma = 1``) the first time a team is referenced, replaced
exactly once per observed game by the posterior updater, and regressed
toward the neutral prior at season boundaries.  Instances are never mutated
in place; every update returns a new object.

Persistence goes through :meth:`TeamPosterior.to_payload` /
:meth:`TeamPosterior.from_payload`, which produce the JSON-safe dict stored
in ``teams.statistical_representation``::

    {"mu": [16 floats], "sigma": [16 floats], "games_processed": 12,
     "last_season": "2025-26", "last_updated": "...", "type": "bayesian_posterior",
     "model_version": "v1.0", "season_history": [...], "team_name": "..."}
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional

import numpy as np

from latent_edge.core.errors import InvalidPosteriorError
from latent_edge.utils.clock import utc_now

#: Games-to-confidence time constant: confidence(g) = 1 - exp(-g / 4.3).
CONFIDENCE_TIME_CONSTANT = 4.3

POSTERIOR_PAYLOAD_TYPE = "bayesian_posterior"
DEFAULT_MODEL_VERSION = "v1.0"


def confidence_from_games(games_processed: int) -> float:
    """Confidence in a posterior after ``games_processed`` observed games.

    Monotonically non-decreasing, 0 at zero games and approaching 1.
    """
    return 1.0 - math.exp(-max(games_processed, 0) / CONFIDENCE_TIME_CONSTANT)


@dataclass(frozen=True, eq=False)
class TeamPosterior:
    """Diagonal-Gaussian latent representation of one team.

    Attributes:
        team_id: Stable team identifier.
        mu: Mean vector, length ``latent_dim``.
        sigma: Standard-deviation vector, length ``latent_dim``.
        games_processed: Games folded into this posterior this season.
        season: Season label (``"2025-26"``) of the last update.
        last_updated: Timestamp of the last update.
        team_name: Display name carried for reporting.
        model_version: Version of the encoder that produced the initial prior.
        season_history: Records appended at each season rollover.
    """

    team_id: str
    mu: np.ndarray = field(repr=False)
    sigma: np.ndarray = field(repr=False)
    games_processed: int = 0
    season: Optional[str] = None
    last_updated: Optional[datetime] = None
    team_name: Optional[str] = None
    model_version: str = DEFAULT_MODEL_VERSION
    season_history: List[Dict[str, Any]] = field(default_factory=list, repr=False)

    def __post_init__(self) -> None:
        mu = np.array(self.mu, dtype=float)
        sigma = np.array(self.sigma, dtype=float)
        mu.setflags(write=False)
        sigma.setflags(write=False)
        object.__setattr__(self, "mu", mu)
        object.__setattr__(self, "sigma", sigma)

    # ------------------------------------------------------------------ #
    #  Constructors                                                        #
    # ------------------------------------------------------------------ #

    @classmethod
    def neutral(
        cls,
        team_id: str,
        latent_dim: int = 16,
        season: Optional[str] = None,
        team_name: Optional[str] = None,
    ) -> TeamPosterior:
        """Neutral prior: ``mu = 0``, ``sigma = 1`` in every dimension."""
        return cls(
            team_id=team_id,
            mu=np.zeros(latent_dim),
            sigma=np.ones(latent_dim),
            games_processed=0,
            season=season,
            last_updated=utc_now(),
            team_name=team_name,
        )

    # ------------------------------------------------------------------ #
    #  Derived quantities                                                  #
    # ------------------------------------------------------------------ #

    @property
    def latent_dim(self) -> int:
        return int(self.mu.shape[0])

    @property
    def variance(self) -> np.ndarray:
        return self.sigma ** 2

    @property
    def mean_uncertainty(self) -> float:
        return float(np.mean(self.sigma))

    @property
    def confidence(self) -> float:
        return confidence_from_games(self.games_processed)

    def with_update(self, mu: np.ndarray, sigma: np.ndarray, **changes: Any) -> TeamPosterior:
        """Return a copy carrying new ``mu`` / ``sigma`` (and any other fields)."""
        return replace(self, mu=mu, sigma=sigma, **changes)

    # ------------------------------------------------------------------ #
    #  Validation                                                          #
    # ------------------------------------------------------------------ #

    def validate(
        self,
        latent_dim: int = 16,
        min_uncertainty: float = 0.1,
        max_uncertainty: float = 2.0,
    ) -> None:
        """Raise :class:`InvalidPosteriorError` unless the posterior is usable.

        Checks dimensionality, finiteness, and that every ``sigma[i]`` is in
        ``[min_uncertainty, max_uncertainty]`` (inclusive, with a small
        tolerance for float round-off at the bounds).
        """
        if self.mu.shape != (latent_dim,):
            raise InvalidPosteriorError(
                f"Posterior {self.team_id!r}: mu must have length {latent_dim}, "
                f"got shape {self.mu.shape}"
            )
        if self.sigma.shape != (latent_dim,):
            raise InvalidPosteriorError(
                f"Posterior {self.team_id!r}: sigma must have length {latent_dim}, "
                f"got shape {self.sigma.shape}"
            )
        if not np.all(np.isfinite(self.mu)) or not np.all(np.isfinite(self.sigma)):
            raise InvalidPosteriorError(f"Posterior {self.team_id!r} has non-finite values")
        eps = 1e-9
        low = float(self.sigma.min())
        high = float(self.sigma.max())
        if low < min_uncertainty - eps or high > max_uncertainty + eps:
            raise InvalidPosteriorError(
                f"Posterior {self.team_id!r}: sigma range [{low:.4f}, {high:.4f}] "
                f"outside [{min_uncertainty}, {max_uncertainty}]"
            )

    def is_valid(self, latent_dim: int = 16, min_uncertainty: float = 0.1, max_uncertainty: float = 2.0) -> bool:
        try:
            self.validate(latent_dim, min_uncertainty, max_uncertainty)
        except InvalidPosteriorError:
            return False
        return True

    # ------------------------------------------------------------------ #
    #  Persistence                                                         #
    # ------------------------------------------------------------------ #

    def to_payload(self) -> Dict[str, Any]:
        """JSON-safe dict for ``teams.statistical_representation``."""
        return {
            "type": POSTERIOR_PAYLOAD_TYPE,
            "mu": [float(v) for v in self.mu],
            "sigma": [float(v) for v in self.sigma],
            "games_processed": int(self.games_processed),
            "last_season": self.season,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
            "model_version": self.model_version,
            "team_name": self.team_name,
            "season_history": list(self.season_history),
        }

    @classmethod
    def from_payload(cls, team_id: str, payload: Dict[str, Any]) -> TeamPosterior:
        """Rebuild a posterior from :meth:`to_payload` output.

        Legacy payloads that carry only ``mu`` / ``sigma`` are accepted and
        default every other field.
        """
        if "mu" not in payload or "sigma" not in payload:
            raise InvalidPosteriorError(f"Posterior payload for {team_id!r} lacks mu/sigma")
        last_updated = payload.get("last_updated")
        if isinstance(last_updated, str):
            last_updated = datetime.fromisoformat(last_updated)
        return cls(
            team_id=team_id,
            mu=np.asarray(payload["mu"], dtype=float),
            sigma=np.asarray(payload["sigma"], dtype=float),
            games_processed=int(payload.get("games_processed") or 0),
            season=payload.get("last_season") or payload.get("season"),
            last_updated=last_updated,
            team_name=payload.get("team_name"),
            model_version=payload.get("model_version") or DEFAULT_MODEL_VERSION,
            season_history=list(payload.get("season_history") or []),
        )


# ---------------------------------------------------------------------------
# Storage contract
# ---------------------------------------------------------------------------

class PosteriorStore(ABC):
    """Where posteriors live.  ``PosteriorRepository`` is the SQL implementation."""

    @abstractmethod
    def get_posterior(self, team_id: str) -> Optional[TeamPosterior]:
        """Return the stored posterior, or None if the team has none."""

    @abstractmethod
    def get_or_create_posterior(
        self,
        team_id: str,
        season: Optional[str] = None,
        sport: Optional[str] = None,
        name: Optional[str] = None,
    ) -> TeamPosterior:
        """Return the stored posterior, creating a neutral prior if needed."""

    @abstractmethod
    def save_posterior(self, posterior: TeamPosterior) -> TeamPosterior:
        """Persist ``posterior`` as-is."""

    def update_posterior_after_game(
        self,
        team_id: str,
        posterior: TeamPosterior,
        season: Optional[str] = None,
    ) -> TeamPosterior:
        """Persist a post-game posterior, counting the game."""
        updated = replace(
            posterior,
            games_processed=posterior.games_processed + 1,
            season=season or posterior.season,
            last_updated=utc_now(),
        )
        return self.save_posterior(updated)


class InMemoryPosteriorStore(PosteriorStore):
    """Dict-backed store for offline runs and tests."""

    def __init__(self, latent_dim: int = 16):
        self.latent_dim = latent_dim
        self._posteriors: Dict[str, TeamPosterior] = {}

    def get_posterior(self, team_id: str) -> Optional[TeamPosterior]:
        return self._posteriors.get(team_id)

    def get_or_create_posterior(self, team_id, season=None, sport=None, name=None) -> TeamPosterior:
        if team_id not in self._posteriors:
            self._posteriors[team_id] = TeamPosterior.neutral(team_id, self.latent_dim, season, name)
        return self._posteriors[team_id]

    def save_posterior(self, posterior: TeamPosterior) -> TeamPosterior:
        self._posteriors[posterior.team_id] = posterior
        return posterior
