"""
Bayesian posterior updater.

After each observed game a team's Gaussian posterior is fused with a
likelihood derived from how well the transition network predicted the
team's actual possession outcomes::

    pred         = network([mu, sigma², opp_mu, opp_sigma², context])
    error        = CE(actual, pred) / -log(1e-8)              ∈ [0, 1]
    signal       = tanh( Σ w_i · (actual_i − pred_i) )        ∈ (-1, 1)

    lik_sigma    = max(min_u, base · (1 + 2·error))
    lik_mu       = mu + signal · (1 − error) · learning_rate

    precision    = 1/prior_sigma² + weight/lik_sigma²
    post_sigma   = sqrt(1 / precision)
    post_mu      = post_sigma² · (prior_mu/prior_sigma² + weight·lik_mu/lik_sigma²)

A surprising game (large error) produces a wide likelihood and therefore a
small update; a well-predicted game tightens the posterior.  Context then
rescales the posterior sigma (neutral site ×1.1, postseason ×0.95,
back-to-back ×1.15) before it is clamped to ``[min_u, max_u]``.

Thread safety
-------------
Every read-modify-write of a team's posterior happens under that team's
lock, so two games finishing at the same moment for one team are applied
one after the other and neither update is lost.  ``update_game`` takes
both teams' locks in sorted order.
"""

import logging
import math
import threading
from contextlib import ExitStack
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np

from latent_edge.core.differentiable import DifferentiableModel
from latent_edge.core.errors import InvalidPosteriorError, LatentEdgeError
from latent_edge.core.game_context import GameContext, context_vector
from latent_edge.core.model_config import LatentConfig, UpdaterConfig
from latent_edge.core.outcomes import require_valid_distribution
from latent_edge.core.posterior import PosteriorStore, TeamPosterior
from latent_edge.services.season_transition import SeasonTransitionManager
from latent_edge.utils.clock import utc_now

logger = logging.getLogger(__name__)

PROB_CLAMP = 1e-8
MAX_CROSS_ENTROPY = -math.log(PROB_CLAMP)

ContextLike = Union[GameContext, np.ndarray, Sequence[float], None]


# ---------------------------------------------------------------------------
# Pure pieces
# ---------------------------------------------------------------------------

def build_likelihood_input(
    team: TeamPosterior,
    opponent: Optional[TeamPosterior],
    context: ContextLike = None,
) -> np.ndarray:
    """``[mu, sigma², opp_mu, opp_sigma², context]``.

    An unknown opponent is represented by the neutral prior (zeros / ones).
    """
    if opponent is not None:
        opp_mu, opp_var = opponent.mu, opponent.variance
    else:
        opp_mu, opp_var = np.zeros(team.latent_dim), np.ones(team.latent_dim)
    return np.concatenate([team.mu, team.variance, opp_mu, opp_var, context_vector(context)])


def prediction_error(predicted: Sequence[float], actual: Sequence[float]) -> float:
    """Normalized cross-entropy of ``actual`` under ``predicted``, in [0, 1]."""
    p = np.clip(np.asarray(predicted, dtype=float), PROB_CLAMP, 1 - PROB_CLAMP)
    a = np.clip(np.asarray(actual, dtype=float), PROB_CLAMP, 1 - PROB_CLAMP)
    ce = float(-np.sum(a * np.log(p)))
    return min(max(ce / MAX_CROSS_ENTROPY, 0.0), 1.0)


def performance_signal(
    actual: Sequence[float],
    predicted: Sequence[float],
    weights: Sequence[float],
) -> float:
    """Value-weighted over/under-performance, squashed to (-1, 1)."""
    diff = np.asarray(actual, dtype=float) - np.asarray(predicted, dtype=float)
    return float(np.tanh(np.dot(np.asarray(weights, dtype=float), diff)))


def error_to_likelihood(
    mu: np.ndarray,
    error: float,
    signal: float,
    config: UpdaterConfig,
    min_uncertainty: float = 0.1,
) -> Tuple[np.ndarray, np.ndarray]:
    lik_sigma = max(min_uncertainty, config.base_observation_uncertainty * (1 + 2 * error))
    lik_mu = np.asarray(mu, dtype=float) + signal * (1 - error) * config.learning_rate
    return lik_mu, np.full(len(lik_mu), lik_sigma)


def fuse_gaussians(
    prior_mu: np.ndarray,
    prior_sigma: np.ndarray,
    lik_mu: np.ndarray,
    lik_sigma: np.ndarray,
    weight: float = 1.0,
) -> Tuple[np.ndarray, np.ndarray]:
    """Per-dimension precision-weighted product of two Gaussians."""
    prior_precision = 1.0 / np.square(prior_sigma)
    lik_precision = weight / np.square(lik_sigma)
    post_var = 1.0 / (prior_precision + lik_precision)
    post_mu = post_var * (prior_precision * prior_mu + lik_precision * lik_mu)
    return post_mu, np.sqrt(post_var)


def _context_flags(context: ContextLike) -> Tuple[bool, bool, float]:
    """(neutral, postseason, rest_days) from a context object or vector."""
    if isinstance(context, GameContext):
        return context.is_neutral, context.is_postseason, context.rest_days
    vec = context_vector(context)
    return abs(vec[0] - 0.5) < 1e-9, vec[1] >= 0.5, float(vec[2] * 7.0)


def apply_context_adjustments(
    sigma: np.ndarray,
    context: ContextLike,
    config: UpdaterConfig,
    min_uncertainty: float = 0.1,
    max_uncertainty: float = 2.0,
    team_id: str = "",
) -> np.ndarray:
    """Scale sigma for game circumstances, then clamp to the allowed range."""
    neutral, postseason, rest_days = _context_flags(context)
    factor = 1.0
    if neutral:
        factor *= config.neutral_site_multiplier
    if postseason:
        factor *= config.postseason_multiplier
    if rest_days < config.back_to_back_rest_days:
        factor *= config.back_to_back_multiplier

    raw = np.asarray(sigma, dtype=float) * factor
    clamped = np.clip(raw, min_uncertainty, max_uncertainty)
    if not np.array_equal(raw, clamped):
        logger.warning(
            "Clamped posterior sigma for %s: raw range [%.4f, %.4f] outside [%s, %s]",
            team_id or "?", float(raw.min()), float(raw.max()), min_uncertainty, max_uncertainty,
        )
    return clamped


# ---------------------------------------------------------------------------
# Game observations
# ---------------------------------------------------------------------------

@dataclass
class GameObservation:
    """A completed game with both sides' transition labels.

    ``context`` is from the home team's perspective; the away team sees
    ``context.for_opponent()``.
    """

    game_id: str
    home_team_id: str
    away_team_id: str
    home_label: np.ndarray
    away_label: np.ndarray
    game_date: Optional[Union[date, datetime]] = None
    context: GameContext = field(default_factory=GameContext)


@dataclass
class GameUpdateResult:
    game_id: str
    home_updated: bool = False
    away_updated: bool = False
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.home_updated and self.away_updated


# ---------------------------------------------------------------------------
# Updater
# ---------------------------------------------------------------------------

class BayesianPosteriorUpdater:
    """Online precision-weighted posterior updates, one game at a time."""

    def __init__(
        self,
        network: DifferentiableModel,
        repository: Optional[PosteriorStore] = None,
        config: Optional[UpdaterConfig] = None,
        season_manager: Optional[SeasonTransitionManager] = None,
        latent_config: Optional[LatentConfig] = None,
    ):
        self.network = network
        self.repository = repository
        self.config = config or UpdaterConfig()
        self.latent_config = latent_config or LatentConfig()
        self.season_manager = season_manager or SeasonTransitionManager(latent_config=self.latent_config)
        self._locks: Dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    # ------------------------------------------------------------------ #
    #  Locks                                                               #
    # ------------------------------------------------------------------ #

    def team_lock(self, team_id: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(team_id)
            if lock is None:
                lock = self._locks[team_id] = threading.RLock()
            return lock

    # ------------------------------------------------------------------ #
    #  Pure update                                                         #
    # ------------------------------------------------------------------ #

    def update_posterior(
        self,
        prior: TeamPosterior,
        observed: Sequence[float],
        context: ContextLike = None,
        opponent: Optional[TeamPosterior] = None,
    ) -> TeamPosterior:
        """Fold one observed label into ``prior`` and return the new posterior.

        ``games_processed`` and ``season`` are left for the caller to set.

        Raises:
            InvalidDistributionError: ``observed`` is not a valid label.
            InvalidPosteriorError: The prior, or the result, is invalid.
        """
        cfg = self.config
        lat = self.latent_config
        actual = require_valid_distribution(observed, what=f"observed label for {prior.team_id}")
        prior.validate(lat.latent_dim, lat.min_uncertainty, lat.max_uncertainty)

        inputs = build_likelihood_input(prior, opponent, context)
        predicted = np.asarray(self.network.forward(inputs), dtype=float)

        error = prediction_error(predicted, actual)
        signal = performance_signal(actual, predicted, cfg.performance_weights)
        lik_mu, lik_sigma = error_to_likelihood(prior.mu, error, signal, cfg, lat.min_uncertainty)
        post_mu, post_sigma = fuse_gaussians(prior.mu, prior.sigma, lik_mu, lik_sigma, cfg.likelihood_weight)

        post_sigma = np.maximum(post_sigma, lat.min_uncertainty)
        post_sigma = apply_context_adjustments(
            post_sigma, context, cfg, lat.min_uncertainty, lat.max_uncertainty, prior.team_id
        )

        posterior = prior.with_update(post_mu, post_sigma, last_updated=utc_now())
        posterior.validate(lat.latent_dim, lat.min_uncertainty, lat.max_uncertainty)

        if cfg.online_training:
            loss = self.network.train_step(inputs, actual)
            logger.debug("Online training step for %s: loss=%.4f", prior.team_id, loss)

        logger.debug(
            "Updated %s: error=%.3f signal=%+.3f avg sigma %.3f → %.3f",
            prior.team_id, error, signal, prior.mean_uncertainty, posterior.mean_uncertainty,
        )
        return posterior

    # ------------------------------------------------------------------ #
    #  Stored updates                                                      #
    # ------------------------------------------------------------------ #

    def _require_repository(self) -> PosteriorStore:
        if self.repository is None:
            raise LatentEdgeError("BayesianPosteriorUpdater has no repository configured")
        return self.repository

    def _load_prior(self, team_id: str, season: str) -> TeamPosterior:
        repo = self._require_repository()
        prior = repo.get_or_create_posterior(team_id, season)
        rolled = self.season_manager.maybe_apply(prior, season)
        if rolled is not prior:
            rolled = repo.save_posterior(rolled)
        return rolled

    def _season(self, game_date: Optional[Union[date, datetime]]) -> str:
        return self.season_manager.season_for(game_date or utc_now())

    def update_team(
        self,
        team_id: str,
        observed: Sequence[float],
        context: ContextLike = None,
        opponent_id: Optional[str] = None,
        game_date: Optional[Union[date, datetime]] = None,
    ) -> TeamPosterior:
        """Read, update and persist one team's posterior under its lock."""
        repo = self._require_repository()
        season = self._season(game_date)
        with self.team_lock(team_id):
            prior = self._load_prior(team_id, season)
            opponent = repo.get_posterior(opponent_id) if opponent_id else None
            posterior = self.update_posterior(prior, observed, context, opponent)
            return repo.update_posterior_after_game(team_id, posterior, season)

    def update_game(self, observation: GameObservation) -> GameUpdateResult:
        """Update both teams from one game, each against the other's pre-game prior."""
        repo = self._require_repository()
        result = GameUpdateResult(game_id=observation.game_id)
        season = self._season(observation.game_date)
        home_id, away_id = observation.home_team_id, observation.away_team_id

        with ExitStack() as stack:
            for team_id in sorted({home_id, away_id}):
                stack.enter_context(self.team_lock(team_id))

            home_prior = self._load_prior(home_id, season)
            away_prior = self._load_prior(away_id, season)

            sides = (
                ("home", home_prior, away_prior, observation.home_label, observation.context),
                ("away", away_prior, home_prior, observation.away_label, observation.context.for_opponent()),
            )
            for side, prior, opponent, label, context in sides:
                try:
                    posterior = self.update_posterior(prior, label, context, opponent)
                    repo.update_posterior_after_game(prior.team_id, posterior, season)
                except (LatentEdgeError, FloatingPointError) as exc:
                    logger.error("Game %s: %s update for %s failed: %s", observation.game_id, side, prior.team_id, exc)
                    result.errors.append(f"{side}: {exc}")
                    continue
                setattr(result, f"{side}_updated", True)

        return result

    def batch_update(self, observations: Iterable[GameObservation]) -> List[GameUpdateResult]:
        results = [self.update_game(obs) for obs in observations]
        ok = sum(1 for r in results if r.success)
        logger.info("Batch posterior update: %d/%d games fully applied", ok, len(results))
        return results

    # ------------------------------------------------------------------ #
    #  Season rollover                                                     #
    # ------------------------------------------------------------------ #

    def rollover_team(self, team_id: str, season: str) -> Optional[TeamPosterior]:
        """Apply the season regression to one stored posterior if it is stale."""
        repo = self._require_repository()
        with self.team_lock(team_id):
            posterior = repo.get_posterior(team_id)
            if posterior is None or not self.season_manager.needs_transition(posterior, season):
                return None
            try:
                posterior.validate(
                    self.latent_config.latent_dim,
                    self.latent_config.min_uncertainty,
                    self.latent_config.max_uncertainty,
                )
            except InvalidPosteriorError as exc:
                logger.error("Skipping rollover for %s: %s", team_id, exc)
                return None
            return repo.save_posterior(self.season_manager.apply(posterior, season))

    def rollover_teams(self, team_ids: Iterable[str], season: str) -> Dict[str, int]:
        """Roll every stale posterior in ``team_ids`` into ``season``."""
        rolled = skipped = 0
        for team_id in team_ids:
            if self.rollover_team(team_id, season) is None:
                skipped += 1
            else:
                rolled += 1
        logger.info("Season rollover to %s: %d rolled, %d unchanged", season, rolled, skipped)
        return {"rolled": rolled, "unchanged": skipped}
