"""
Possession-level Monte Carlo game simulator.

Every simulated game plays ``possessions`` trips for each side.  A trip
draws one of the eight outcomes from the offence's transition vector by
cumulative-probability lookup; an offensive rebound keeps the ball and
draws again.  Scores come from the fixed point table::

    2pt_make 2 · 3pt_make 3 · ft_make 1 · everything else 0

Offensive-rebound chains are capped: after ``max_offensive_rebound_chain``
consecutive continuations the next draw uses the distribution with the
oreb mass removed (renormalized), so the possession always terminates.  If
nothing but oreb has mass the possession ends scoreless.

Where the transition vectors come from (``simulate_matchup``)::

    LATENT      both posteriors valid + network → one batched forward pass
                of N latent samples per team                 "latent-model"
    MATRIX      caller's fallback matrix                     "fallback-matrix"
    GENERATED   builder's league-average matrix              "fallback-generated"

Each step down is logged as a warning; the only exception that escapes is
``UnsupportedSportError``.  The whole simulation is vectorized across
iterations with numpy, so 10,000 games cost a few hundred array operations.

Usage::

    sim = MCMCSimulator(network=net, posterior_store=repo)
    result = sim.simulate_matchup("duke", "unc", context=GameContext(), seed=42)
    print(result.home_win_prob, result.data_source)
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
from scipy.stats import norm, skellam

from latent_edge.core.differentiable import DifferentiableModel
from latent_edge.core.errors import LatentEdgeError, UnsupportedSportError
from latent_edge.core.game_context import GameContext, context_vector
from latent_edge.core.model_config import LatentConfig, SimulatorConfig
from latent_edge.core.outcomes import N_OUTCOMES, OREB, OUTCOME_POINTS, TURNOVER
from latent_edge.core.posterior import PosteriorStore, TeamPosterior
from latent_edge.core.sport_config import FAMILY_BASKETBALL, FAMILY_HOCKEY, SportConfig
from latent_edge.core.transition_matrix import (
    BasketballMatrix,
    DriveProfile,
    FootballMatrix,
    HockeyMatrix,
    ShotProfile,
    TransitionMatrix,
    transition_matrix_from_payload,
)
from latent_edge.services.transition_matrix_builder import TransitionMatrixBuilder

logger = logging.getLogger(__name__)

DATA_SOURCE_LATENT = "latent-model"
DATA_SOURCE_MATRIX = "fallback-matrix"
DATA_SOURCE_GENERATED = "fallback-generated"

MatrixLike = Union[TransitionMatrix, Mapping[str, Any]]
ContextLike = Union[GameContext, np.ndarray, Sequence[float], None]


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class UncertaintyMetrics:
    home_team_uncertainty: float
    away_team_uncertainty: float
    prediction_confidence: float
    home_team_name: Optional[str] = None
    away_team_name: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "home_team_uncertainty": round(self.home_team_uncertainty, 4),
            "away_team_uncertainty": round(self.away_team_uncertainty, 4),
            "prediction_confidence": round(self.prediction_confidence, 4),
            "home_team_name": self.home_team_name,
            "away_team_name": self.away_team_name,
        }


@dataclass
class SimulationResult:
    """Output of a game simulation."""

    iterations: int
    home_scores: np.ndarray = field(repr=False)
    away_scores: np.ndarray = field(repr=False)
    data_source: str = DATA_SOURCE_MATRIX
    sport: str = "ncaa_basketball"
    possessions: int = 70
    uncertainty: Optional[UncertaintyMetrics] = None

    @property
    def home_win_prob(self) -> float:
        return float(np.mean(self.home_scores > self.away_scores))

    @property
    def away_win_prob(self) -> float:
        return float(np.mean(self.away_scores > self.home_scores))

    @property
    def tie_prob(self) -> float:
        return float(np.mean(self.home_scores == self.away_scores))

    @property
    def avg_home_score(self) -> float:
        return float(np.mean(self.home_scores))

    @property
    def avg_away_score(self) -> float:
        return float(np.mean(self.away_scores))

    @property
    def avg_margin(self) -> float:
        return float(np.mean(self.home_scores - self.away_scores))

    @property
    def margin_std(self) -> float:
        return float(np.std(self.home_scores - self.away_scores))

    @property
    def home_score_std(self) -> float:
        return float(np.std(self.home_scores))

    @property
    def away_score_std(self) -> float:
        return float(np.std(self.away_scores))

    def percentile_margin(self, pct: float) -> float:
        return float(np.percentile(self.home_scores - self.away_scores, pct))

    @property
    def analytic_home_win_prob(self) -> float:
        """Closed-form home win probability from the simulated score moments.

        Hockey goals are close to Poisson, so the margin is Skellam; other
        sports use a normal approximation of the margin.
        """
        if SportConfig.for_sport(self.sport).family == FAMILY_HOCKEY:
            lam_home = max(self.avg_home_score, 1e-9)
            lam_away = max(self.avg_away_score, 1e-9)
            return float(skellam.sf(0, lam_home, lam_away))
        sd = self.margin_std
        if sd <= 0:
            return 1.0 if self.avg_margin > 0 else 0.0
        return float(norm.cdf(self.avg_margin / sd))

    def to_dict(self) -> Dict:
        return {
            "iterations": self.iterations,
            "data_source": self.data_source,
            "sport": self.sport,
            "possessions": self.possessions,
            "home_win_prob": round(self.home_win_prob, 4),
            "away_win_prob": round(self.away_win_prob, 4),
            "tie_prob": round(self.tie_prob, 4),
            "avg_home_score": round(self.avg_home_score, 2),
            "avg_away_score": round(self.avg_away_score, 2),
            "avg_margin": round(self.avg_margin, 2),
            "margin_std": round(self.margin_std, 2),
            "home_score_std": round(self.home_score_std, 2),
            "away_score_std": round(self.away_score_std, 2),
            "margin_5th": round(self.percentile_margin(5), 1),
            "margin_95th": round(self.percentile_margin(95), 1),
            "analytic_home_win_prob": round(self.analytic_home_win_prob, 4),
            "uncertainty": self.uncertainty.to_dict() if self.uncertainty else None,
        }


# ---------------------------------------------------------------------------
# Uncertainty helpers
# ---------------------------------------------------------------------------

def team_uncertainty(sigma: Sequence[float]) -> float:
    """Mean posterior standard deviation."""
    return float(np.mean(sigma))


def prediction_confidence(sigma_a: Sequence[float], sigma_b: Sequence[float]) -> float:
    """1 at the minimum uncertainty (0.1), 0 at sigma 1.0 and above."""
    avg = (team_uncertainty(sigma_a) + team_uncertainty(sigma_b)) / 2.0
    return float(np.clip(1.0 - (avg - 0.1) / 0.9, 0.0, 1.0))


def sample_from_distribution(
    mu: Sequence[float],
    sigma: Sequence[float],
    rng: np.random.Generator,
    size: Optional[int] = None,
) -> np.ndarray:
    """``mu + sigma ⊙ ε``, one row per draw when ``size`` is given."""
    mu = np.asarray(mu, dtype=float)
    sigma = np.asarray(sigma, dtype=float)
    shape = mu.shape if size is None else (size,) + mu.shape
    return mu + sigma * rng.standard_normal(shape)


def _opponent_context(context: ContextLike) -> np.ndarray:
    if isinstance(context, GameContext):
        return context.for_opponent().to_vector()
    vec = context_vector(context).copy()
    vec[0] = 1.0 - vec[0]
    return vec


def _is_neutral_site(context: ContextLike) -> bool:
    """Venue flag for the generated matrix; an unreadable context counts as a home game."""
    if isinstance(context, GameContext):
        return context.is_neutral
    try:
        return bool(abs(context_vector(context)[0] - 0.5) < 1e-9)
    except (ValueError, TypeError) as exc:
        logger.warning("Unreadable game context, assuming home venue: %s", exc)
        return False


# ---------------------------------------------------------------------------
# Possession kernels
# ---------------------------------------------------------------------------

def _terminal_probs(probs: np.ndarray) -> np.ndarray:
    """Rows with oreb removed and renormalized; all-oreb rows become a turnover."""
    terminal = probs.copy()
    terminal[:, OREB] = 0.0
    totals = terminal.sum(axis=1)
    dead = totals <= 0
    terminal[dead] = 0.0
    terminal[dead, TURNOVER] = 1.0
    totals[dead] = 1.0
    return terminal / totals[:, None]


def _cumulative(probs: np.ndarray) -> np.ndarray:
    cum = np.cumsum(probs, axis=1)
    cum[:, -1] = 1.0
    return cum


def simulate_basketball_side(
    probs: np.ndarray,
    possessions: int,
    rng: np.random.Generator,
    max_chain: int = 10,
) -> np.ndarray:
    """Points for one side over ``possessions`` trips in each row of ``probs``.

    Args:
        probs: ``(N, 8)`` transition vectors, one per simulated game.
    """
    n = probs.shape[0]
    cum = _cumulative(probs)
    cum_terminal = _cumulative(_terminal_probs(probs))
    points = np.zeros(n, dtype=np.int64)

    for _ in range(possessions):
        active = np.arange(n)
        chain = 0
        while active.size:
            table = cum if chain < max_chain else cum_terminal
            u = rng.random(active.size)
            outcome = np.minimum((u[:, None] >= table[active]).sum(axis=1), N_OUTCOMES - 1)
            ended = outcome != OREB
            points[active[ended]] += OUTCOME_POINTS[outcome[ended]]
            active = active[~ended]
            chain += 1
    return points


def simulate_football_side(profile: DriveProfile, possessions: int, n: int, rng: np.random.Generator) -> np.ndarray:
    shares = np.array([profile.touchdown_prob, profile.field_goal_prob, profile.safety_prob], dtype=float)
    shares = shares / shares.sum() if shares.sum() > 0 else np.array([1.0, 0.0, 0.0])
    cum = np.cumsum(shares)
    cum[-1] = 1.0
    points = np.zeros(n, dtype=np.int64)
    for _ in range(possessions):
        scored = rng.random(n) < profile.score_prob
        kind = (rng.random(n)[:, None] >= cum).sum(axis=1)
        extra_point = rng.random(n) < profile.extra_point_pct
        drive = np.select([kind == 0, kind == 1], [6 + extra_point, 3], default=2)
        points += np.where(scored, drive, 0)
    return points


def simulate_hockey_side(profile: ShotProfile, possessions: int, n: int, rng: np.random.Generator) -> np.ndarray:
    return rng.binomial(possessions, profile.score_prob, size=n).astype(np.int64)


# ---------------------------------------------------------------------------
# Simulator
# ---------------------------------------------------------------------------

class MCMCSimulator:
    """Monte Carlo game simulator with latent / matrix / generated sources."""

    def __init__(
        self,
        network: Optional[DifferentiableModel] = None,
        posterior_store: Optional[PosteriorStore] = None,
        config: Optional[SimulatorConfig] = None,
        builder_factory: Callable[[str], TransitionMatrixBuilder] = TransitionMatrixBuilder,
        latent_config: Optional[LatentConfig] = None,
    ):
        self.network = network
        self.posterior_store = posterior_store
        self.config = config or SimulatorConfig()
        self.builder_factory = builder_factory
        self.latent_config = latent_config or LatentConfig()

    # ------------------------------------------------------------------ #
    #  Matrix simulation                                                   #
    # ------------------------------------------------------------------ #

    def simulate(
        self,
        matrix: MatrixLike,
        iterations: Optional[int] = None,
        seed: Optional[Union[int, np.random.Generator]] = None,
        possessions: Optional[int] = None,
        data_source: str = DATA_SOURCE_MATRIX,
    ) -> SimulationResult:
        """Simulate ``iterations`` games from one transition matrix.

        ``seed`` may be an int or an existing generator to continue drawing from.
        """
        matrix = transition_matrix_from_payload(matrix, self.config.default_sport)
        n = iterations or self.config.iterations
        poss = int(possessions or matrix.possessions)
        rng = np.random.default_rng(seed)

        if isinstance(matrix, BasketballMatrix):
            home = np.broadcast_to(matrix.home, (n, N_OUTCOMES))
            away = np.broadcast_to(matrix.away, (n, N_OUTCOMES))
            return self._simulate_probs(home, away, poss, rng, data_source, matrix.sport)

        if isinstance(matrix, FootballMatrix):
            home_scores = simulate_football_side(matrix.home, poss, n, rng)
            away_scores = simulate_football_side(matrix.away, poss, n, rng)
        elif isinstance(matrix, HockeyMatrix):
            home_scores = simulate_hockey_side(matrix.home, poss, n, rng)
            away_scores = simulate_hockey_side(matrix.away, poss, n, rng)
        else:
            raise TypeError(f"Unknown matrix type {type(matrix).__name__}")

        return SimulationResult(
            iterations=n,
            home_scores=home_scores,
            away_scores=away_scores,
            data_source=data_source,
            sport=matrix.sport,
            possessions=poss,
        )

    def _simulate_probs(
        self,
        home_probs: np.ndarray,
        away_probs: np.ndarray,
        possessions: int,
        rng: np.random.Generator,
        data_source: str,
        sport: str,
        uncertainty: Optional[UncertaintyMetrics] = None,
    ) -> SimulationResult:
        max_chain = self.config.max_offensive_rebound_chain
        home_scores = simulate_basketball_side(home_probs, possessions, rng, max_chain)
        away_scores = simulate_basketball_side(away_probs, possessions, rng, max_chain)
        return SimulationResult(
            iterations=home_probs.shape[0],
            home_scores=home_scores,
            away_scores=away_scores,
            data_source=data_source,
            sport=sport,
            possessions=possessions,
            uncertainty=uncertainty,
        )

    # ------------------------------------------------------------------ #
    #  Latent path                                                         #
    # ------------------------------------------------------------------ #

    def _load_posteriors(self, home_id: str, away_id: str) -> Optional[Tuple[TeamPosterior, TeamPosterior]]:
        if self.posterior_store is None:
            logger.warning("No posterior store configured; skipping latent model")
            return None
        lat = self.latent_config
        loaded = []
        for team_id in (home_id, away_id):
            try:
                posterior = self.posterior_store.get_posterior(team_id)
            except Exception as exc:
                logger.warning("Failed to read posterior for %s: %s", team_id, exc)
                return None
            if posterior is None:
                logger.warning("No posterior for %s; skipping latent model", team_id)
                return None
            if not posterior.is_valid(lat.latent_dim, lat.min_uncertainty, lat.max_uncertainty):
                logger.warning("Invalid posterior for %s; skipping latent model", team_id)
                return None
            loaded.append(posterior)
        return loaded[0], loaded[1]

    def latent_probabilities(
        self,
        home: TeamPosterior,
        away: TeamPosterior,
        context: ContextLike,
        iterations: int,
        rng: np.random.Generator,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Per-iteration ``(N, 8)`` vectors for each offence from latent samples."""
        z_home = sample_from_distribution(home.mu, home.sigma, rng, iterations)
        z_away = sample_from_distribution(away.mu, away.sigma, rng, iterations)
        var_home = np.broadcast_to(home.variance, z_home.shape)
        var_away = np.broadcast_to(away.variance, z_away.shape)
        ctx = context_vector(context)
        ctx_home = np.broadcast_to(ctx, (iterations, ctx.shape[0]))
        ctx_away = np.broadcast_to(_opponent_context(context), ctx_home.shape)

        inputs = np.vstack([
            np.hstack([z_home, var_home, z_away, var_away, ctx_home]),
            np.hstack([z_away, var_away, z_home, var_home, ctx_away]),
        ])
        probs = np.asarray(self.network.forward(inputs), dtype=float)
        if probs.shape != (2 * iterations, N_OUTCOMES) or not np.all(np.isfinite(probs)):
            raise FloatingPointError(f"Network returned unusable probabilities of shape {probs.shape}")
        if np.any(np.abs(probs.sum(axis=1) - 1.0) > 1e-4):
            raise FloatingPointError("Network probabilities do not sum to 1")
        return probs[:iterations], probs[iterations:]

    # ------------------------------------------------------------------ #
    #  Matchup                                                             #
    # ------------------------------------------------------------------ #

    def simulate_matchup(
        self,
        home_team_id: str,
        away_team_id: str,
        context: ContextLike = None,
        fallback_matrix: Optional[MatrixLike] = None,
        sport: Optional[str] = None,
        possessions: Optional[int] = None,
        iterations: Optional[int] = None,
        seed: Optional[int] = None,
    ) -> SimulationResult:
        """
        Simulate a matchup, degrading latent → fallback matrix → generated.

        Raises:
            UnsupportedSportError: ``sport`` is unknown.  Nothing else is
                raised; every other failure falls through to the next source.
        """
        sport = sport or self.config.default_sport
        sport_config = SportConfig.for_sport(sport)
        n = iterations or self.config.iterations
        rng = np.random.default_rng(seed)
        context = context if context is not None else GameContext()

        # 1. Latent model
        if sport_config.family == FAMILY_BASKETBALL:
            if self.network is None:
                logger.warning("No transition network loaded; skipping latent model")
            else:
                posteriors = self._load_posteriors(home_team_id, away_team_id)
                if posteriors is not None:
                    home, away = posteriors
                    try:
                        home_probs, away_probs = self.latent_probabilities(home, away, context, n, rng)
                    except Exception as exc:
                        logger.warning("Latent model failed for %s vs %s: %s", home_team_id, away_team_id, exc)
                    else:
                        uncertainty = UncertaintyMetrics(
                            home_team_uncertainty=team_uncertainty(home.sigma),
                            away_team_uncertainty=team_uncertainty(away.sigma),
                            prediction_confidence=prediction_confidence(home.sigma, away.sigma),
                            home_team_name=home.team_name,
                            away_team_name=away.team_name,
                        )
                        poss = int(possessions or sport_config.avg_possessions)
                        result = self._simulate_probs(
                            home_probs, away_probs, poss, rng, DATA_SOURCE_LATENT, sport, uncertainty
                        )
                        self._log_result(home_team_id, away_team_id, result)
                        return result

        # 2. Caller's matrix
        if fallback_matrix is not None:
            try:
                matrix = transition_matrix_from_payload(fallback_matrix, sport)
            except UnsupportedSportError:
                raise
            except (LatentEdgeError, KeyError, ValueError, TypeError) as exc:
                logger.warning("Unusable fallback matrix for %s vs %s: %s", home_team_id, away_team_id, exc)
            else:
                logger.warning("Using fallback matrix for %s vs %s", home_team_id, away_team_id)
                result = self.simulate(matrix, n, possessions=possessions, data_source=DATA_SOURCE_MATRIX, seed=rng)
                self._log_result(home_team_id, away_team_id, result)
                return result

        # 3. League-average matrix
        is_neutral = _is_neutral_site(context)
        logger.warning("Using generated matrix for %s vs %s", home_team_id, away_team_id)
        matrix = self.builder_factory(sport).generic_matrix(is_neutral=is_neutral)
        result = self.simulate(matrix, n, possessions=possessions, data_source=DATA_SOURCE_GENERATED, seed=rng)
        self._log_result(home_team_id, away_team_id, result)
        return result

    def _log_result(self, home_team_id: str, away_team_id: str, result: SimulationResult) -> None:
        logger.info(
            "Simulated %s vs %s (%s, %d iterations): home win %.3f, avg %.1f-%.1f",
            home_team_id, away_team_id, result.data_source, result.iterations,
            result.home_win_prob, result.avg_home_score, result.avg_away_score,
        )
