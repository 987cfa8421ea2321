"""Tunables for the latent pipeline, loaded from the environment.

Every empirically chosen constant lives here rather than inline so it can
be confirmed (or overridden) per deployment.  Each bundle is a frozen
dataclass with documented defaults and a ``from_env()`` constructor that
reads ``.env`` / process environment variables.

Typical usage::

    from latent_edge.core.model_config import SimulatorConfig

    cfg = SimulatorConfig.from_env()
    fast_cfg = replace(cfg, iterations=1_000)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Tuple

from dotenv import load_dotenv

load_dotenv()


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() in ("1", "true", "yes")


# ---------------------------------------------------------------------------
# Latent space
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LatentConfig:
    """Shape and bounds of the per-team Gaussian representation.

    Attributes:
        latent_dim: Dimensionality of ``mu`` / ``sigma``.
        context_dim: Width of the normalized game-context vector.
        min_uncertainty: Lower clamp on every ``sigma[i]``.
        max_uncertainty: Upper clamp on every ``sigma[i]``.
    """

    latent_dim: int = 16
    context_dim: int = 10
    min_uncertainty: float = 0.1
    max_uncertainty: float = 2.0

    @classmethod
    def from_env(cls) -> LatentConfig:
        return cls(
            latent_dim=_env_int("LATENT_DIM", 16),
            context_dim=_env_int("CONTEXT_DIM", 10),
            min_uncertainty=_env_float("MIN_UNCERTAINTY", 0.1),
            max_uncertainty=_env_float("MAX_UNCERTAINTY", 2.0),
        )


# ---------------------------------------------------------------------------
# Contrastive pretraining
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ContrastiveConfig:
    """Encoder pretraining hyper-parameters.

    The InfoNCE weight ``lambda`` anneals linearly from ``lambda_min`` to
    ``lambda_max`` over ``lambda_warmup_steps`` optimizer steps and is then
    held.  KL ``beta`` follows the same shape.  Both sets of bounds are
    empirical and should be confirmed with the modelling owners.
    """

    input_dim: int = 80
    temperature: float = 0.1
    num_negatives: int = 64
    lambda_min: float = 0.3
    lambda_max: float = 0.8
    lambda_warmup_steps: int = 50
    beta_start: float = 0.1
    beta_max: float = 3.0
    beta_warmup_steps: int = 50
    learning_rate: float = 1e-3
    cache_size: int = 1000
    cache_refresh_interval: int = 100

    @classmethod
    def from_env(cls) -> ContrastiveConfig:
        return cls(
            input_dim=_env_int("ENCODER_INPUT_DIM", 80),
            temperature=_env_float("INFONCE_TEMPERATURE", 0.1),
            num_negatives=_env_int("INFONCE_NUM_NEGATIVES", 64),
            lambda_min=_env_float("INFONCE_LAMBDA_MIN", 0.3),
            lambda_max=_env_float("INFONCE_LAMBDA_MAX", 0.8),
            lambda_warmup_steps=_env_int("INFONCE_WARMUP_STEPS", 50),
            beta_start=_env_float("KL_BETA_START", 0.1),
            beta_max=_env_float("KL_BETA_MAX", 3.0),
            beta_warmup_steps=_env_int("KL_BETA_WARMUP_STEPS", 50),
            learning_rate=_env_float("ENCODER_LEARNING_RATE", 1e-3),
            cache_size=_env_int("NEGATIVE_CACHE_SIZE", 1000),
            cache_refresh_interval=_env_int("NEGATIVE_CACHE_REFRESH_INTERVAL", 100),
        )


# ---------------------------------------------------------------------------
# Posterior updates
# ---------------------------------------------------------------------------

#: Value weights for [2pt_make, 2pt_miss, 3pt_make, 3pt_miss,
#: ft_make, ft_miss, oreb, turnover].
DEFAULT_PERFORMANCE_WEIGHTS: Tuple[float, ...] = (1.0, -1.0, 1.5, -1.5, 1.0, -1.0, 0.5, -2.0)


@dataclass(frozen=True)
class UpdaterConfig:
    """Bayesian posterior updater parameters.

    Attributes:
        learning_rate: Scale of the likelihood-mean nudge.
        likelihood_weight: Multiplier on likelihood precision in the fusion.
        base_observation_uncertainty: Likelihood sigma at zero prediction
            error; grows as ``base × (1 + 2·error)``.
        neutral_site_multiplier / postseason_multiplier /
        back_to_back_multiplier: Context multipliers applied to the fused
            sigma before clamping.
        back_to_back_rest_days: Rest days below which a game counts as
            back-to-back.
        performance_weights: Per-outcome value weights for the
            performance signal.
        online_training: Also take one likelihood-network gradient step on
            each observed label.
    """

    learning_rate: float = 0.1
    likelihood_weight: float = 1.0
    base_observation_uncertainty: float = 0.5
    neutral_site_multiplier: float = 1.1
    postseason_multiplier: float = 0.95
    back_to_back_multiplier: float = 1.15
    back_to_back_rest_days: float = 2.0
    performance_weights: Tuple[float, ...] = field(default=DEFAULT_PERFORMANCE_WEIGHTS)
    online_training: bool = False

    @classmethod
    def from_env(cls) -> UpdaterConfig:
        return cls(
            learning_rate=_env_float("POSTERIOR_LEARNING_RATE", 0.1),
            likelihood_weight=_env_float("POSTERIOR_LIKELIHOOD_WEIGHT", 1.0),
            online_training=_env_bool("POSTERIOR_ONLINE_TRAINING", False),
        )


# ---------------------------------------------------------------------------
# Season rollover
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SeasonConfig:
    """Inter-season regression toward the neutral prior.

    Attributes:
        inter_year_variance: Added to every ``sigma²`` at a season boundary.
        mean_retention: Fraction of ``mu`` kept across the boundary
            (``1.0`` keeps the full mean, ``0.0`` resets to neutral).
        season_start_month: Calendar month in which a new season begins.
    """

    inter_year_variance: float = 0.25
    mean_retention: float = 0.8
    season_start_month: int = 11

    @classmethod
    def from_env(cls) -> SeasonConfig:
        return cls(
            inter_year_variance=_env_float("INTER_YEAR_VARIANCE", 0.25),
            mean_retention=_env_float("SEASON_MEAN_RETENTION", 0.8),
            season_start_month=_env_int("SEASON_START_MONTH", 11),
        )


# ---------------------------------------------------------------------------
# Simulation
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SimulatorConfig:
    """Monte Carlo simulator parameters.

    Attributes:
        iterations: Independent simulated games per call.
        max_offensive_rebound_chain: Maximum consecutive offensive-rebound
            continuations in one possession.  Once reached, the next draw
            excludes the offensive-rebound outcome so the possession
            terminates.
        default_sport: Sport used when the caller does not name one.
    """

    iterations: int = 10_000
    max_offensive_rebound_chain: int = 10
    default_sport: str = "ncaa_basketball"

    @classmethod
    def from_env(cls) -> SimulatorConfig:
        return cls(
            iterations=_env_int("MCMC_ITERATIONS", 10_000),
            max_offensive_rebound_chain=_env_int("OREB_CHAIN_MAX", 10),
            default_sport=os.getenv("DEFAULT_SPORT", "ncaa_basketball"),
        )
