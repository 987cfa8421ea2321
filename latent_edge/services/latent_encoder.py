"""
Latent encoder: VAE pretraining with a contrastive objective, then freezing.

Lifecycle
---------
1. **Pretrain**: :class:`ContrastivePretrainer` trains a
   :class:`LatentEncoder` on ``(team features, game transition label)``
   examples.  The objective per batch is::

       total = MSE(recon, x) + β(step)·KL + λ(step)·InfoNCE

   with ``β`` annealed 0.1 → 3.0 and ``λ`` annealed 0.3 → 0.8, both over
   the first 50 optimizer steps.  A checkpoint is written atomically after
   every completed batch, so an interrupted run resumes from the last one.
2. **Freeze**: the encoder weights are stored in ``encoder_models`` and
   marked ``training_completed`` then ``frozen``
   (see ``EncoderModelRepository``).
3. **Serve**: :class:`FrozenLatentEncoder` loads the frozen weights,
   refuses unfrozen or incomplete models, disables gradients and checks
   a SHA-256 of the weights.  Its only job afterwards is producing initial
   team posteriors.

Architecture::

    encoder  input(80) → 64 → 32 → 2·latent   (mu, logvar)
    decoder  latent    → 32 → 64 → input      sigmoid
"""

import hashlib
import io
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np
import torch
import torch.nn as nn

from latent_edge.core.differentiable import DifferentiableModel
from latent_edge.core.errors import ModelIntegrityError, NoTrainingDataError
from latent_edge.core.model_config import ContrastiveConfig, LatentConfig
from latent_edge.core.outcomes import validate_distribution
from latent_edge.core.posterior import TeamPosterior
from latent_edge.services.contrastive import AnnealingSchedule, InfoNCELoss
from latent_edge.services.negative_sampler import NegativeSampleCache
from latent_edge.utils.checkpoint import read_checkpoint, write_atomic
from latent_edge.utils.clock import utc_now

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------

class VariationalEncoder(nn.Module):
    """Gaussian VAE over team feature vectors."""

    def __init__(self, input_dim: int = 80, latent_dim: int = 16):
        super().__init__()
        self.input_dim = input_dim
        self.latent_dim = latent_dim
        self.encoder = nn.Sequential(
            nn.Linear(input_dim, 64),
            nn.ReLU(),
            nn.Linear(64, 32),
            nn.ReLU(),
            nn.Linear(32, 2 * latent_dim),
        )
        self.decoder = nn.Sequential(
            nn.Linear(latent_dim, 32),
            nn.ReLU(),
            nn.Linear(32, 64),
            nn.ReLU(),
            nn.Linear(64, input_dim),
            nn.Sigmoid(),
        )

    def encode(self, x: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        mu, logvar = self.encoder(x).chunk(2, dim=-1)
        return mu, logvar

    @staticmethod
    def reparameterize(mu: torch.Tensor, logvar: torch.Tensor) -> torch.Tensor:
        return mu + torch.randn_like(mu) * torch.exp(0.5 * logvar)

    def decode(self, z: torch.Tensor) -> torch.Tensor:
        return self.decoder(z)

    def forward(self, x: torch.Tensor):
        mu, logvar = self.encode(x)
        z = self.reparameterize(mu, logvar)
        return self.decode(z), mu, logvar, z


def vae_loss(
    recon: torch.Tensor,
    x: torch.Tensor,
    mu: torch.Tensor,
    logvar: torch.Tensor,
    beta: float = 1.0,
) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """Return ``(recon + β·KL, recon, KL)``.

    KL is summed over latent dimensions and averaged over the batch.
    """
    recon_loss = nn.functional.mse_loss(recon, x)
    kl = (-0.5 * torch.sum(1 + logvar - mu.pow(2) - logvar.exp(), dim=-1)).mean()
    return recon_loss + beta * kl, recon_loss, kl


# ---------------------------------------------------------------------------
# Trainable wrapper
# ---------------------------------------------------------------------------

class ContrastiveTargets(NamedTuple):
    """Training targets for one batch.

    ``negatives[i]`` is a ``(k_i, 8)`` array; ``k_i`` may differ between
    samples when the negative pool ran short.
    """

    positives: np.ndarray
    negatives: Sequence[np.ndarray]


@dataclass
class LossBreakdown:
    total: float = 0.0
    reconstruction: float = 0.0
    kl: float = 0.0
    infonce: float = 0.0
    lambda_infonce: float = 0.0
    beta: float = 0.0


class LatentEncoder(DifferentiableModel):
    """VAE + InfoNCE head trained together with one Adam optimizer."""

    model_name = "LatentEncoder"

    def __init__(
        self,
        input_dim: int = 80,
        latent_dim: int = 16,
        config: Optional[ContrastiveConfig] = None,
        seed: Optional[int] = None,
    ):
        self.config = config or ContrastiveConfig()
        self.input_dim = input_dim
        self.latent_dim = latent_dim
        if seed is not None:
            torch.manual_seed(seed)
        self.vae = VariationalEncoder(input_dim, latent_dim)
        self.infonce = InfoNCELoss(latent_dim, self.config.temperature)
        self.optimizer = torch.optim.Adam(
            list(self.vae.parameters()) + list(self.infonce.parameters()),
            lr=self.config.learning_rate,
        )
        self.lambda_schedule = AnnealingSchedule(
            self.config.lambda_min, self.config.lambda_max, self.config.lambda_warmup_steps
        )
        self.beta_schedule = AnnealingSchedule(
            self.config.beta_start, self.config.beta_max, self.config.beta_warmup_steps
        )
        self.step = 0
        self.last_losses = LossBreakdown()

    # -- inference ---------------------------------------------------------

    def forward(self, inputs: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Return ``(mu, sigma)`` with ``sigma = exp(0.5·logvar)``."""
        x = torch.as_tensor(np.asarray(inputs, dtype=np.float32))
        single = x.dim() == 1
        if single:
            x = x.unsqueeze(0)
        self.vae.eval()
        with torch.no_grad():
            mu, logvar = self.vae.encode(x)
        mu_np = mu.double().numpy()
        sigma_np = torch.exp(0.5 * logvar).double().numpy()
        if single:
            return mu_np[0], sigma_np[0]
        return mu_np, sigma_np

    @staticmethod
    def sample(mu: np.ndarray, sigma: np.ndarray, rng: Optional[np.random.Generator] = None) -> np.ndarray:
        """Reparameterized draw ``mu + sigma·ε``."""
        rng = rng or np.random.default_rng()
        return np.asarray(mu) + np.asarray(sigma) * rng.standard_normal(np.shape(mu))

    # -- training ----------------------------------------------------------

    def compute_gradients(self, inputs: np.ndarray, targets: ContrastiveTargets) -> float:
        x = torch.as_tensor(np.asarray(inputs, dtype=np.float32))
        if x.dim() == 1:
            x = x.unsqueeze(0)
        positives = torch.as_tensor(np.asarray(targets.positives, dtype=np.float32))
        if positives.dim() == 1:
            positives = positives.unsqueeze(0)
        if len(targets.negatives) != x.shape[0]:
            raise ValueError("Need one negative set per sample")

        lam = self.lambda_schedule.value(self.step)
        beta = self.beta_schedule.value(self.step)

        self.vae.train()
        self.infonce.train()
        recon, mu, logvar, z = self.vae(x)
        vae_total, recon_loss, kl = vae_loss(recon, x, mu, logvar, beta)

        per_sample = [
            self.infonce(z[i:i + 1], positives[i:i + 1], torch.as_tensor(negs, dtype=torch.float32))
            for i, negs in enumerate(targets.negatives)
        ]
        infonce = torch.stack(per_sample).mean()

        total = vae_total + lam * infonce
        total.backward()

        self.last_losses = LossBreakdown(
            total=float(total.item()),
            reconstruction=float(recon_loss.item()),
            kl=float(kl.item()),
            infonce=float(infonce.item()),
            lambda_infonce=lam,
            beta=beta,
        )
        return self.last_losses.total

    def apply_gradients(self) -> None:
        self.optimizer.step()
        self.optimizer.zero_grad()
        self.step += 1

    # -- serialization -----------------------------------------------------

    @staticmethod
    def _dump(obj) -> bytes:
        buffer = io.BytesIO()
        torch.save(obj, buffer)
        return buffer.getvalue()

    def encoder_bytes(self) -> bytes:
        return self._dump(self.vae.encoder.state_dict())

    def decoder_bytes(self) -> bytes:
        return self._dump(self.vae.decoder.state_dict())

    def state_bytes(self) -> bytes:
        return self._dump({
            "input_dim": self.input_dim,
            "latent_dim": self.latent_dim,
            "vae": self.vae.state_dict(),
            "infonce": self.infonce.state_dict(),
            "optimizer": self.optimizer.state_dict(),
            "step": self.step,
        })

    def load_state_bytes(self, data: bytes) -> None:
        blob = torch.load(io.BytesIO(data), map_location="cpu", weights_only=True)
        if blob["input_dim"] != self.input_dim or blob["latent_dim"] != self.latent_dim:
            raise ModelIntegrityError(
                f"Checkpoint dims ({blob['input_dim']}, {blob['latent_dim']}) do not match "
                f"encoder ({self.input_dim}, {self.latent_dim})"
            )
        self.vae.load_state_dict(blob["vae"])
        self.infonce.load_state_dict(blob["infonce"])
        self.optimizer.load_state_dict(blob["optimizer"])
        self.step = int(blob["step"])


# ---------------------------------------------------------------------------
# Pretraining loop
# ---------------------------------------------------------------------------

@dataclass
class TrainingExample:
    """One team-game: the team's pre-game features and its observed label."""

    game_id: str
    features: np.ndarray
    label: np.ndarray


@dataclass
class BatchStats:
    total_loss: float
    reconstruction_loss: float
    kl_loss: float
    infonce_loss: float
    lambda_infonce: float
    beta: float
    successful_samples: int
    total_samples: int
    step: int = 0

    def to_dict(self) -> dict:
        return {
            "total_loss": round(self.total_loss, 6),
            "reconstruction_loss": round(self.reconstruction_loss, 6),
            "kl_loss": round(self.kl_loss, 6),
            "infonce_loss": round(self.infonce_loss, 6),
            "lambda_infonce": round(self.lambda_infonce, 4),
            "beta": round(self.beta, 4),
            "successful_samples": self.successful_samples,
            "total_samples": self.total_samples,
            "step": self.step,
        }


class ContrastivePretrainer:
    """Runs contrastive VAE pretraining over batches of examples."""

    def __init__(
        self,
        encoder: LatentEncoder,
        sampler: NegativeSampleCache,
        config: Optional[ContrastiveConfig] = None,
    ):
        self.encoder = encoder
        self.sampler = sampler
        self.config = config or encoder.config

    def train_batch(self, examples: Sequence[TrainingExample]) -> BatchStats:
        """One optimizer step over the usable examples in ``examples``.

        Raises:
            NoTrainingDataError: No example in the batch was usable.
        """
        features: List[np.ndarray] = []
        positives: List[np.ndarray] = []
        negatives: List[np.ndarray] = []

        for example in examples:
            if not validate_distribution(example.label):
                logger.warning("Skipping game %s: invalid transition label", example.game_id)
                continue
            negs = self.sampler.sample_negatives(example.game_id, self.config.num_negatives)
            if len(negs) == 0:
                logger.warning("Skipping game %s: no negative samples available", example.game_id)
                continue
            if len(negs) < self.config.num_negatives:
                logger.warning(
                    "Game %s: only %d of %d negatives available",
                    example.game_id, len(negs), self.config.num_negatives,
                )
            features.append(np.asarray(example.features, dtype=float))
            positives.append(np.asarray(example.label, dtype=float))
            negatives.append(negs)

        if not features:
            raise NoTrainingDataError(f"No usable samples in batch of {len(examples)}")

        self.encoder.train_step(np.stack(features), ContrastiveTargets(np.stack(positives), negatives))
        losses = self.encoder.last_losses
        return BatchStats(
            total_loss=losses.total,
            reconstruction_loss=losses.reconstruction,
            kl_loss=losses.kl,
            infonce_loss=losses.infonce,
            lambda_infonce=losses.lambda_infonce,
            beta=losses.beta,
            successful_samples=len(features),
            total_samples=len(examples),
            step=self.encoder.step,
        )

    def resume(self, checkpoint_path: Union[str, Path]) -> bool:
        """Load the last completed-batch checkpoint if one exists."""
        data = read_checkpoint(checkpoint_path)
        if data is None:
            return False
        self.encoder.load_state_bytes(data)
        logger.info("Resumed encoder pretraining from %s at step %d", checkpoint_path, self.encoder.step)
        return True

    def train(
        self,
        batches: Sequence[Sequence[TrainingExample]],
        epochs: int = 1,
        checkpoint_path: Optional[Union[str, Path]] = None,
    ) -> List[BatchStats]:
        """Train for ``epochs`` passes over ``batches``.

        Batches with no usable samples are logged and skipped.  After each
        successful batch the full training state is checkpointed atomically.
        """
        history: List[BatchStats] = []
        for epoch in range(epochs):
            for batch_no, batch in enumerate(batches):
                try:
                    stats = self.train_batch(batch)
                except NoTrainingDataError as exc:
                    logger.warning("Epoch %d batch %d skipped: %s", epoch + 1, batch_no, exc)
                    continue
                history.append(stats)
                if checkpoint_path is not None:
                    write_atomic(checkpoint_path, self.encoder.state_bytes())
                logger.info(
                    "Epoch %d batch %d: total=%.4f recon=%.4f kl=%.4f infonce=%.4f "
                    "lambda=%.3f beta=%.3f (%d/%d samples)",
                    epoch + 1, batch_no, stats.total_loss, stats.reconstruction_loss,
                    stats.kl_loss, stats.infonce_loss, stats.lambda_infonce, stats.beta,
                    stats.successful_samples, stats.total_samples,
                )
        return history


def batched(examples: Iterable[TrainingExample], batch_size: int = 32) -> List[List[TrainingExample]]:
    batch: List[TrainingExample] = []
    out: List[List[TrainingExample]] = []
    for example in examples:
        batch.append(example)
        if len(batch) == batch_size:
            out.append(batch)
            batch = []
    if batch:
        out.append(batch)
    return out


# ---------------------------------------------------------------------------
# Frozen serving encoder
# ---------------------------------------------------------------------------

def weights_hash(encoder_weights: bytes) -> str:
    return hashlib.sha256(encoder_weights).hexdigest()


def _tensor_digest(module: nn.Module) -> str:
    digest = hashlib.sha256()
    for name, tensor in module.state_dict().items():
        digest.update(name.encode("utf-8"))
        digest.update(tensor.detach().cpu().numpy().tobytes())
    return digest.hexdigest()


@dataclass(frozen=True)
class EncoderModelRecord:
    """A stored encoder version, as read from ``encoder_models``."""

    model_version: str
    encoder_weights: bytes = field(repr=False)
    latent_dim: int = 16
    input_dim: int = 80
    training_completed: bool = False
    frozen: bool = False
    weights_hash: Optional[str] = None
    decoder_weights: Optional[bytes] = field(default=None, repr=False)
    created_at: Optional[datetime] = None
    frozen_at: Optional[datetime] = None


class FrozenLatentEncoder:
    """Inference-only encoder loaded from a frozen, completed model record."""

    def __init__(self, record: EncoderModelRecord, latent_config: Optional[LatentConfig] = None):
        if not record.training_completed:
            raise ModelIntegrityError(f"Encoder {record.model_version} has not completed training")
        if not record.frozen:
            raise ModelIntegrityError(f"Encoder {record.model_version} is not frozen")
        stored_hash = weights_hash(record.encoder_weights)
        if record.weights_hash and record.weights_hash != stored_hash:
            raise ModelIntegrityError(
                f"Encoder {record.model_version} weights hash mismatch "
                f"(expected {record.weights_hash[:12]}, got {stored_hash[:12]})"
            )

        self.record = record
        self.latent_config = latent_config or LatentConfig(latent_dim=record.latent_dim)
        self.weights_hash = stored_hash

        vae = VariationalEncoder(record.input_dim, record.latent_dim)
        state = torch.load(io.BytesIO(record.encoder_weights), map_location="cpu", weights_only=True)
        vae.encoder.load_state_dict(state)
        self.encoder = vae.encoder
        self.encoder.eval()
        for param in self.encoder.parameters():
            param.requires_grad_(False)
        self._digest = _tensor_digest(self.encoder)
        logger.info("Loaded frozen encoder %s (%s)", record.model_version, stored_hash[:12])

    @property
    def model_version(self) -> str:
        return self.record.model_version

    def verify_integrity(self) -> bool:
        """True if the live parameters are unchanged since loading."""
        intact = _tensor_digest(self.encoder) == self._digest
        if not intact:
            logger.error("Frozen encoder %s weights have changed", self.model_version)
        return intact

    def encode(self, features: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        x = torch.as_tensor(np.asarray(features, dtype=np.float32))
        single = x.dim() == 1
        if single:
            x = x.unsqueeze(0)
        with torch.no_grad():
            mu, logvar = self.encoder(x).chunk(2, dim=-1)
        mu_np = mu.double().numpy()
        sigma_np = torch.exp(0.5 * logvar).double().numpy()
        if single:
            return mu_np[0], sigma_np[0]
        return mu_np, sigma_np

    def initial_posterior(
        self,
        team_id: str,
        features: np.ndarray,
        season: Optional[str] = None,
        team_name: Optional[str] = None,
    ) -> TeamPosterior:
        """Starting posterior for a team from its pre-season features."""
        mu, sigma = self.encode(features)
        cfg = self.latent_config
        clamped = np.clip(sigma, cfg.min_uncertainty, cfg.max_uncertainty)
        if not np.allclose(clamped, sigma):
            logger.warning(
                "Clamped encoder sigma for %s (raw range %.4f-%.4f)",
                team_id, float(sigma.min()), float(sigma.max()),
            )
        return TeamPosterior(
            team_id=team_id,
            mu=mu,
            sigma=clamped,
            games_processed=0,
            season=season,
            last_updated=utc_now(),
            team_name=team_name,
            model_version=self.model_version,
        )
