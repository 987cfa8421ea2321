"""
Contrastive (InfoNCE) objective for encoder pretraining.

The encoder is trained so its latent samples are *predictive* of a game's
transition-probability label rather than merely able to reconstruct raw
features.  Each 8-way label is projected into the latent space by a learned
linear embedding; a latent sample should be closer (cosine similarity) to
its own game's label embedding than to K labels drawn from other games.

For one sample with similarity ``s_pos`` to its positive and ``s_k`` to each
negative, at temperature ``T``::

    loss = -log( exp(s_pos/T) / (exp(s_pos/T) + Σ_k exp(s_k/T)) )
         = logsumexp([s_pos/T, s_1/T, ..., s_K/T]) - s_pos/T

The second form is what is computed; it never exponentiates a large
similarity directly.

The InfoNCE term is weighted by ``lambda`` which follows an
:class:`AnnealingSchedule` (0.3 → 0.8 over the first 50 steps by default).
"""

import logging
from dataclasses import dataclass

import numpy as np
import torch
import torch.nn as nn

from latent_edge.core.outcomes import N_OUTCOMES

logger = logging.getLogger(__name__)

COSINE_EPS = 1e-8


@dataclass(frozen=True)
class AnnealingSchedule:
    """Linear ramp from ``start`` to ``end`` over ``warmup_steps``, then hold."""

    start: float
    end: float
    warmup_steps: int

    def value(self, step: int) -> float:
        if self.warmup_steps <= 0:
            return self.end
        progress = min(max(step, 0) / self.warmup_steps, 1.0)
        return self.start + (self.end - self.start) * progress


class InfoNCELoss(nn.Module):
    """Label embedding + temperature-scaled contrastive loss."""

    def __init__(self, latent_dim: int = 16, temperature: float = 0.1, label_dim: int = N_OUTCOMES):
        super().__init__()
        if temperature <= 0:
            raise ValueError(f"temperature must be positive, got {temperature}")
        self.latent_dim = latent_dim
        self.temperature = temperature
        self.label_embedding = nn.Linear(label_dim, latent_dim)
        nn.init.xavier_normal_(self.label_embedding.weight)
        nn.init.zeros_(self.label_embedding.bias)

    def embed_labels(self, labels: torch.Tensor) -> torch.Tensor:
        """Project ``(..., 8)`` labels to ``(..., latent_dim)``."""
        return self.label_embedding(labels)

    @staticmethod
    def similarity(z: torch.Tensor, embedded: torch.Tensor) -> torch.Tensor:
        """Cosine similarity along the last axis."""
        return nn.functional.cosine_similarity(z, embedded, dim=-1, eps=COSINE_EPS)

    def forward(self, z: torch.Tensor, positive: torch.Tensor, negatives: torch.Tensor) -> torch.Tensor:
        """Mean InfoNCE loss over a batch.

        Args:
            z: Latent samples, ``(B, latent_dim)``.
            positive: Positive labels, ``(B, 8)``.
            negatives: Negative labels shared by the batch, ``(K, 8)``, or
                per-sample, ``(B, K, 8)``.
        """
        if z.dim() == 1:
            z = z.unsqueeze(0)
            positive = positive.unsqueeze(0)
            if negatives.dim() == 3:
                raise ValueError("per-sample negatives need a batched z")

        pos_sim = self.similarity(z, self.embed_labels(positive)) / self.temperature  # (B,)

        neg_emb = self.embed_labels(negatives)
        if neg_emb.dim() == 2:
            neg_emb = neg_emb.unsqueeze(0).expand(z.shape[0], -1, -1)
        neg_sim = self.similarity(z.unsqueeze(1), neg_emb) / self.temperature  # (B, K)

        logits = torch.cat([pos_sim.unsqueeze(1), neg_sim], dim=1)
        loss = torch.logsumexp(logits, dim=1) - pos_sim
        return loss.mean()

    def compute_numpy(self, z: np.ndarray, positive: np.ndarray, negatives: np.ndarray) -> float:
        """Loss as a float for numpy inputs (no gradient)."""
        with torch.no_grad():
            value = self.forward(
                torch.as_tensor(z, dtype=torch.float32),
                torch.as_tensor(positive, dtype=torch.float32),
                torch.as_tensor(negatives, dtype=torch.float32),
            )
        return float(value.item())
