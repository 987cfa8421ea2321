"""
Transition probability network.

Maps two teams' latent Gaussians plus game context to the 8-way possession
outcome distribution of the first team's offence against the second
team's defence::

    input (74) = [a_mu(16), a_var(16), b_mu(16), b_var(16), context(10)]
    74 → 128 → 64 → 32 (ReLU, He-normal init) → 8 (Xavier-normal init) → softmax

The same network serves two callers:

* the posterior updater, which feeds posterior means and variances and
  compares the prediction with the observed label;
* the Monte Carlo simulator, which feeds one latent *sample* per iteration
  (with the posterior variance) in a single batched forward pass.

Training uses soft-target categorical cross-entropy and Adam.  Everything
crossing the public API is numpy; tensors stay inside this module.

Usage::

    net = TransitionProbabilityNetwork(seed=7)
    probs = net.predict(a.mu, a.variance, b.mu, b.variance, GameContext())
    net.train_step(inputs, observed_labels)
    net.save("models/transition_network.pt")
"""

import io
import logging
import os
import threading
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import torch
import torch.nn as nn
from dotenv import load_dotenv

from latent_edge.core.differentiable import DifferentiableModel
from latent_edge.core.errors import InvalidDistributionError, ModelIntegrityError
from latent_edge.core.game_context import CONTEXT_DIM, GameContext, context_vector
from latent_edge.core.outcomes import DISTRIBUTION_TOLERANCE, N_OUTCOMES, OUTCOME_LABELS
from latent_edge.utils.checkpoint import read_checkpoint, write_atomic

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_HIDDEN: Tuple[int, ...] = (128, 64, 32)
DEFAULT_NETWORK_PATH = os.getenv("TRANSITION_NETWORK_PATH", "models/transition_network.pt")

ContextLike = Union[GameContext, np.ndarray, Sequence[float], None]


class _TransitionMLP(nn.Module):
    """Plain ReLU MLP producing outcome logits."""

    def __init__(self, input_dim: int, hidden: Sequence[int], output_dim: int = N_OUTCOMES):
        super().__init__()
        layers: List[nn.Module] = []
        prev = input_dim
        for width in hidden:
            linear = nn.Linear(prev, width)
            nn.init.kaiming_normal_(linear.weight, nonlinearity="relu")
            nn.init.zeros_(linear.bias)
            layers += [linear, nn.ReLU()]
            prev = width
        head = nn.Linear(prev, output_dim)
        nn.init.xavier_normal_(head.weight)
        nn.init.zeros_(head.bias)
        layers.append(head)
        self.layers = nn.Sequential(*layers)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.layers(x)


class TransitionProbabilityNetwork(DifferentiableModel):
    """Latent pair + context → 8-way outcome probabilities."""

    model_name = "TransitionProbabilityNetwork"

    def __init__(
        self,
        latent_dim: int = 16,
        context_dim: int = CONTEXT_DIM,
        hidden: Sequence[int] = DEFAULT_HIDDEN,
        learning_rate: float = 1e-3,
        seed: Optional[int] = None,
        max_grad_norm: Optional[float] = 1.0,
    ):
        self.latent_dim = latent_dim
        self.context_dim = context_dim
        self.hidden = tuple(int(h) for h in hidden)
        self.learning_rate = learning_rate
        self.max_grad_norm = max_grad_norm

        if seed is not None:
            torch.manual_seed(seed)
        self.model = _TransitionMLP(self.input_dim, self.hidden)
        self.model.eval()
        self.optimizer = torch.optim.Adam(self.model.parameters(), lr=learning_rate)
        self.steps = 0
        # Online training (updater) and inference (simulator) share one instance.
        self._lock = threading.RLock()

    @property
    def input_dim(self) -> int:
        return 4 * self.latent_dim + self.context_dim

    # ------------------------------------------------------------------ #
    #  Input assembly                                                      #
    # ------------------------------------------------------------------ #

    def build_input(
        self,
        a_mu: Sequence[float],
        a_var: Sequence[float],
        b_mu: Sequence[float],
        b_var: Sequence[float],
        context: ContextLike = None,
    ) -> np.ndarray:
        """Concatenate one input row.

        ``a`` is the offence, ``b`` the defence.  The second-moment vectors
        are variances (``sigma²``).

        Raises:
            ValueError: Any latent vector is not ``latent_dim`` long, or the
                context is not ``context_dim`` wide.
        """
        parts = []
        for name, vec in (("a_mu", a_mu), ("a_var", a_var), ("b_mu", b_mu), ("b_var", b_var)):
            arr = np.asarray(vec, dtype=float)
            if arr.shape != (self.latent_dim,):
                raise ValueError(f"{name} must have length {self.latent_dim}, got shape {arr.shape}")
            parts.append(arr)
        ctx = context_vector(context)
        if ctx.shape != (self.context_dim,):
            raise ValueError(f"context must have {self.context_dim} features, got shape {ctx.shape}")
        parts.append(ctx)
        return np.concatenate(parts)

    def _as_batch(self, inputs: np.ndarray) -> Tuple[torch.Tensor, bool]:
        arr = np.asarray(inputs, dtype=np.float32)
        single = arr.ndim == 1
        if single:
            arr = arr[None, :]
        if arr.ndim != 2 or arr.shape[1] != self.input_dim:
            raise ValueError(f"Expected inputs of width {self.input_dim}, got shape {arr.shape}")
        return torch.from_numpy(arr), single

    # ------------------------------------------------------------------ #
    #  Inference                                                           #
    # ------------------------------------------------------------------ #

    def forward(self, inputs: np.ndarray) -> np.ndarray:
        """Probabilities for one row ``(74,)`` → ``(8,)`` or a batch ``(N, 74)`` → ``(N, 8)``."""
        x, single = self._as_batch(inputs)
        with self._lock, torch.no_grad():
            self.model.eval()
            probs = torch.softmax(self.model(x), dim=-1).double().numpy()
        if not np.all(np.isfinite(probs)):
            raise FloatingPointError("Transition network produced non-finite probabilities")
        # float32 softmax can drift ~1e-7 from 1; renormalize in float64.
        probs = probs / probs.sum(axis=-1, keepdims=True)
        return probs[0] if single else probs

    def predict(
        self,
        a_mu: Sequence[float],
        a_var: Sequence[float],
        b_mu: Sequence[float],
        b_var: Sequence[float],
        context: ContextLike = None,
    ) -> np.ndarray:
        return self.forward(self.build_input(a_mu, a_var, b_mu, b_var, context))

    def predict_labeled(
        self,
        a_mu: Sequence[float],
        a_var: Sequence[float],
        b_mu: Sequence[float],
        b_var: Sequence[float],
        context: ContextLike = None,
    ) -> Dict[str, float]:
        probs = self.predict(a_mu, a_var, b_mu, b_var, context)
        return {label: float(p) for label, p in zip(OUTCOME_LABELS, probs)}

    def predict_batch(self, inputs: np.ndarray) -> np.ndarray:
        """``(N, 74)`` → ``(N, 8)``."""
        arr = np.asarray(inputs, dtype=float)
        if arr.ndim != 2:
            raise ValueError(f"predict_batch expects a 2-D array, got shape {arr.shape}")
        return self.forward(arr)

    # ------------------------------------------------------------------ #
    #  Training                                                            #
    # ------------------------------------------------------------------ #

    def compute_gradients(self, inputs: np.ndarray, targets: np.ndarray) -> float:
        """Soft-target cross-entropy; gradients accumulate until :meth:`apply_gradients`."""
        x, single = self._as_batch(inputs)
        y = np.asarray(targets, dtype=float)
        if single:
            y = y[None, :]
        if y.shape != (x.shape[0], N_OUTCOMES):
            raise ValueError(f"targets must have shape ({x.shape[0]}, {N_OUTCOMES}), got {y.shape}")
        if np.any(y < 0) or np.any(np.abs(y.sum(axis=1) - 1.0) > DISTRIBUTION_TOLERANCE):
            raise InvalidDistributionError("Training targets must be valid 8-way distributions")

        with self._lock:
            self.model.train()
            log_probs = torch.log_softmax(self.model(x), dim=-1)
            loss = -(torch.as_tensor(y, dtype=torch.float32) * log_probs).sum(dim=-1).mean()
            loss.backward()
            self.model.eval()
        return float(loss.item())

    def apply_gradients(self) -> None:
        with self._lock:
            if self.max_grad_norm is not None:
                torch.nn.utils.clip_grad_norm_(self.model.parameters(), max_norm=self.max_grad_norm)
            self.optimizer.step()
            self.optimizer.zero_grad()
            self.steps += 1

    def fit(
        self,
        inputs: np.ndarray,
        targets: np.ndarray,
        epochs: int = 10,
        batch_size: int = 32,
        seed: Optional[int] = None,
        checkpoint_path: Optional[Union[str, Path]] = None,
    ) -> List[float]:
        """Mini-batch training.  Returns the mean loss of each epoch.

        With ``checkpoint_path`` the weights are written atomically after
        every completed epoch.
        """
        x = np.asarray(inputs, dtype=float)
        y = np.asarray(targets, dtype=float)
        if len(x) == 0:
            return []
        rng = np.random.default_rng(seed)
        history: List[float] = []
        for epoch in range(epochs):
            order = rng.permutation(len(x))
            losses = []
            for start in range(0, len(x), batch_size):
                idx = order[start:start + batch_size]
                losses.append(self.train_step(x[idx], y[idx]))
            epoch_loss = float(np.mean(losses))
            history.append(epoch_loss)
            logger.info("Transition network epoch %d/%d: loss=%.4f", epoch + 1, epochs, epoch_loss)
            if checkpoint_path is not None:
                self.save(checkpoint_path)
        return history

    # ------------------------------------------------------------------ #
    #  Persistence                                                         #
    # ------------------------------------------------------------------ #

    def architecture(self) -> Dict[str, object]:
        return {
            "latent_dim": self.latent_dim,
            "context_dim": self.context_dim,
            "hidden": list(self.hidden),
            "learning_rate": self.learning_rate,
        }

    def state_bytes(self) -> bytes:
        buffer = io.BytesIO()
        with self._lock:
            torch.save(
                {
                    "architecture": self.architecture(),
                    "state_dict": self.model.state_dict(),
                    "steps": self.steps,
                },
                buffer,
            )
        return buffer.getvalue()

    def load_state_bytes(self, data: bytes) -> None:
        blob = torch.load(io.BytesIO(data), map_location="cpu", weights_only=True)
        arch = blob.get("architecture", {})
        if (
            arch.get("latent_dim") != self.latent_dim
            or arch.get("context_dim") != self.context_dim
            or tuple(arch.get("hidden", ())) != self.hidden
        ):
            raise ModelIntegrityError(
                f"Checkpoint architecture {arch} does not match network {self.architecture()}"
            )
        with self._lock:
            self.model.load_state_dict(blob["state_dict"])
            self.model.eval()
            self.steps = int(blob.get("steps", 0))

    def save(self, path: Union[str, Path]) -> Path:
        target = write_atomic(path, self.state_bytes())
        logger.info("Saved transition network to %s", target)
        return target

    @classmethod
    def from_bytes(cls, data: bytes) -> "TransitionProbabilityNetwork":
        blob = torch.load(io.BytesIO(data), map_location="cpu", weights_only=True)
        arch = blob["architecture"]
        network = cls(
            latent_dim=int(arch["latent_dim"]),
            context_dim=int(arch["context_dim"]),
            hidden=tuple(arch["hidden"]),
            learning_rate=float(arch.get("learning_rate", 1e-3)),
        )
        network.load_state_bytes(data)
        return network

    @classmethod
    def load(cls, path: Union[str, Path]) -> "TransitionProbabilityNetwork":
        data = read_checkpoint(path)
        if data is None:
            raise FileNotFoundError(f"No transition network checkpoint at {path}")
        return cls.from_bytes(data)


def load_default_network(path: Optional[str] = None) -> Optional[TransitionProbabilityNetwork]:
    """Load the deployed network, or None when no checkpoint exists yet."""
    target = path or DEFAULT_NETWORK_PATH
    data = read_checkpoint(target)
    if data is None:
        logger.warning("No transition network at %s; simulations will use fallback matrices", target)
        return None
    try:
        return TransitionProbabilityNetwork.from_bytes(data)
    except (ModelIntegrityError, KeyError, RuntimeError) as exc:
        logger.error("Failed to load transition network from %s: %s", target, exc)
        return None
