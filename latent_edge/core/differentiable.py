"""The minimal contract every trainable model satisfies.

Training code (the contrastive pretrainer, the posterior updater's online
learning hook, batch network training) depends only on this interface, never
on a specific autodiff library.  A model exposes:

* :meth:`DifferentiableModel.forward`: inference on numpy inputs.
* :meth:`DifferentiableModel.compute_gradients`: evaluate the training loss
  for ``(inputs, targets)`` and accumulate parameter gradients.
* :meth:`DifferentiableModel.apply_gradients`: take one optimizer step
  with the accumulated gradients and clear them.
* :meth:`DifferentiableModel.state_bytes` /
  :meth:`DifferentiableModel.load_state_bytes`: serialize parameters for
  checkpoints and the model store.

:meth:`DifferentiableModel.train_step` composes the two gradient methods and
is what callers normally use.

Design choices
--------------
* An abstract base class rather than a ``typing.Protocol`` so that
  constructors can ``isinstance``-check injected models and model authors
  inherit the documented contract.
* Inputs and outputs are numpy arrays.  Library tensors never cross this
  boundary.
* ``compute_gradients`` and ``apply_gradients`` are separate so a caller can
  accumulate several examples before stepping.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import numpy as np


class DifferentiableModel(ABC):
    """Forward pass + gradient computation + parameter update."""

    #: Short identifier used in logs and checkpoints.
    model_name: str = "DifferentiableModel"

    @abstractmethod
    def forward(self, inputs: np.ndarray) -> Any:
        """Run inference.  Must be deterministic for fixed parameters."""

    @abstractmethod
    def compute_gradients(self, inputs: Any, targets: Any) -> float:
        """Evaluate the training loss and accumulate gradients.

        Returns:
            The scalar loss value for ``(inputs, targets)``.
        """

    @abstractmethod
    def apply_gradients(self) -> None:
        """Apply accumulated gradients to the parameters and reset them."""

    @abstractmethod
    def state_bytes(self) -> bytes:
        """Serialize all trainable parameters."""

    @abstractmethod
    def load_state_bytes(self, data: bytes) -> None:
        """Restore parameters previously produced by :meth:`state_bytes`."""

    def train_step(self, inputs: Any, targets: Any) -> float:
        """One gradient-descent step; returns the loss before the update."""
        loss = self.compute_gradients(inputs, targets)
        self.apply_gradients()
        return loss
