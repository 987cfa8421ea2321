"""Core mathematics, contracts and configuration for the Latent Edge engine.

This package contains pure, sport-agnostic building blocks:

- ``outcomes``          - the 8-way possession outcome space and its validator
- ``posterior``         - the ``TeamPosterior`` Gaussian skill representation
- ``game_context``      - normalized per-game context features
- ``transition_matrix`` - tagged transition-matrix variants and payload ingestion
- ``sport_config``      - per-sport constants (possessions, home advantage, defaults)
- ``model_config``      - tunables for the encoder, updater, seasons and simulator
- ``differentiable``    - the minimal contract every trainable model satisfies
- ``errors``            - the exception hierarchy

Nothing in this package imports from ``latent_edge.services`` or
``latent_edge.models``.  All modules are side-effect-free and unit-testable
in isolation.
"""
