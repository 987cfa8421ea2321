#!/usr/bin/env python3
"""
Contrastive VAE pretraining for the latent encoder.

Reads a feature CSV with one row per team-game::

    game_id, side (home|away), f0 .. f79

joins each row to its stored transition label, trains with negatives drawn
from the ``games`` table, and stores the encoder as a new version.  A
checkpoint is written after every completed batch; rerunning with the same
``--checkpoint`` resumes from it.

Usage:
    python scripts/pretrain_encoder.py --features data/features.csv --version v1.1 --epochs 5
    python scripts/pretrain_encoder.py --features data/features.csv --version v1.1 --freeze
"""

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List

import numpy as np
import pandas as pd

# Add project root to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from latent_edge.core.model_config import ContrastiveConfig, LatentConfig
from latent_edge.services.latent_encoder import (
    ContrastivePretrainer,
    LatentEncoder,
    TrainingExample,
    batched,
)
from latent_edge.services.negative_sampler import NegativeSampleCache, deserialize_label_pair
from latent_edge.services.repositories import EncoderModelRepository, GameLabelRepository

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

CHECKPOINT_DIR = os.getenv("ENCODER_CHECKPOINT_DIR", "checkpoints")


def load_examples(path: str, labels_repo: GameLabelRepository, input_dim: int) -> List[TrainingExample]:
    df = pd.read_csv(path, dtype={"game_id": str})
    feature_cols = [c for c in df.columns if c not in ("game_id", "side")]
    if len(feature_cols) != input_dim:
        raise ValueError(f"Expected {input_dim} feature columns, found {len(feature_cols)}")

    examples: List[TrainingExample] = []
    missing = 0
    for row in df.itertuples(index=False):
        labels = deserialize_label_pair(labels_repo.get_labels(row.game_id))
        if labels is None or row.side not in labels:
            missing += 1
            continue
        features = np.array([getattr(row, c) for c in feature_cols], dtype=float)
        examples.append(TrainingExample(game_id=row.game_id, features=features, label=labels[row.side]))

    if missing:
        logger.warning("%d feature rows have no stored label and were dropped", missing)
    logger.info("Loaded %d training examples", len(examples))
    return examples


def main():
    parser = argparse.ArgumentParser(description="Pretrain the latent encoder")
    parser.add_argument("--features", required=True, help="Team-game feature CSV")
    parser.add_argument("--version", required=True, help="Model version to store, e.g. v1.1")
    parser.add_argument("--epochs", type=int, default=1)
    parser.add_argument("--batch-size", type=int, default=32)
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--checkpoint", help="Checkpoint path (default: ENCODER_CHECKPOINT_DIR/<version>.pt)")
    parser.add_argument("--freeze", action="store_true", help="Mark the version frozen after training")
    args = parser.parse_args()

    config = ContrastiveConfig.from_env()
    latent = LatentConfig.from_env()
    labels_repo = GameLabelRepository()
    models_repo = EncoderModelRepository()

    examples = load_examples(args.features, labels_repo, config.input_dim)
    if not examples:
        logger.error("No training examples; compute transition labels first")
        sys.exit(1)

    encoder = LatentEncoder(config.input_dim, latent.latent_dim, config=config, seed=args.seed)
    sampler = NegativeSampleCache(
        labels_repo,
        cache_size=config.cache_size,
        refresh_interval=config.cache_refresh_interval,
        rng=np.random.default_rng(args.seed),
    )
    trainer = ContrastivePretrainer(encoder, sampler, config)

    checkpoint = args.checkpoint or str(Path(CHECKPOINT_DIR) / f"encoder_{args.version}.pt")
    trainer.resume(checkpoint)
    history = trainer.train(batched(examples, args.batch_size), epochs=args.epochs, checkpoint_path=checkpoint)
    if not history:
        logger.error("Every batch was skipped; nothing to store")
        sys.exit(1)

    models_repo.save_model(
        args.version,
        encoder.encoder_bytes(),
        encoder.decoder_bytes(),
        latent_dim=latent.latent_dim,
        input_dim=config.input_dim,
        training_completed=True,
    )
    if args.freeze:
        models_repo.freeze_model(args.version)

    logger.info("Final batch: %s", history[-1].to_dict())
    logger.info("Negative cache: %s", sampler.stats())


if __name__ == "__main__":
    main()
