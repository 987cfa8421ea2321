#!/usr/bin/env python3
"""
Seed team posteriors from the latest frozen encoder.

Reads a CSV with one row per team::

    team_id, name, f0 .. f79

and stores ``FrozenLatentEncoder.initial_posterior`` for every team that
does not already have a posterior (``--overwrite`` replaces existing ones).

Usage:
    python scripts/init_posteriors.py --teams data/preseason_features.csv --season 2026-27
"""

import argparse
import logging
import sys
from pathlib import Path

import numpy as np
import pandas as pd

# Add project root to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from latent_edge.core.model_config import LatentConfig
from latent_edge.services.latent_encoder import FrozenLatentEncoder
from latent_edge.services.repositories import EncoderModelRepository, PosteriorRepository

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="Initialize posteriors from the frozen encoder")
    parser.add_argument("--teams", required=True, help="Pre-season team feature CSV")
    parser.add_argument("--season", required=True, help="Season label, e.g. 2026-27")
    parser.add_argument("--overwrite", action="store_true")
    args = parser.parse_args()

    latent = LatentConfig.from_env()
    record = EncoderModelRepository().get_latest_frozen_model()
    if record is None:
        logger.error("No frozen encoder available; run pretrain_encoder.py --freeze first")
        sys.exit(1)
    encoder = FrozenLatentEncoder(record, latent)
    repo = PosteriorRepository(config=latent)

    df = pd.read_csv(args.teams, dtype={"team_id": str})
    feature_cols = [c for c in df.columns if c not in ("team_id", "name")]

    created = kept = 0
    for row in df.itertuples(index=False):
        if not args.overwrite and repo.get_posterior(row.team_id) is not None:
            kept += 1
            continue
        features = np.array([getattr(row, c) for c in feature_cols], dtype=float)
        posterior = encoder.initial_posterior(row.team_id, features, args.season, getattr(row, "name", None))
        repo.save_posterior(posterior)
        created += 1

    if not encoder.verify_integrity():
        logger.error("Encoder weights changed during seeding")
        sys.exit(1)
    logger.info("Seeded %d posteriors with %s (%d already present)", created, encoder.model_version, kept)


if __name__ == "__main__":
    main()
