#!/usr/bin/env python3
"""
Compute per-game transition labels from a play-by-play CSV.

The CSV has one row per event with columns::

    game_id, game_date, home_team_id, away_team_id, team, vh, action, type

and optionally ``is_neutral``, ``home_score``, ``away_score`` (repeated on
every row of a game).  Labels are validated and written to
``games.transition_probabilities``; games where either side has no
possession-ending events are skipped.

Usage:
    python scripts/compute_transition_labels.py --pbp data/pbp_2026.csv
    python scripts/compute_transition_labels.py --pbp data/pbp_2026.csv --dry-run --out labels.json
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Dict, List

import pandas as pd

# Add project root to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from latent_edge.core.errors import InvalidDistributionError
from latent_edge.services.repositories import GameLabelRepository
from latent_edge.services.transition_labels import compute_game_labels

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ["game_id", "game_date", "home_team_id", "away_team_id", "team", "vh", "action", "type"]


def load_pbp(path: str) -> pd.DataFrame:
    df = pd.read_csv(path, dtype={"game_id": str, "home_team_id": str, "away_team_id": str, "team": str})
    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"{path} is missing columns: {', '.join(missing)}")
    df["game_date"] = pd.to_datetime(df["game_date"])
    return df


def _optional_int(value):
    return None if pd.isna(value) else int(value)


def compute_labels(df: pd.DataFrame, repo: GameLabelRepository = None) -> Dict[str, Dict]:
    """Label every game in ``df``; store each one when ``repo`` is given."""
    results: Dict[str, Dict] = {}
    skipped: List[str] = []

    for game_id, plays in df.groupby("game_id", sort=False):
        first = plays.iloc[0]
        labels = compute_game_labels(plays, first["home_team_id"], first["away_team_id"])
        if labels.home_counts.total_possessions == 0 or labels.away_counts.total_possessions == 0:
            logger.warning("Game %s: a side has no possession-ending events, skipping", game_id)
            skipped.append(game_id)
            continue

        if repo is not None:
            try:
                repo.store_labels(
                    game_id,
                    labels.to_payload(),
                    home_team_id=first["home_team_id"],
                    away_team_id=first["away_team_id"],
                    game_date=first["game_date"].to_pydatetime(),
                    is_neutral=bool(first.get("is_neutral", False)),
                    home_score=_optional_int(first.get("home_score")),
                    away_score=_optional_int(first.get("away_score")),
                )
            except InvalidDistributionError as exc:
                logger.error("Game %s: %s", game_id, exc)
                skipped.append(game_id)
                continue
        results[game_id] = labels.to_payload()

    logger.info("Labelled %d games (%d skipped)", len(results), len(skipped))
    return results


def main():
    parser = argparse.ArgumentParser(description="Compute transition labels from play-by-play")
    parser.add_argument("--pbp", required=True, help="Play-by-play CSV")
    parser.add_argument("--dry-run", action="store_true", help="Do not write to the database")
    parser.add_argument("--out", help="Also write labels as JSON to this path")
    args = parser.parse_args()

    df = load_pbp(args.pbp)
    logger.info("Loaded %d events for %d games", len(df), df["game_id"].nunique())

    repo = None if args.dry_run else GameLabelRepository()
    labels = compute_labels(df, repo)

    if args.out:
        Path(args.out).write_text(json.dumps(labels, indent=2))
        logger.info("Wrote %s", args.out)


if __name__ == "__main__":
    main()
