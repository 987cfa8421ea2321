#!/usr/bin/env python3
"""
Supervised training of the transition probability network.

Each labelled game gives two examples (home offence vs away defence and the
reverse).  Inputs are built from the teams' current stored posteriors;
teams without one use the neutral prior.  The network is written
atomically to ``TRANSITION_NETWORK_PATH`` after every epoch.

Usage:
    python scripts/train_transition_network.py --epochs 20 --seed 7
    python scripts/train_transition_network.py --resume --epochs 5
"""

import argparse
import logging
import sys
from pathlib import Path

import numpy as np

# Add project root to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from latent_edge.core.game_context import GameContext
from latent_edge.core.model_config import LatentConfig
from latent_edge.core.posterior import TeamPosterior
from latent_edge.services.negative_sampler import deserialize_label_pair
from latent_edge.services.repositories import GameLabelRepository, PosteriorRepository
from latent_edge.services.transition_network import DEFAULT_NETWORK_PATH, TransitionProbabilityNetwork

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def build_dataset(network, games, posteriors, latent_dim):
    inputs, targets = [], []
    for game in games:
        labels = deserialize_label_pair(game["transition_probabilities"])
        if labels is None:
            logger.warning("Game %s has unusable labels, skipping", game["external_id"])
            continue
        home = posteriors.get(game["home_team_id"]) or TeamPosterior.neutral(game["home_team_id"], latent_dim)
        away = posteriors.get(game["away_team_id"]) or TeamPosterior.neutral(game["away_team_id"], latent_dim)
        ctx = GameContext(is_neutral=game["is_neutral"], game_date=game["game_date"])

        inputs.append(network.build_input(home.mu, home.variance, away.mu, away.variance, ctx))
        targets.append(labels["home"])
        inputs.append(network.build_input(away.mu, away.variance, home.mu, home.variance, ctx.for_opponent()))
        targets.append(labels["away"])
    return np.array(inputs), np.array(targets)


def main():
    parser = argparse.ArgumentParser(description="Train the transition probability network")
    parser.add_argument("--epochs", type=int, default=10)
    parser.add_argument("--batch-size", type=int, default=32)
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--sport", default=None, help="Only games of this sport")
    parser.add_argument("--output", default=DEFAULT_NETWORK_PATH)
    parser.add_argument("--resume", action="store_true", help="Continue from --output if it exists")
    args = parser.parse_args()

    latent = LatentConfig.from_env()
    labels_repo = GameLabelRepository()
    posterior_repo = PosteriorRepository(config=latent)

    if args.resume and Path(args.output).exists():
        network = TransitionProbabilityNetwork.load(args.output)
        logger.info("Resumed network from %s (%d steps)", args.output, network.steps)
    else:
        network = TransitionProbabilityNetwork(latent.latent_dim, latent.context_dim, seed=args.seed)

    games = labels_repo.labelled_games(args.sport)
    team_ids = {g["home_team_id"] for g in games} | {g["away_team_id"] for g in games}
    posteriors = posterior_repo.batch_load_posteriors(sorted(team_ids))
    inputs, targets = build_dataset(network, games, posteriors, latent.latent_dim)
    if len(inputs) == 0:
        logger.error("No labelled games to train on")
        sys.exit(1)

    logger.info("Training on %d examples from %d games", len(inputs), len(games))
    history = network.fit(
        inputs, targets,
        epochs=args.epochs,
        batch_size=args.batch_size,
        seed=args.seed,
        checkpoint_path=args.output,
    )
    logger.info("Final loss %.4f after %d steps", history[-1], network.steps)


if __name__ == "__main__":
    main()
