"""
SQL-backed stores for posteriors, encoder versions and transition labels.

Each repository takes a ``session_factory`` (``SessionLocal`` by default)
and opens one short-lived session per call, so a repository instance can
be shared across threads.  Tests pass a sessionmaker bound to an in-memory
SQLite engine.
"""

import json
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

from pydantic import ValidationError
from sqlalchemy import func
from sqlalchemy.orm import Session

from latent_edge.core.errors import InvalidPosteriorError, ModelIntegrityError
from latent_edge.core.model_config import LatentConfig
from latent_edge.core.outcomes import require_valid_distribution
from latent_edge.core.posterior import PosteriorStore, TeamPosterior
from latent_edge.models import EncoderModel, Game, SessionLocal, Team
from latent_edge.schemas import PosteriorPayload
from latent_edge.services.latent_encoder import EncoderModelRecord, weights_hash
from latent_edge.services.negative_sampler import LabelSource
from latent_edge.utils.clock import utc_now

logger = logging.getLogger(__name__)


@contextmanager
def session_scope(session_factory) -> Iterator[Session]:
    """Commit on success, roll back on any error, always close."""
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# ---------------------------------------------------------------------------
# Posteriors
# ---------------------------------------------------------------------------

class PosteriorRepository(PosteriorStore):
    """Team posteriors stored as JSON in ``teams.statistical_representation``."""

    def __init__(self, session_factory=SessionLocal, config: Optional[LatentConfig] = None):
        self.session_factory = session_factory
        self.config = config or LatentConfig()

    # ---- serialization ---- #

    @staticmethod
    def _encode(posterior: TeamPosterior) -> str:
        payload = PosteriorPayload.model_validate(posterior.to_payload())
        return payload.model_dump_json()

    def _decode(self, team: Team) -> Optional[TeamPosterior]:
        raw = team.statistical_representation
        if not raw:
            return None
        try:
            payload = PosteriorPayload.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("Stored posterior for %s is malformed: %s", team.team_id, exc.errors()[:3])
            return None
        data = payload.model_dump()
        if payload.last_updated is not None:
            data["last_updated"] = payload.last_updated.isoformat()
        if not data.get("team_name"):
            data["team_name"] = team.name
        return TeamPosterior.from_payload(team.team_id, data)

    # ---- reads ---- #

    def get_posterior(self, team_id: str) -> Optional[TeamPosterior]:
        with session_scope(self.session_factory) as db:
            team = db.query(Team).filter(Team.team_id == team_id).first()
            if team is None:
                return None
            return self._decode(team)

    def get_teams_with_posteriors(self, sport: Optional[str] = None) -> List[str]:
        with session_scope(self.session_factory) as db:
            query = db.query(Team.team_id).filter(Team.statistical_representation.isnot(None))
            if sport:
                query = query.filter(Team.sport == sport)
            return [row.team_id for row in query.order_by(Team.team_id).all()]

    def batch_load_posteriors(self, team_ids: Sequence[str]) -> Dict[str, TeamPosterior]:
        """Load many posteriors in one query.  Teams without one are omitted."""
        if not team_ids:
            return {}
        with session_scope(self.session_factory) as db:
            teams = db.query(Team).filter(Team.team_id.in_(list(team_ids))).all()
            loaded = {}
            for team in teams:
                posterior = self._decode(team)
                if posterior is not None:
                    loaded[team.team_id] = posterior
            return loaded

    # ---- writes ---- #

    def get_or_create_posterior(
        self,
        team_id: str,
        season: Optional[str] = None,
        sport: Optional[str] = None,
        name: Optional[str] = None,
    ) -> TeamPosterior:
        with session_scope(self.session_factory) as db:
            team = db.query(Team).filter(Team.team_id == team_id).first()
            if team is not None:
                existing = self._decode(team)
                if existing is not None:
                    return existing
            else:
                team = Team(team_id=team_id, sport=sport or "ncaa_basketball", name=name)
                db.add(team)

            posterior = TeamPosterior.neutral(team_id, self.config.latent_dim, season, name or team.name)
            team.statistical_representation = self._encode(posterior)
            logger.info("Initialized neutral posterior for %s", team_id)
            return posterior

    def save_posterior(self, posterior: TeamPosterior) -> TeamPosterior:
        try:
            encoded = self._encode(posterior)
        except ValidationError as exc:
            raise InvalidPosteriorError(f"Refusing to store posterior for {posterior.team_id}: {exc}") from exc

        with session_scope(self.session_factory) as db:
            team = db.query(Team).filter(Team.team_id == posterior.team_id).first()
            if team is None:
                team = Team(team_id=posterior.team_id, name=posterior.team_name)
                db.add(team)
            team.statistical_representation = encoded
            team.updated_at = utc_now()
        return posterior


# ---------------------------------------------------------------------------
# Encoder versions
# ---------------------------------------------------------------------------

def _to_record(row: EncoderModel) -> EncoderModelRecord:
    return EncoderModelRecord(
        model_version=row.model_version,
        encoder_weights=bytes(row.encoder_weights),
        latent_dim=row.latent_dim,
        input_dim=row.input_dim,
        training_completed=bool(row.training_completed),
        frozen=bool(row.frozen),
        weights_hash=row.weights_hash,
        decoder_weights=bytes(row.decoder_weights) if row.decoder_weights is not None else None,
        created_at=row.created_at,
        frozen_at=row.frozen_at,
    )


class EncoderModelRepository:
    """Versioned encoder weights.  Frozen versions are immutable."""

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    def save_model(
        self,
        version: str,
        encoder_bytes: bytes,
        decoder_bytes: Optional[bytes] = None,
        latent_dim: int = 16,
        input_dim: int = 80,
        training_completed: bool = False,
    ) -> EncoderModelRecord:
        """Insert or overwrite an unfrozen version."""
        with session_scope(self.session_factory) as db:
            row = db.query(EncoderModel).filter(EncoderModel.model_version == version).first()
            if row is not None and row.frozen:
                raise ModelIntegrityError(f"Encoder {version} is frozen and cannot be overwritten")
            if row is None:
                row = EncoderModel(model_version=version)
                db.add(row)
            row.encoder_weights = encoder_bytes
            row.decoder_weights = decoder_bytes
            row.latent_dim = latent_dim
            row.input_dim = input_dim
            row.training_completed = training_completed
            row.weights_hash = weights_hash(encoder_bytes)
            db.flush()
            logger.info(
                "Saved encoder %s (%d bytes, completed=%s)",
                version, len(encoder_bytes), training_completed,
            )
            return _to_record(row)

    def freeze_model(self, version: str) -> EncoderModelRecord:
        """Mark a completed version frozen.  Freezing twice is a no-op."""
        with session_scope(self.session_factory) as db:
            row = db.query(EncoderModel).filter(EncoderModel.model_version == version).first()
            if row is None:
                raise ModelIntegrityError(f"Encoder {version} does not exist")
            if not row.training_completed:
                raise ModelIntegrityError(f"Encoder {version} cannot be frozen before training completes")
            if not row.frozen:
                row.frozen = True
                row.frozen_at = utc_now()
                row.weights_hash = weights_hash(bytes(row.encoder_weights))
                logger.info("Froze encoder %s (sha256 %s)", version, row.weights_hash[:12])
            db.flush()
            return _to_record(row)

    def get_model(self, version: str) -> Optional[EncoderModelRecord]:
        with session_scope(self.session_factory) as db:
            row = db.query(EncoderModel).filter(EncoderModel.model_version == version).first()
            return _to_record(row) if row is not None else None

    def get_latest_frozen_model(self) -> Optional[EncoderModelRecord]:
        with session_scope(self.session_factory) as db:
            row = (
                db.query(EncoderModel)
                .filter(EncoderModel.frozen.is_(True), EncoderModel.training_completed.is_(True))
                .order_by(EncoderModel.frozen_at.desc(), EncoderModel.id.desc())
                .first()
            )
            return _to_record(row) if row is not None else None

    def validate_model_integrity(self, version: str) -> bool:
        """True if the stored weights still hash to the value recorded at freeze time."""
        record = self.get_model(version)
        if record is None or not record.frozen or not record.weights_hash:
            return False
        ok = weights_hash(record.encoder_weights) == record.weights_hash
        if not ok:
            logger.error("Encoder %s failed integrity check", version)
        return ok


# ---------------------------------------------------------------------------
# Transition labels
# ---------------------------------------------------------------------------

class GameLabelRepository(LabelSource):
    """Per-game transition labels in ``games.transition_probabilities``."""

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    def store_labels(
        self,
        external_id: str,
        labels: Mapping[str, Sequence[float]],
        home_team_id: Optional[str] = None,
        away_team_id: Optional[str] = None,
        game_date: Optional[datetime] = None,
        sport: str = "ncaa_basketball",
        is_neutral: bool = False,
        home_score: Optional[int] = None,
        away_score: Optional[int] = None,
    ) -> None:
        """Validate and store both sides' labels, creating the game row if needed.

        Raises:
            InvalidDistributionError: Either side is not a valid label.
            ValueError: The game is new and team ids / date are missing.
        """
        payload = {
            side: [float(p) for p in require_valid_distribution(labels[side], what=f"{side} label for {external_id}")]
            for side in ("home", "away")
        }

        with session_scope(self.session_factory) as db:
            game = db.query(Game).filter(Game.external_id == external_id).first()
            if game is None:
                if not (home_team_id and away_team_id and game_date):
                    raise ValueError(f"Game {external_id} is new; team ids and game_date are required")
                game = Game(
                    external_id=external_id,
                    sport=sport,
                    game_date=game_date,
                    home_team_id=home_team_id,
                    away_team_id=away_team_id,
                    is_neutral=is_neutral,
                )
                db.add(game)
            if home_score is not None and away_score is not None:
                game.home_score = home_score
                game.away_score = away_score
                game.completed = True
            game.transition_probabilities = json.dumps(payload)
            game.labels_computed_at = utc_now()
        logger.debug("Stored transition labels for game %s", external_id)

    def get_game(self, external_id: str) -> Optional[Dict[str, Any]]:
        with session_scope(self.session_factory) as db:
            game = db.query(Game).filter(Game.external_id == external_id).first()
            if game is None:
                return None
            return {
                "external_id": game.external_id,
                "sport": game.sport,
                "game_date": game.game_date,
                "home_team_id": game.home_team_id,
                "away_team_id": game.away_team_id,
                "is_neutral": bool(game.is_neutral),
                "transition_probabilities": game.transition_probabilities,
            }

    def get_labels(self, game_id: str) -> Optional[str]:
        with session_scope(self.session_factory) as db:
            row = (
                db.query(Game.transition_probabilities)
                .filter(Game.external_id == game_id)
                .first()
            )
            return row.transition_probabilities if row is not None else None

    def fetch_labels(self, limit: int, exclude_game_id: Optional[str] = None) -> Dict[str, Any]:
        with session_scope(self.session_factory) as db:
            query = db.query(Game.external_id, Game.transition_probabilities).filter(
                Game.transition_probabilities.isnot(None)
            )
            if exclude_game_id is not None:
                query = query.filter(Game.external_id != exclude_game_id)
            rows = query.order_by(func.random()).limit(limit).all()
            return {row.external_id: row.transition_probabilities for row in rows}

    def labelled_games(self, sport: Optional[str] = None) -> List[Dict[str, Any]]:
        """Every labelled game in date order, for supervised training."""
        with session_scope(self.session_factory) as db:
            query = db.query(Game).filter(Game.transition_probabilities.isnot(None))
            if sport:
                query = query.filter(Game.sport == sport)
            return [
                {
                    "external_id": g.external_id,
                    "game_date": g.game_date,
                    "home_team_id": g.home_team_id,
                    "away_team_id": g.away_team_id,
                    "is_neutral": bool(g.is_neutral),
                    "transition_probabilities": g.transition_probabilities,
                }
                for g in query.order_by(Game.game_date.asc(), Game.id.asc()).all()
            ]
