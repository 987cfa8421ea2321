"""
Database models for Latent Edge
SQLAlchemy ORM (PostgreSQL in production, SQLite for local runs and tests)
"""

import logging
import os

from dotenv import load_dotenv
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    LargeBinary,
    String,
    Text,
    create_engine,
)
from sqlalchemy.orm import declarative_base, sessionmaker

from latent_edge.utils.clock import utc_now

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./latent_edge.db")


def make_engine(url: str = DATABASE_URL):
    """Engine for ``url``; SQLite connections may be shared across threads."""
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False}, echo=False)
    # pool_pre_ping keeps long-lived Postgres connections usable
    return create_engine(url, pool_pre_ping=True, echo=False)


engine = make_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


# Dependency for FastAPI
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


class Team(Base):
    """A team and its serialized latent posterior."""

    __tablename__ = "teams"

    id = Column(Integer, primary_key=True, index=True)
    team_id = Column(String, unique=True, nullable=False, index=True)
    sport = Column(String, nullable=False, default="ncaa_basketball", index=True)
    name = Column(String)

    # JSON text of TeamPosterior.to_payload()
    statistical_representation = Column(Text)

    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)


class Game(Base):
    """A game and, once play-by-play is processed, its transition labels."""

    __tablename__ = "games"

    id = Column(Integer, primary_key=True, index=True)
    external_id = Column(String, unique=True, nullable=False, index=True)
    sport = Column(String, nullable=False, default="ncaa_basketball", index=True)
    game_date = Column(DateTime, nullable=False, index=True)
    home_team_id = Column(String, nullable=False, index=True)
    away_team_id = Column(String, nullable=False, index=True)
    is_neutral = Column(Boolean, default=False)

    # Actual results (filled after game)
    home_score = Column(Integer)
    away_score = Column(Integer)
    completed = Column(Boolean, default=False)

    # JSON text {"home": [8 floats], "away": [8 floats]}
    transition_probabilities = Column(Text)
    labels_computed_at = Column(DateTime)

    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)


class EncoderModel(Base):
    """Versioned encoder weights.  Only frozen, completed versions are served."""

    __tablename__ = "encoder_models"

    id = Column(Integer, primary_key=True, index=True)
    model_version = Column(String, unique=True, nullable=False, index=True)
    encoder_weights = Column(LargeBinary, nullable=False)
    decoder_weights = Column(LargeBinary)
    latent_dim = Column(Integer, nullable=False, default=16)
    input_dim = Column(Integer, nullable=False, default=80)
    training_completed = Column(Boolean, default=False, nullable=False)
    frozen = Column(Boolean, default=False, nullable=False, index=True)
    weights_hash = Column(String(64))

    created_at = Column(DateTime, default=utc_now, index=True)
    frozen_at = Column(DateTime)


# Create all tables
def init_db(bind=None):
    """Initialize database tables"""
    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database tables created")
