"""
Pydantic request/response schemas for the Latent Edge API.

Also validates the posterior payload stored in
``teams.statistical_representation`` on the way in and out of the
database, so a malformed row is caught at the repository boundary instead
of deep inside the simulator.
"""

from __future__ import annotations

import math
from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from latent_edge.core.outcomes import N_OUTCOMES, validate_distribution


# ---------------------------------------------------------------------------
# Stored posterior payload
# ---------------------------------------------------------------------------

class PosteriorPayload(BaseModel):
    """The JSON document persisted for each team's posterior."""

    type: str = "bayesian_posterior"
    mu: List[float]
    sigma: List[float]
    games_processed: int = Field(0, ge=0)
    last_season: Optional[str] = None
    last_updated: Optional[datetime] = None
    model_version: str = "v1.0"
    team_name: Optional[str] = None
    season_history: List[Dict[str, Any]] = Field(default_factory=list)

    @field_validator("mu", "sigma")
    @classmethod
    def validate_finite(cls, v: List[float]) -> List[float]:
        if not v:
            raise ValueError("latent vectors cannot be empty")
        if not all(math.isfinite(x) for x in v):
            raise ValueError("latent vectors must be finite")
        return v

    @field_validator("sigma")
    @classmethod
    def validate_positive(cls, v: List[float]) -> List[float]:
        if any(x <= 0 for x in v):
            raise ValueError("sigma entries must be positive")
        return v

    @model_validator(mode="after")
    def validate_lengths(self) -> PosteriorPayload:
        if len(self.mu) != len(self.sigma):
            raise ValueError(f"mu has {len(self.mu)} entries but sigma has {len(self.sigma)}")
        return self


# ---------------------------------------------------------------------------
# Posterior lookup
# ---------------------------------------------------------------------------

class PosteriorResponse(BaseModel):
    """Response for GET /api/teams/{team_id}/posterior."""
    team_id: str
    team_name: Optional[str]
    mu: List[float]
    sigma: List[float]
    games_processed: int
    season: Optional[str]
    last_updated: Optional[datetime]
    mean_uncertainty: float
    confidence: float


# ---------------------------------------------------------------------------
# Simulation
# ---------------------------------------------------------------------------

class GameContextIn(BaseModel):
    """Raw game facts from the home team's perspective."""

    is_neutral: bool = False
    is_postseason: bool = False
    rest_days: float = Field(2.0, ge=0)
    travel_distance_miles: float = Field(0.0, ge=0)
    is_conference: bool = False
    is_rivalry: bool = False
    is_tv: bool = False
    tip_off_hour: float = Field(19.0, ge=0, lt=24)
    game_date: Optional[date] = None


class SimulationRequest(BaseModel):
    """
    Payload for POST /api/simulate.

    ``fallback_matrix`` is only used if the latent model cannot run for
    this matchup; it accepts any supported matrix payload shape.
    """

    home_team_id: str = Field(..., min_length=1, max_length=120)
    away_team_id: str = Field(..., min_length=1, max_length=120)
    sport: Optional[str] = None
    context: GameContextIn = Field(default_factory=GameContextIn)
    fallback_matrix: Optional[Dict[str, Any]] = None
    possessions: Optional[int] = Field(None, gt=0, le=400)
    iterations: Optional[int] = Field(None, gt=0, le=100_000)
    seed: Optional[int] = None

    @model_validator(mode="after")
    def validate_teams(self) -> SimulationRequest:
        if self.home_team_id == self.away_team_id:
            raise ValueError("home_team_id and away_team_id must differ")
        return self

    model_config = {
        "json_schema_extra": {
            "example": {
                "home_team_id": "duke",
                "away_team_id": "unc",
                "context": {"is_neutral": False, "rest_days": 3},
                "iterations": 10000,
                "seed": 42,
            }
        }
    }


class UncertaintyResponse(BaseModel):
    home_team_uncertainty: float
    away_team_uncertainty: float
    prediction_confidence: float
    home_team_name: Optional[str] = None
    away_team_name: Optional[str] = None


class SimulationResponse(BaseModel):
    """Response for POST /api/simulate."""
    home_team_id: str
    away_team_id: str
    iterations: int
    data_source: Literal["latent-model", "fallback-matrix", "fallback-generated"]
    sport: str
    possessions: int
    home_win_prob: float
    away_win_prob: float
    tie_prob: float
    avg_home_score: float
    avg_away_score: float
    avg_margin: float
    margin_std: float
    home_score_std: float
    away_score_std: float
    margin_5th: float
    margin_95th: float
    analytic_home_win_prob: float
    uncertainty: Optional[UncertaintyResponse] = None


# ---------------------------------------------------------------------------
# Transition labels
# ---------------------------------------------------------------------------

class PlayByPlayEvent(BaseModel):
    team: str
    vh: Literal["H", "V"]
    action: str
    type: Optional[str] = None

    @field_validator("action")
    @classmethod
    def normalize_action(cls, v: str) -> str:
        return v.upper()


class LabelRequest(BaseModel):
    """Payload for POST /api/games/{external_id}/labels."""
    home_team_id: str
    away_team_id: str
    game_date: datetime
    sport: str = "ncaa_basketball"
    is_neutral: bool = False
    home_score: Optional[int] = Field(None, ge=0)
    away_score: Optional[int] = Field(None, ge=0)
    events: List[PlayByPlayEvent] = Field(..., min_length=1)


class TransitionLabelsResponse(BaseModel):
    external_id: str
    home: List[float]
    away: List[float]
    home_possessions: int
    away_possessions: int

    @field_validator("home", "away")
    @classmethod
    def validate_label(cls, v: List[float]) -> List[float]:
        if len(v) != N_OUTCOMES:
            raise ValueError(f"labels must have {N_OUTCOMES} entries")
        if sum(v) > 0 and not validate_distribution(v):
            raise ValueError("labels must be a valid distribution")
        return v


class PosteriorUpdateResponse(BaseModel):
    external_id: str
    home_updated: bool
    away_updated: bool
    errors: List[str]
