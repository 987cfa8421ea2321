"""
FastAPI application for Latent Edge
Posterior lookup, matchup simulation, label ingestion and a season-rollover job
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from fastapi import Depends, FastAPI, HTTPException, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from latent_edge.auth import verify_admin_api_key, verify_api_key
from latent_edge.core.errors import InvalidDistributionError, UnsupportedSportError
from latent_edge.core.game_context import GameContext
from latent_edge.core.model_config import (
    LatentConfig,
    SeasonConfig,
    SimulatorConfig,
    UpdaterConfig,
)
from latent_edge.models import get_db
from latent_edge.schemas import (
    GameContextIn,
    LabelRequest,
    PosteriorResponse,
    PosteriorUpdateResponse,
    SimulationRequest,
    SimulationResponse,
    TransitionLabelsResponse,
)
from latent_edge.services.mcmc_simulator import MCMCSimulator
from latent_edge.services.negative_sampler import deserialize_label_pair
from latent_edge.services.posterior_updater import BayesianPosteriorUpdater, GameObservation
from latent_edge.services.repositories import GameLabelRepository, PosteriorRepository
from latent_edge.services.season_transition import (
    SeasonTransitionManager,
    extract_season,
    season_start_date,
)
from latent_edge.services.transition_labels import compute_game_labels
from latent_edge.services.transition_network import TransitionProbabilityNetwork, load_default_network
from latent_edge.utils.clock import utc_now

# Logging setup
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Scheduler instance
scheduler = BackgroundScheduler()


# ============================================================================
# SHARED SERVICES
# ============================================================================

_latent_config: Optional[LatentConfig] = None
_network: Optional[TransitionProbabilityNetwork] = None
_network_loaded = False
_posterior_repository: Optional[PosteriorRepository] = None
_label_repository: Optional[GameLabelRepository] = None
_simulator: Optional[MCMCSimulator] = None
_updater: Optional[BayesianPosteriorUpdater] = None


def get_latent_config() -> LatentConfig:
    global _latent_config
    if _latent_config is None:
        _latent_config = LatentConfig.from_env()
    return _latent_config


def get_network() -> Optional[TransitionProbabilityNetwork]:
    """The deployed network, shared by the simulator and the updater."""
    global _network, _network_loaded
    if not _network_loaded:
        _network = load_default_network()
        _network_loaded = True
    return _network


def get_posterior_repository() -> PosteriorRepository:
    global _posterior_repository
    if _posterior_repository is None:
        _posterior_repository = PosteriorRepository(config=get_latent_config())
    return _posterior_repository


def get_label_repository() -> GameLabelRepository:
    global _label_repository
    if _label_repository is None:
        _label_repository = GameLabelRepository()
    return _label_repository


def get_simulator() -> MCMCSimulator:
    global _simulator
    if _simulator is None:
        _simulator = MCMCSimulator(
            network=get_network(),
            posterior_store=get_posterior_repository(),
            config=SimulatorConfig.from_env(),
            latent_config=get_latent_config(),
        )
    return _simulator


def get_updater() -> BayesianPosteriorUpdater:
    global _updater
    if _updater is None:
        latent_config = get_latent_config()
        _updater = BayesianPosteriorUpdater(
            network=get_network(),
            repository=get_posterior_repository(),
            config=UpdaterConfig.from_env(),
            season_manager=SeasonTransitionManager(SeasonConfig.from_env(), latent_config),
            latent_config=latent_config,
        )
    return _updater


def _to_game_context(ctx: GameContextIn, start_month: int = 11) -> GameContext:
    season_start = None
    if ctx.game_date is not None:
        season_start = season_start_date(extract_season(ctx.game_date, start_month), start_month)
    return GameContext(
        is_home=True,
        is_neutral=ctx.is_neutral,
        is_postseason=ctx.is_postseason,
        rest_days=ctx.rest_days,
        travel_distance_miles=ctx.travel_distance_miles,
        is_conference=ctx.is_conference,
        is_rivalry=ctx.is_rivalry,
        is_tv=ctx.is_tv,
        tip_off_hour=ctx.tip_off_hour,
        game_date=ctx.game_date,
        season_start=season_start,
    )


# ============================================================================
# SCHEDULED JOB
# ============================================================================

def run_season_rollover(
    updater: Optional[BayesianPosteriorUpdater] = None,
    repository: Optional[PosteriorRepository] = None,
    today: Optional[datetime] = None,
) -> dict:
    """Regress every posterior whose stored season is older than today's."""
    updater = updater or get_updater()
    repository = repository or get_posterior_repository()
    season = updater.season_manager.season_for(today or utc_now())
    return updater.rollover_teams(repository.get_teams_with_posteriors(), season)


def _season_rollover_job():
    """Daily season-rollover sweep."""
    try:
        results = run_season_rollover()
        logger.info("Season rollover job: %s", results)
    except Exception as exc:
        logger.error("Season rollover job failed: %s", exc, exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("Starting Latent Edge")

    rollover_hour = int(os.getenv("SEASON_ROLLOVER_HOUR", "5"))
    timezone = os.getenv("SCHEDULER_TIMEZONE", "America/New_York")

    scheduler.add_job(
        _season_rollover_job,
        CronTrigger(hour=rollover_hour, minute=0, timezone=timezone),
        id="season_rollover",
        name="Season Rollover",
        replace_existing=True,
    )
    scheduler.start()
    logger.info("Scheduler started: season rollover@%02d:00 %s", rollover_hour, timezone)

    yield

    logger.info("Shutting down Latent Edge")
    scheduler.shutdown()


app = FastAPI(
    title="Latent Edge",
    description="Latent team-strength posteriors and possession-level game simulation",
    version="1.0",
    lifespan=lifespan,
)


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

@app.get("/health")
async def health_check(db: Session = Depends(get_db)):
    """Health check endpoint"""
    health = {
        "status": "healthy",
        "database": "connected",
        "scheduler": "running" if scheduler.running else "stopped",
        "transition_network": "loaded" if get_network() is not None else "missing",
    }
    try:
        db.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("Health check database error: %s", exc)
        health["status"] = "degraded"
        health["database"] = f"error: {exc}"
    return health


# ============================================================================
# AUTHENTICATED ENDPOINTS
# ============================================================================

@app.get("/api/teams/{team_id}/posterior", response_model=PosteriorResponse)
async def get_team_posterior(
    team_id: str,
    user: str = Depends(verify_api_key),
    repository: PosteriorRepository = Depends(get_posterior_repository),
):
    """Current posterior for one team."""
    posterior = repository.get_posterior(team_id)
    if posterior is None:
        raise HTTPException(status_code=404, detail=f"No posterior for team {team_id}")
    return PosteriorResponse(
        team_id=posterior.team_id,
        team_name=posterior.team_name,
        mu=[round(float(v), 6) for v in posterior.mu],
        sigma=[round(float(v), 6) for v in posterior.sigma],
        games_processed=posterior.games_processed,
        season=posterior.season,
        last_updated=posterior.last_updated,
        mean_uncertainty=round(posterior.mean_uncertainty, 4),
        confidence=round(posterior.confidence, 4),
    )


@app.post("/api/simulate", response_model=SimulationResponse)
def simulate_matchup(
    request: SimulationRequest,
    user: str = Depends(verify_api_key),
    simulator: MCMCSimulator = Depends(get_simulator),
):
    """Monte Carlo simulation of one matchup."""
    try:
        result = simulator.simulate_matchup(
            request.home_team_id,
            request.away_team_id,
            context=_to_game_context(request.context),
            fallback_matrix=request.fallback_matrix,
            sport=request.sport,
            possessions=request.possessions,
            iterations=request.iterations,
            seed=request.seed,
        )
    except UnsupportedSportError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))

    return SimulationResponse(
        home_team_id=request.home_team_id,
        away_team_id=request.away_team_id,
        **result.to_dict(),
    )


# ============================================================================
# ADMIN ENDPOINTS
# ============================================================================

@app.post("/api/games/{external_id}/labels", response_model=TransitionLabelsResponse)
def store_game_labels(
    external_id: str,
    request: LabelRequest,
    user: str = Depends(verify_admin_api_key),
    labels_repo: GameLabelRepository = Depends(get_label_repository),
):
    """Compute and store transition labels from posted play-by-play."""
    events = [e.model_dump() for e in request.events]
    labels = compute_game_labels(events, request.home_team_id, request.away_team_id)
    try:
        labels_repo.store_labels(
            external_id,
            labels.to_payload(),
            home_team_id=request.home_team_id,
            away_team_id=request.away_team_id,
            game_date=request.game_date,
            sport=request.sport,
            is_neutral=request.is_neutral,
            home_score=request.home_score,
            away_score=request.away_score,
        )
    except InvalidDistributionError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))

    logger.info("Stored labels for game %s (by %s)", external_id, user)
    return TransitionLabelsResponse(
        external_id=external_id,
        home_possessions=labels.home_counts.total_possessions,
        away_possessions=labels.away_counts.total_possessions,
        **labels.to_payload(),
    )


@app.post("/api/games/{external_id}/update-posteriors", response_model=PosteriorUpdateResponse)
def update_game_posteriors(
    external_id: str,
    user: str = Depends(verify_admin_api_key),
    labels_repo: GameLabelRepository = Depends(get_label_repository),
    updater: BayesianPosteriorUpdater = Depends(get_updater),
):
    """Fold a labelled game into both teams' posteriors."""
    if updater.network is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Transition network not loaded")

    game = labels_repo.get_game(external_id)
    if game is None:
        raise HTTPException(status_code=404, detail=f"Game {external_id} not found")
    labels = deserialize_label_pair(game["transition_probabilities"])
    if labels is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Game {external_id} has no valid labels")

    observation = GameObservation(
        game_id=external_id,
        home_team_id=game["home_team_id"],
        away_team_id=game["away_team_id"],
        home_label=labels["home"],
        away_label=labels["away"],
        game_date=game["game_date"],
        context=GameContext(is_neutral=game["is_neutral"], game_date=game["game_date"]),
    )
    result = updater.update_game(observation)
    return PosteriorUpdateResponse(
        external_id=external_id,
        home_updated=result.home_updated,
        away_updated=result.away_updated,
        errors=result.errors,
    )


# ============================================================================
# ERROR HANDLERS
# ============================================================================

@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Catch-all exception handler"""
    logger.error("Unhandled exception: %s", exc, exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "type": type(exc).__name__}
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
