"""
Status API for the weather bot.

Hosts the cycle scheduler inside the FastAPI lifespan and provides
endpoints for:
- Health and delivery statistics
- Data source fetch results
- Configured alert filters
- Cycle run history and manual triggers
"""

import logging
import os
from typing import Dict, List, Optional
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel

from . import __version__
from .config import configure_logging, load_settings
from .database import Database
from .pipeline import ALERT_JOB, FORECAST_JOB
from .scheduler import CycleScheduler
from .stats import StatsStore

logger = logging.getLogger(__name__)


# =============================================================================
# Pydantic Models
# =============================================================================

class StatsResponse(BaseModel):
    lastUpdate: str
    lastAlertUpdate: str
    counters: Dict[str, int]


class CycleRun(BaseModel):
    id: int
    job: str
    late: bool
    state: str
    attempts: int
    delays_ms: Optional[str]
    error: Optional[str]
    started_at: str
    finished_at: Optional[str]


class SourceHealth(BaseModel):
    source_url: str
    source_type: str
    fetch_time: str
    success: bool
    entries_count: int
    error_message: Optional[str]
    response_time_ms: int


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    uptime: str
    scheduler: str
    missed_cycles: List[str]
    risks: List[str]


# =============================================================================
# Global State
# =============================================================================

db: Optional[Database] = None
stats: Optional[StatsStore] = None
scheduler: Optional[CycleScheduler] = None
start_time: Optional[datetime] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global db, stats, scheduler, start_time

    settings = load_settings()
    configure_logging(settings.log)

    logger.info("Starting weather bot...")
    start_time = datetime.now(timezone.utc)

    db = Database(settings.paths.database)
    stats = StatsStore.load_or_create(settings.paths.stats)

    scheduler = CycleScheduler.from_settings(settings, stats, db)
    scheduler.start()
    logger.info("Bot process started.")

    yield

    logger.info("Shutting down...")
    if scheduler:
        scheduler.stop()
        scheduler.pipeline.close()
    if db:
        db.close()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Weather Bot",
    description="Scheduled forecast and weather alert posts",
    version=__version__,
    lifespan=lifespan
)


# =============================================================================
# Utility Functions
# =============================================================================

def detect_risks() -> List[str]:
    """Detect delivery risks."""
    if not db or not scheduler:
        return ["System not initialized"]

    risks = [f"Missed {job} cycle" for job in scheduler.missed_cycles()]

    for job, summary in db.get_run_summary().items():
        if summary["run_count"] >= 3 and summary["reliability_percent"] < 80:
            risks.append(f"Low reliability: {job}")

    for job in (FORECAST_JOB, ALERT_JOB):
        outcome = scheduler.controllers[job].last_outcome
        if outcome and outcome.state.value == "exhausted":
            risks.append(f"Last {job} cycle exhausted its retries")

    return risks


def get_uptime() -> str:
    """Get formatted uptime string."""
    if not start_time:
        return "N/A"
    delta = datetime.now(timezone.utc) - start_time
    hours, remainder = divmod(int(delta.total_seconds()), 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours}h {minutes}m {seconds}s"


# =============================================================================
# API Endpoints
# =============================================================================

@app.get("/", tags=["Info"])
async def root():
    """API information."""
    return {
        "name": "Weather Bot",
        "version": __version__,
        "jobs": {
            FORECAST_JOB: "Forecast posts with a bonus statement",
            ALERT_JOB: "Filtered weather alert posts",
        }
    }


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """Health check endpoint."""
    risks = detect_risks()

    return HealthResponse(
        status="healthy" if not risks else "degraded",
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime=get_uptime(),
        scheduler="running" if scheduler and scheduler.is_running else "stopped",
        missed_cycles=scheduler.missed_cycles() if scheduler else [],
        risks=risks
    )


@app.get("/stats", response_model=StatsResponse, tags=["Status"])
async def get_stats():
    """Delivery statistics."""
    if not stats:
        raise HTTPException(status_code=503, detail="Stats not available")
    return StatsResponse(**stats.snapshot())


@app.get("/filters", tags=["Status"])
async def get_filters():
    """Describe the configured alert filters."""
    if not scheduler:
        raise HTTPException(status_code=503, detail="Scheduler not available")
    chain = scheduler.pipeline.filter_chain
    return {
        "alerts_enabled": scheduler.alerts_enabled,
        "count": len(chain),
        "filters": chain.describe(),
    }


@app.get("/scheduler", tags=["Status"])
async def get_scheduler_status():
    if not scheduler:
        raise HTTPException(status_code=503, detail="Scheduler not available")
    return scheduler.get_scheduler_status()


@app.get("/runs", response_model=List[CycleRun], tags=["Status"])
async def get_runs(limit: int = Query(default=20, ge=1, le=100)):
    """Recent cycle runs."""
    if not db:
        raise HTTPException(status_code=503, detail="Database not available")
    return [CycleRun(**run) for run in db.get_recent_runs(limit)]


@app.get("/sources", response_model=List[SourceHealth], tags=["Status"])
async def get_sources():
    """Result of the last fetch of each data source."""
    if not scheduler:
        raise HTTPException(status_code=503, detail="Scheduler not available")
    health = scheduler.pipeline.fetcher.get_source_health()
    return [
        SourceHealth(**{**asdict(meta), "source_type": meta.source_type.value})
        for meta in health.values()
    ]


@app.post("/cycles/{job}", tags=["Admin"])
async def trigger_cycle(job: str):
    """Queue an immediate run of the forecast or alerts cycle."""
    if not scheduler:
        raise HTTPException(status_code=503, detail="Scheduler not available")
    try:
        scheduler.run_now(job)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"queued": job}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "weatherbot.api:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=os.getenv("DEBUG", "false").lower() == "true"
    )
