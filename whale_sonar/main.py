"""
Whale Sonar - Main Application

This is the main entry point for the application.
It sets up:
1. FastAPI web server (manual triggers, health, recent alerts)
2. Job scheduler (periodic ingestion and resolution sweeps)
3. Database and upstream client connections

To run locally:
    uvicorn whale_sonar.main:app --reload

To run in production:
    uvicorn whale_sonar.main:app --host 0.0.0.0 --port 8000
"""
import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from loguru import logger
import sys

from .config import settings
from .database import Database
from .polymarket_client import PolymarketClient
from .alerter import Alerter, create_default_alerter
from .ingestion import IngestionSummary, TradeIngestor
from .resolution_sync import ResolutionSyncer, SyncMode, SyncSummary, build_strategy
from .scheduler import JobScheduler, create_job_scheduler

# =========================================
# CONFIGURE LOGGING
# =========================================

logger.remove()  # Remove default handler
logger.add(
    sys.stdout,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
    level=settings.LOG_LEVEL
)

# =========================================
# GLOBAL STATE
# =========================================

# These are initialized on startup
db: Optional[Database] = None
client: Optional[PolymarketClient] = None
alerter: Optional[Alerter] = None
job_scheduler: Optional[JobScheduler] = None

# One run of each job at a time, scheduled or manual
ingest_lock = asyncio.Lock()
resolution_lock = asyncio.Lock()


# =========================================
# PYDANTIC MODELS (API Request/Response)
# =========================================

class AlertResponse(BaseModel):
    trade_hash: str
    alert_type: str
    message: str
    sent: bool
    trader_address: Optional[str]
    market_id: Optional[str]
    amount: Optional[float]
    created_at: Optional[str]


# =========================================
# JOBS
# =========================================

async def run_ingestion() -> IngestionSummary:
    """One ingestion run with the app's shared resources."""
    if db is None or client is None:
        return IngestionSummary(success=False, error="Application not initialized")
    async with ingest_lock:
        ingestor = TradeIngestor(db, client, alerter, settings)
        return await ingestor.run()


async def run_resolution_sync(
    mode: SyncMode,
    limit: Optional[int] = None,
    market_id: Optional[str] = None,
    slug: Optional[str] = None,
    event_slug: Optional[str] = None,
) -> SyncSummary:
    """One resolution sweep. Raises ValueError on bad mode arguments."""
    strategy = build_strategy(mode, settings, market_id=market_id, slug=slug, event_slug=event_slug)
    if db is None or client is None:
        return SyncSummary(mode=SyncMode(mode).value, success=False, error="Application not initialized")
    async with resolution_lock:
        syncer = ResolutionSyncer.from_settings(db, client, settings)
        return await syncer.run(mode, strategy, limit=limit)


async def scheduled_resolution_sync() -> SyncSummary:
    return await run_resolution_sync(SyncMode(settings.RESOLUTION_DEFAULT_MODE))


# =========================================
# LIFECYCLE
# =========================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifecycle.

    This runs:
    - On startup: Initialize database, upstream client, alerter, scheduler
    - On shutdown: Clean up resources
    """
    global db, client, alerter, job_scheduler

    logger.info("🚀 Starting Whale Sonar...")
    logger.info(f"📊 DATABASE_URL configured: {'Yes' if settings.DATABASE_URL else 'No'}")

    # Initialize database with error handling
    try:
        db = Database()
        await db.init()
    except Exception as e:
        logger.error(f"❌ Database initialization failed: {e}")
        db = None

    client = PolymarketClient(
        data_api_url=settings.POLYMARKET_DATA_API,
        gamma_base_url=settings.POLYMARKET_GAMMA_API,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
    )
    await client.open()

    alerter = create_default_alerter()
    logger.info(f"✅ Alerter initialized with channels: {alerter.get_channels()}")

    if settings.ENABLE_SCHEDULER and db:
        job_scheduler = create_job_scheduler(run_ingestion, scheduled_resolution_sync, settings)
        job_scheduler.start()
    else:
        logger.info("ℹ️ Job scheduler disabled")

    logger.info("🎉 Application ready!")

    yield  # Application runs here

    # Shutdown
    logger.info("🛑 Shutting down...")

    if job_scheduler:
        job_scheduler.stop()
        job_scheduler = None

    if client:
        await client.close()

    if db:
        await db.close()

    logger.info("👋 Goodbye!")


# =========================================
# CREATE FASTAPI APP
# =========================================

app = FastAPI(
    title="Whale Sonar",
    description="Whale trade alerts and market resolution tracking for Polymarket",
    version="1.0.0",
    lifespan=lifespan
)


# =========================================
# API ENDPOINTS
# =========================================

@app.get("/health")
async def health_check():
    """
    Health check endpoint for container monitoring.

    Returns 200 to pass healthcheck - shows component status in response.
    """
    health = {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "database": "unknown",
        "scheduler": "running" if job_scheduler and job_scheduler.running else "stopped",
        "jobs": job_scheduler.get_jobs() if job_scheduler else [],
        "alert_channels": alerter.get_channels() if alerter else [],
    }

    # Check database connectivity
    try:
        if db:
            await db.ping()
            health["database"] = "connected"
        else:
            health["database"] = "not_initialized"
    except Exception as e:
        health["database"] = f"error: {str(e)[:50]}"

    # Always return 200 so healthcheck passes
    return health


@app.post("/ingest")
async def trigger_ingestion():
    """
    Run one ingestion now.

    Answers 500 (with the summary) when the run aborted.
    """
    summary = await run_ingestion()
    return JSONResponse(status_code=200 if summary.success else 500, content=summary.to_dict())


@app.post("/resolutions/sync")
async def trigger_resolution_sync(
    mode: str = Query(None, description="recent | due | all | events_recent | market | event"),
    limit: Optional[int] = Query(None, ge=1, le=1000),
    market_id: Optional[str] = Query(None),
    slug: Optional[str] = Query(None),
    event_slug: Optional[str] = Query(None),
):
    """Run one resolution sweep now."""
    try:
        sync_mode = SyncMode(mode or settings.RESOLUTION_DEFAULT_MODE)
        summary = await run_resolution_sync(
            sync_mode, limit=limit, market_id=market_id, slug=slug, event_slug=event_slug
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return JSONResponse(status_code=200 if summary.success else 500, content=summary.to_dict())


@app.get("/alerts", response_model=List[AlertResponse])
async def get_alerts(limit: int = Query(20, ge=1, le=100)):
    """Get recent stored alerts, newest first."""
    if not db:
        raise HTTPException(status_code=503, detail="Database not initialized")

    alerts = await db.get_recent_alerts(limit=limit)
    return [
        AlertResponse(
            trade_hash=a.trade_hash,
            alert_type=a.alert_type,
            message=a.message,
            sent=bool(a.sent),
            trader_address=a.trader_address,
            market_id=a.market_id,
            amount=a.amount,
            created_at=a.created_at.isoformat() if a.created_at else None,
        )
        for a in alerts
    ]


# =========================================
# ERROR HANDLERS
# =========================================

@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    logger.error(f"Unhandled error: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )


# =========================================
# RUN DIRECTLY
# =========================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "whale_sonar.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )
