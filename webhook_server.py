"""
FastAPI Webhook Server for the Shop Commerce Core
Receives EPay payment notifications, exposes health checks and owns the
background maintenance scheduler and commerce event dispatcher.
"""
import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from config import Config
from database import create_tables, test_connection
from handlers.epay_webhook import router as epay_router
from jobs.consolidated_scheduler import get_consolidated_scheduler_instance
from services.commerce_events import event_dispatcher
from services.inventory_claim import install_claim_engine

logger = logging.getLogger(__name__)

_startup_complete = False
_startup_timestamp = None


# Lifespan handler for FastAPI (modern replacement for on_event)
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: schema check, claim backend selection, event dispatcher and
    scheduler. Shutdown: stop the scheduler first so no sweep publishes into
    a stopped dispatcher.
    """
    global _startup_complete, _startup_timestamp

    logger.info(f"🔧 Worker {os.getpid()} starting...")
    Config.log_environment_config()

    if not create_tables():
        raise RuntimeError("Database schema could not be verified")
    claim_engine = install_claim_engine()
    logger.info(f"📦 Inventory claim backend: {claim_engine!r}")

    event_dispatcher.start()
    scheduler = get_consolidated_scheduler_instance()
    scheduler.start()

    _startup_complete = True
    _startup_timestamp = time.time()
    logger.info(f"✅ Worker {os.getpid()} initialized successfully")

    yield  # App is now running and handling requests

    logger.info(f"🔄 Worker {os.getpid()} shutting down...")
    _startup_complete = False
    scheduler.stop()
    event_dispatcher.stop()


# Create FastAPI app with modern lifespan handler
app = FastAPI(
    title="Shop Commerce Core",
    description="Payment notifications and order maintenance for the shop bot",
    lifespan=lifespan
)

app.include_router(epay_router)


@app.get("/")
async def root():
    """Root endpoint"""
    return {"message": "Shop Commerce Core is running"}


@app.get("/health")
async def health_check():
    """Health check endpoint with startup readiness"""
    if not _startup_complete:
        return JSONResponse(
            content={"status": "starting", "service": "shop-commerce-core", "ready": False},
            status_code=503  # Service Unavailable during startup
        )

    database_ok = await asyncio.to_thread(test_connection)
    uptime = time.time() - _startup_timestamp if _startup_timestamp else 0
    return JSONResponse(
        content={
            "status": "healthy" if database_ok else "degraded",
            "service": "shop-commerce-core",
            "ready": True,
            "database": database_ok,
            "uptime_seconds": round(uptime, 2),
            "pending_events": event_dispatcher.pending_count,
        },
        status_code=200 if database_ok else 503
    )


def main():
    logging.basicConfig(
        level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8080")))


if __name__ == "__main__":
    main()
