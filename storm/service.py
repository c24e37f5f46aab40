"""
Storm Service Entrypoint

FastAPI application for the storm control plane.
Includes all API routers, the typed error handler, and startup
initialization (logging, database, registry reconciler).
"""
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import logging

from shared.logging_config import setup_logging
from storm.api import health, storm_users, transfers
from storm.config import LOG_FILE, LOG_LEVEL, PRIMARY_ROOT, RECONCILE_INTERVAL_SECONDS, STORM_API_PORT, STORM_BIND_HOST
from storm.database import SessionLocal, init_db
from storm.errors import StormError
from storm.services.reconciler import RegistryReconciler
from storm.startup_profile import StartupProfile, validate_startup_profile

logger = logging.getLogger(__name__)

app = FastAPI(title="Storm Control Plane")

app.include_router(storm_users.router)
app.include_router(transfers.router)
app.include_router(health.router)

# Global reconciler instance
reconciler = None


@app.exception_handler(StormError)
def storm_error_handler(request: Request, exc: StormError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} -> {exc.code}: {exc.message}")
    else:
        logger.warning(f"{request.method} {request.url.path} -> {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.as_dict())


@app.on_event("startup")
def startup_init():
    """Initialize logging, database and start the registry reconciler"""
    global reconciler

    setup_logging("storm", level=LOG_LEVEL, log_file=LOG_FILE or None)
    validate_startup_profile(StartupProfile(
        host=STORM_BIND_HOST,
        port=STORM_API_PORT,
        primary_root=PRIMARY_ROOT,
        reconcile_interval_seconds=RECONCILE_INTERVAL_SECONDS,
    ))

    init_db()

    if RECONCILE_INTERVAL_SECONDS > 0:
        reconciler = RegistryReconciler(SessionLocal, interval_seconds=RECONCILE_INTERVAL_SECONDS)
        reconciler.start()

    logger.info("Storm service startup complete")


@app.on_event("shutdown")
def shutdown_cleanup():
    """Stop reconciler on shutdown"""
    global reconciler

    if reconciler:
        logger.info("Stopping registry reconciler...")
        reconciler.stop()
        reconciler = None

    logger.info("Storm service shutdown complete")


@app.get("/")
def root():
    return {
        "service": "storm",
        "message": "Storm control plane running",
    }
