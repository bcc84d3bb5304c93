from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import (
    builds, models_catalog, settings, delivery, profile, orders, admin_orders, payments, webhooks,
    analytics_session, analytics, admin, admin_customers, admin_insights, admin_export,
)

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.jobstores.mongodb import MongoDBJobStore

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

SERVICE_NAME = "Firefly Tiny Homes API"
STALE_SESSION_JOB_MINUTES = 5

# Import job runners from shared module (used by scheduler and admin run-now)
from job_runner import run_close_stale_sessions


def build_scheduler() -> AsyncIOScheduler:
    """Scheduler with a MongoDB job store so job state survives restarts; memory store if that fails."""
    mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
    db_name = os.environ.get('DB_NAME', 'firefly_estimator')
    jobstores = {}
    try:
        from pymongo import MongoClient
        jobstores['default'] = MongoDBJobStore(
            database=db_name,
            collection='scheduled_jobs',
            client=MongoClient(mongo_url)
        )
        logger.info(f"MongoDB job store configured: {db_name}.scheduled_jobs")
    except Exception as e:
        logger.warning(f"Failed to configure MongoDB job store, using memory store: {e}")
    return AsyncIOScheduler(jobstores=jobstores)


def log_stripe_mode():
    """Log test/live mode from the key prefix (never the key itself)."""
    from services.stripe_service import stripe_mode
    mode = stripe_mode()
    if mode == "unknown":
        logger.warning("STRIPE_SECRET_KEY / STRIPE_API_KEY is not set. Card and ACH payments will fail.")
    else:
        logger.info("STRIPE_MODE = %s (from Stripe key prefix)", mode)
    if not (os.environ.get("STRIPE_WEBHOOK_SECRET") or "").strip():
        logger.warning("STRIPE_WEBHOOK_SECRET is not set - webhook signatures will not be verified")


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    if os.environ.get("PYTEST_RUNNING"):
        yield
        return

    # Startup
    logger.info(f"Starting {SERVICE_NAME}")
    await database.connect()
    log_stripe_mode()

    scheduler = build_scheduler()
    # Close analytics sessions idle past the session timeout
    scheduler.add_job(
        run_close_stale_sessions,
        IntervalTrigger(minutes=STALE_SESSION_JOB_MINUTES),
        id="close_stale_sessions",
        name="Close stale analytics sessions",
        replace_existing=True
    )
    scheduler.start()
    logger.info("Background job scheduler started")

    yield

    # Shutdown
    logger.info(f"Shutting down {SERVICE_NAME}")
    scheduler.shutdown(wait=False)
    logger.info("Background job scheduler stopped")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title=SERVICE_NAME,
    description="Tiny home configurator, checkout and back-office",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(builds.router)
app.include_router(builds.admin_router)
app.include_router(models_catalog.router)
app.include_router(settings.router)
app.include_router(delivery.router)
app.include_router(profile.router)
app.include_router(orders.router)
app.include_router(admin_orders.router)
app.include_router(payments.router)
app.include_router(webhooks.router)
app.include_router(analytics_session.router)  # Public analytics ingestion
app.include_router(analytics.router)  # Admin analytics dashboard
app.include_router(admin.router)
app.include_router(admin_customers.router)  # Customer intelligence
app.include_router(admin_insights.router)  # Forecasts and CLV
app.include_router(admin_export.router)  # Data export

# Root endpoint
@app.get("/api")
@app.get("/api/")
async def root():
    return {
        "service": SERVICE_NAME,
        "version": "1.0.0",
        "status": "operational"
    }

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }

# Validation error handler: log request_id + errors so client reports can be matched to logs
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = exc.errors()
    logger.warning(
        "Validation failed request_id=%s path=%s errors=%s",
        request_id,
        request.url.path,
        [(e.get("loc"), e.get("msg"), e.get("type")) for e in errors],
    )
    return JSONResponse(
        status_code=422,
        content=jsonable_encoder({"detail": errors, "request_id": request_id}),
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
