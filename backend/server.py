from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from database import database
from routes import jobs, webhooks, notifications

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
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

mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
db_name = os.environ.get('DB_NAME', 'notificacondo')

# Persist scheduled jobs in MongoDB so they survive restarts; fall back to memory
try:
    from pymongo import MongoClient
    jobstores = {
        'default': MongoDBJobStore(
            database=db_name,
            collection='scheduled_jobs',
            client=MongoClient(mongo_url)
        )
    }
    logger.info(f"MongoDB job store configured: {db_name}.scheduled_jobs")
except Exception as e:
    logger.warning(f"Failed to configure MongoDB job store, using memory store: {e}")
    jobstores = {}

scheduler = AsyncIOScheduler(jobstores=jobstores)

from job_runner import (
    run_generate_invoices,
    run_notify_trial_ending,
    run_sync_notification_status,
)


def _scheduler_enabled() -> bool:
    if os.environ.get("PYTEST_RUNNING"):
        return False
    return os.environ.get("SCHEDULER_ENABLED", "true").strip().lower() in ("1", "true", "yes")


def configure_scheduler():
    billing_hour = int(os.environ.get("BILLING_CRON_HOUR", "6"))

    # Billing cycle: trial ends, renewals, invoices and owner notices
    scheduler.add_job(
        run_generate_invoices,
        CronTrigger(hour=billing_hour, minute=0),
        id="generate_invoices",
        name="Generate Invoices",
        replace_existing=True
    )

    # Trial ending reminders two days ahead
    scheduler.add_job(
        run_notify_trial_ending,
        CronTrigger(hour=12, minute=0),
        id="notify_trial_ending",
        name="Trial Ending Reminders",
        replace_existing=True
    )

    # Delivery status reconciliation
    scheduler.add_job(
        run_sync_notification_status,
        IntervalTrigger(minutes=15),
        id="sync_notification_status",
        name="Sync Notification Status",
        replace_existing=True
    )


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting NotificaCondo Billing API")
    await database.connect()

    scheduler_started = False
    if _scheduler_enabled():
        configure_scheduler()
        scheduler.start()
        scheduler_started = True
        logger.info("Background job scheduler started")
    else:
        logger.info("Background job scheduler disabled")

    yield

    # Shutdown
    logger.info("Shutting down NotificaCondo Billing API")
    if scheduler_started:
        scheduler.shutdown(wait=False)
        logger.info("Background job scheduler stopped")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="NotificaCondo Billing API",
    description="Recurring billing and WhatsApp notification dispatch",
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
app.include_router(jobs.router)
app.include_router(webhooks.router)
app.include_router(notifications.router)


# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }


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
