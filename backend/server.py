from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from database import Database
from routes import auth, otp, plans, users
from services.email_service import EmailService
from services.errors import TourPlannerError
from utils.api_response import error_body

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

PLAN_EXPIRY_SWEEP_MINUTES = int(os.getenv("PLAN_EXPIRY_SWEEP_MINUTES", "15"))

from job_runner import run_plan_expiry_sweep


def _scheduler_enabled() -> bool:
    return not os.getenv("PYTEST_RUNNING")


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Vineyard Tour Planner API")
    database = Database()
    await database.connect()
    app.state.database = database
    app.state.notifier = EmailService()

    scheduler = None
    if _scheduler_enabled():
        scheduler = AsyncIOScheduler()
        # Lazy expiry on read stays authoritative; the sweep only tidies stored status
        scheduler.add_job(
            run_plan_expiry_sweep,
            IntervalTrigger(minutes=PLAN_EXPIRY_SWEEP_MINUTES),
            id="plan_expiry_sweep",
            name="Plan Expiry Sweep",
            replace_existing=True
        )
        scheduler.start()
        logger.info("Background job scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down Vineyard Tour Planner API")
    if scheduler:
        scheduler.shutdown(wait=False)
        logger.info("Background job scheduler stopped")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Vineyard Tour Planner API",
    description="Tour plans, itinerary ordering and subscription access",
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
app.include_router(auth.router)
app.include_router(otp.router)
app.include_router(users.router)
app.include_router(plans.router)

# Root endpoint
@app.get("/api")
async def root():
    return {
        "service": "Vineyard Tour Planner",
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


@app.exception_handler(TourPlannerError)
async def tour_planner_exception_handler(request: Request, exc: TourPlannerError):
    if exc.http_status >= 500:
        logger.error(f"{exc.error_code} on {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.error_code} on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.http_status,
        content=error_body(exc.error_code, exc.message, exc.details),
    )


# Validation error handler: request_id + field errors (loc path)
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")}
        for e in exc.errors()
    ]
    logger.warning(f"Request validation failed request_id={request_id} path={request.url.path}")
    body = error_body("VALIDATION_ERROR", "Validation failed", {"errors": errors})
    body["request_id"] = request_id
    return JSONResponse(status_code=422, content=body)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content=error_body("INTERNAL_SERVER_ERROR", "Internal server error"),
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
