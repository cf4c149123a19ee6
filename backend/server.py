from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import admin, billing, offers, webhooks
from services.settings_service import settings_service
from utils.errors import ServiceError

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

scheduler = AsyncIOScheduler()

from job_runner import run_guard_sweep

# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Marketplace Entitlements API")
    await database.connect()

    # Stripe config: log mode (test/live) from key prefix and which price IDs are configured (no secret keys)
    stripe_key = (os.environ.get("STRIPE_SECRET_KEY") or os.environ.get("STRIPE_API_KEY") or "").strip()
    if not stripe_key:
        logger.error("STRIPE_SECRET_KEY / STRIPE_API_KEY is not set. Checkout and billing will fail.")
    else:
        logger.info("STRIPE_MODE = %s (from Stripe key prefix)", "test" if stripe_key.startswith("sk_test_") else "live")
    if not os.environ.get("STRIPE_WEBHOOK_SECRET"):
        logger.error("STRIPE_WEBHOOK_SECRET is not set. Webhooks will be rejected.")
    from services.plan_registry import plan_registry
    for plan in plan_registry.get_all_plans().values():
        logger.info(
            "Stripe price IDs plan=%s monthly=%s yearly=%s",
            plan.type.value, plan.monthly_price_id or "(missing)", plan.yearly_price_id or "(missing)",
        )

    if os.environ.get("PYTEST_RUNNING") != "1":
        # Guard sweep - every 5 minutes
        scheduler.add_job(
            run_guard_sweep,
            IntervalTrigger(minutes=5),
            id="admin_guard_sweep",
            name="Admin Guard Sweep",
            replace_existing=True
        )
        scheduler.start()
        logger.info("Background job scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down Marketplace Entitlements API")
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Background job scheduler stopped")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Marketplace Entitlements API",
    description="Subscription entitlements, offer quotas and guarded admin actions",
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
app.include_router(webhooks.router)
app.include_router(billing.router)
app.include_router(offers.router)
app.include_router(admin.router)

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }


# Version/build stamp for deployment verification (commit SHA set by CI/CD, e.g. GIT_COMMIT_SHA)
@app.get("/api/version")
async def version_info():
    return {
        "commit_sha": os.getenv("GIT_COMMIT_SHA", os.getenv("BUILD_SHA", "unknown")),
        "environment": os.getenv("ENVIRONMENT", "development"),
    }


@app.get("/api/maintenance-banner")
async def maintenance_banner():
    return await settings_service.get_maintenance_banner()


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.error(
            "Request failed path=%s error=%s detail=%s",
            request.url.path, exc.code, exc.message, exc_info=exc.__cause__ or exc,
        )
    return JSONResponse(status_code=exc.status_code, content=exc.to_body(), headers=exc.headers or None)


# Validation error handler: malformed bodies and query params are 400s
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
    message = "; ".join(
        f"{'.'.join(str(part) for part in e.get('loc', ())[1:]) or 'body'}: {e.get('msg')}" for e in errors
    )
    return JSONResponse(
        status_code=400,
        content={"error": "validation_error", "message": message, "request_id": request_id},
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
