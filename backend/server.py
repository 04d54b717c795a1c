"""
AppForge billing API

Token metering and payment reconciliation for the AI builder:
- /api/ai          metered generation
- /api/tokens      balance, debits, usage history, top-ups
- /api/subscriptions  plans, checkout, customer portal
- /api/webhooks    Stripe and Cryptomus callbacks
"""
from datetime import datetime, timezone
import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, APIRouter, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

from ai_billing import __version__  # noqa: E402
from ai_billing.db_init import ensure_indexes  # noqa: E402
from ai_billing.errors import BillingError  # noqa: E402
from database import get_database, check_db_connection, close_client  # noqa: E402
from routes.ai import ai_router  # noqa: E402
from routes.subscription import subscription_router  # noqa: E402
from routes.tokens import tokens_router  # noqa: E402
from routes.webhooks import webhooks_router  # noqa: E402

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Create the main app
app = FastAPI(title="AppForge - AI Billing API", version=__version__)

api_router = APIRouter(prefix="/api")


# ==================== ERROR HANDLERS ====================

@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()) if p != 'body')}: {err.get('msg')}"
        for err in errors
    ) or "Invalid request"
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "code": "VALIDATION_ERROR", "message": message}
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "code": "INTERNAL_ERROR", "message": "Internal server error"}
    )


# ==================== HEALTH ====================

@api_router.get("/")
async def root():
    return {"message": "AppForge AI Billing API", "version": __version__}


@api_router.get("/health")
async def health(db=Depends(get_database)):
    try:
        await db.command("ping")
        database = "connected"
    except Exception as e:
        logger.error(f"Health check database ping failed: {e}")
        database = "unavailable"

    return JSONResponse(
        status_code=200 if database == "connected" else 503,
        content={
            "status": "healthy" if database == "connected" else "degraded",
            "database": database,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
    )


# Include routers
api_router.include_router(ai_router)
api_router.include_router(tokens_router)
api_router.include_router(subscription_router)
api_router.include_router(webhooks_router)

app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=[origin.strip() for origin in os.environ.get(
        'CORS_ORIGINS', 'http://localhost:3000').split(',')],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup():
    # Fail fast if the database is unavailable
    db_ok, db_error = await check_db_connection()
    if not db_ok:
        logger.critical(f"Database connection failed on startup: {db_error}")
        raise RuntimeError(f"Cannot start application - database connection failed: {db_error}")

    for line in await ensure_indexes(get_database()):
        logger.info(line)


@app.on_event("shutdown")
async def shutdown_db_client():
    close_client()
