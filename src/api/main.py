from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from src import config
from src.account_guard.errors import (
    AccountConflictError,
    ReconciliationFetchError,
    ResolutionError,
    StorageError,
)
from src.account_guard.models.database import init_database
from src.api.dependencies import close_identity_provider, start_scheduler, stop_scheduler
from src.api.limiter import is_testing, limiter
from src.api.logging_config import LOG_FILE
from src.api.routers import admin, security


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize services on startup"""
    logger.info("=" * 60)
    logger.info(f"Starting {config.APP_NAME} API...")
    logger.info(f"Log file: {LOG_FILE}")
    logger.info("=" * 60)

    try:
        init_database()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        logger.exception("Database initialization traceback:")

    if not is_testing():
        start_scheduler()

    logger.info("Server ready to accept requests")

    yield

    logger.info(f"Shutting down {config.APP_NAME} API...")
    stop_scheduler()
    close_identity_provider()


app = FastAPI(
    title=f"{config.APP_NAME} API",
    description="Account lockout, failure ingestion and identity provider reconciliation",
    version=config.APP_VERSION,
    lifespan=lifespan,
)

# Add rate limiter to app state (exemptions handled per-route)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    logger.error(f"Storage failure on {request.url.path}: {exc}")
    return JSONResponse(status_code=503, content={"detail": "Storage unavailable"})


@app.exception_handler(AccountConflictError)
async def account_conflict_handler(request: Request, exc: AccountConflictError):
    logger.warning(f"Account conflict on {request.url.path}: {exc}")
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(ResolutionError)
async def resolution_error_handler(request: Request, exc: ResolutionError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ReconciliationFetchError)
async def reconciliation_fetch_error_handler(request: Request, exc: ReconciliationFetchError):
    logger.error(f"Reconciliation aborted: {exc}")
    return JSONResponse(status_code=502, content={"detail": f"Identity provider log unavailable: {exc}"})


@app.get("/api/health")
async def root():
    """Health check endpoint"""
    return {"status": "online", "app": config.APP_NAME, "version": config.APP_VERSION}


app.include_router(security.router)
app.include_router(admin.router)

# Configure CORS
# Split comma-separated string into list
origins = [origin.strip() for origin in config.ALLOWED_ORIGINS.split(",") if origin.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

if __name__ == "__main__":
    uvicorn.run("src.api.main:app", host=config.BACKEND_HOST, port=config.BACKEND_PORT)
