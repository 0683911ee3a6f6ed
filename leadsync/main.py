"""
LeadSync — CRM sync and prioritization service

Mounts the sync router, maps LeadSyncError codes onto HTTP status codes and
owns the shared HTTP client's lifetime.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger

from .config import settings
from .database import engine
from .errors import LeadSyncError
from .http_client import close_clients
from .logging_config import setup_logging
from .models import Base
from .routers import sync
from .routers.sync import ERROR_STATUS

setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.profile != "test":
        Base.metadata.create_all(bind=engine)
        logger.info("Tables ready ({})", settings.profile)
    yield
    await close_clients()


app = FastAPI(title="LeadSync", version="0.1.0", lifespan=lifespan)


@app.exception_handler(LeadSyncError)
async def leadsync_error_handler(request: Request, exc: LeadSyncError):
    status = ERROR_STATUS.get(exc.code, 500)
    if status >= 500:
        logger.error("{} {} failed: {} ({})", request.method, request.url.path, exc.message, exc.code)
    else:
        logger.info("{} {} rejected: {} ({})", request.method, request.url.path, exc.message, exc.code)
    headers = None
    retry_after = getattr(exc, "retry_after", None)
    if retry_after:
        headers = {"Retry-After": str(int(retry_after))}
    return JSONResponse(exc.to_dict(), status_code=status, headers=headers)


app.include_router(sync.router)


@app.get("/health")
async def health():
    return {"status": "ok"}
