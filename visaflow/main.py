"""FastAPI application entry point."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError
from starlette.exceptions import HTTPException as StarletteHTTPException

from visaflow.config import settings
from visaflow.database import engine
from visaflow.middleware import BodySizeLimitMiddleware, SecurityHeadersMiddleware
from visaflow.redis import redis_pool
from visaflow.routers import cases, escrow, fees, notifications, proposals, reviews, users, visa_requests

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: release pooled connections on shutdown."""
    logger.info("VisaFlow API starting (env=%s, payments=%s)", settings.env, settings.payment_backend)
    yield
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(
    title="VisaFlow Marketplace",
    description="Visa marketplace backend: escrow-backed cases between clients and immigration agents",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Outermost first
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(BodySizeLimitMiddleware, max_bytes=settings.max_body_bytes)


def _error(status_code: int, message: str, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": message},
        headers=headers,
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _error(exc.status_code, str(exc.detail), getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    messages = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        msg = err.get("msg", "Invalid value")
        messages.append(f"{location}: {msg}" if location else msg)
    return _error(400, "; ".join(messages) or "Validation failed")


@app.exception_handler(StaleDataError)
async def stale_data_handler(request: Request, exc: StaleDataError) -> JSONResponse:
    logger.warning("Concurrent update rejected on %s %s", request.method, request.url.path)
    return _error(409, "The resource was modified concurrently, please retry")


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    logger.warning("Integrity error on %s %s: %s", request.method, request.url.path, exc.orig)
    return _error(409, "Resource already exists or conflicts with existing data")


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error(500, "Internal server error")


app.include_router(users.router)
app.include_router(visa_requests.router)
app.include_router(proposals.router)
app.include_router(escrow.router)
app.include_router(cases.router)
app.include_router(reviews.router)
app.include_router(notifications.router)
app.include_router(fees.router)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}
