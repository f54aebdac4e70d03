from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette import status

from referral_routing.api.routers import outbox as outbox_router
from referral_routing.api.routers import tickets as tickets_router
from referral_routing.core.config import get_settings
from referral_routing.core.db import dispose_engine, get_engine, get_session
from referral_routing.core.errors import RoutingError
from referral_routing.services.outbox import outbox_worker

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logging.getLogger("referral_routing").setLevel(settings.log_level.upper())
    await get_engine()
    if settings.outbox_worker_enabled:
        outbox_worker.start()
    yield
    if settings.outbox_worker_enabled:
        await outbox_worker.stop()
    await dispose_engine()


settings = get_settings()
app = FastAPI(title=settings.app_name, lifespan=lifespan)
app.include_router(tickets_router.router)
app.include_router(outbox_router.router)


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(RoutingError)
async def routing_error_handler(request: Request, exc: RoutingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Request %s failed: %s", _request_id(request), exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = exc.errors()
    fields = sorted(
        {".".join(str(part) for part in error.get("loc", ())[1:]) for error in errors}
        - {""}
    )
    message = "Invalid request body"
    if fields:
        message = f"Invalid request body: {', '.join(fields)}"
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": message})


@app.exception_handler(SQLAlchemyError)
async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception("Database failure on request %s", _request_id(request))
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "detail": "Service Unavailable: Database connection or operational failure",
            "request_id": _request_id(request),
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on request %s", _request_id(request))
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal Server Error", "request_id": _request_id(request)},
    )


@app.get("/health", tags=["System"])
async def healthcheck(session: AsyncSession = Depends(get_session)) -> dict[str, str]:
    try:
        await session.execute(text("SELECT 1"))
        database_status = "ok"
    except SQLAlchemyError:
        logger.warning("Health check could not reach the database")
        database_status = "error"
    return {"status": "ok", "database": database_status}
