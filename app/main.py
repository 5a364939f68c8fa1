import json
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Sequence

import structlog
from fastapi import FastAPI, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.ingestion.api.v1.ingest import router as ingest_router
from app.modules.reporting.api.v1.analytics import router as analytics_router
from app.shared.core.config import get_settings
from app.shared.core.exceptions import CostLensException
from app.shared.core.logging import setup_logging
from app.shared.db.session import engine, get_db


# Configure logging
setup_logging()

# Get logger
logger = structlog.get_logger()


# This runs BEFORE the app starts (setup) and AFTER it stops (teardown).
@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("app_starting", app=settings.APP_NAME, version=settings.VERSION, env=settings.ENVIRONMENT)

    yield

    logger.info("app_shutting_down", app=settings.APP_NAME)
    await engine.dispose()


settings = get_settings()

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan)

# Initialize Prometheus Metrics
Instrumentator().instrument(app).expose(app)

# CORS Middleware - Allow the dashboard to call the API
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


@app.exception_handler(CostLensException)
async def costlens_exception_handler(request: Request, exc: CostLensException):
    logger.warning(
        "request_rejected",
        path=request.url.path,
        code=exc.code,
        status_code=exc.status_code,
        error=exc.message,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "message": exc.message, "details": exc.details},
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Render pydantic validation errors in the same envelope as CostLensException."""

    def _json_safe(value: Any) -> Any:
        try:
            json.dumps(value)
            return value
        except (TypeError, ValueError):
            return str(value)

    def _sanitize_errors(errors: Sequence[Any]) -> List[Dict[str, Any]]:
        sanitized = []
        for err in errors:
            clean = {k: v for k, v in dict(err).items() if k != "url"}
            if isinstance(clean.get("ctx"), dict):
                clean["ctx"] = {k: _json_safe(v) for k, v in clean["ctx"].items()}
            if "input" in clean:
                clean["input"] = _json_safe(clean["input"])
            sanitized.append(clean)
        return sanitized

    errors = _sanitize_errors(exc.errors())
    # Query-only failures are scope errors of an analytics request
    in_query = all(err.get("loc", ("",))[0] == "query" for err in errors)
    code = "invalid_scope" if in_query else "invalid_request"
    logger.warning("request_rejected", path=request.url.path, code=code, status_code=422)
    return JSONResponse(
        status_code=422,
        content={
            "error": code,
            "message": "The request body or parameters are invalid.",
            "details": {"errors": errors},
        },
    )


# Include routers
app.include_router(ingest_router, prefix="/api/v1/ingest")
app.include_router(analytics_router, prefix="/api/v1/analytics")


# Health Check: liveness plus a database round trip
@app.get("/health")
async def health_check(db: AsyncSession = Depends(get_db)):
    database = "ok"
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error("health_check_database_failed", error=str(e))
        database = "unavailable"

    payload = {
        "status": "active" if database == "ok" else "degraded",
        "app": settings.APP_NAME,
        "version": settings.VERSION,
        "database": database,
    }
    return JSONResponse(status_code=200 if database == "ok" else 503, content=payload)
