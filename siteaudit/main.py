"""
Site Audit Engine - HTTP entry point.
Exposes the analysis pipeline; no crawling logic lives here.
"""

import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from siteaudit.api.v1.routes import analyses, health
from siteaudit.core.config import get_settings
from siteaudit.core.exceptions import InvalidURLError
from siteaudit.core.logging import configure_logging
from siteaudit.core.rule_engine import get_rule_registry

logger = structlog.get_logger(__name__)
settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    configure_logging()
    logger.info("Starting Site Audit Engine", version=settings.APP_VERSION, env=settings.ENV)

    registry = get_rule_registry()
    if not registry.get_all():
        logger.error("No issue rules loaded; every analysis will score 100")
    logger.info(
        "Rule catalogue loaded",
        rules=len(registry.get_all()),
        max_pages_limit=settings.CRAWLER_MAX_PAGES_LIMIT,
        user_agent=settings.CRAWLER_USER_AGENT,
    )
    if not settings.CRAWLER_VERIFY_TLS:
        logger.warning("TLS verification disabled for outbound requests")

    yield

    logger.info("Application shutdown complete")


def create_application() -> FastAPI:
    app = FastAPI(
        title="Site Audit Engine API",
        description="Bounded technical-SEO crawl and analysis.",
        version=settings.APP_VERSION,
        docs_url="/docs" if settings.ENV != "production" else None,
        redoc_url="/redoc" if settings.ENV != "production" else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    # Reports with many link records compress well
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    @app.middleware("http")
    async def bind_request_id(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        structlog.contextvars.bind_contextvars(request_id=request_id)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")
        response.headers["x-request-id"] = request_id
        return response

    app.include_router(health.router, prefix="/health", tags=["Health"])
    app.include_router(analyses.router, prefix="/api/v1/analyses", tags=["Analyses"])

    @app.exception_handler(InvalidURLError)
    async def invalid_url_handler(request: Request, exc: InvalidURLError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": str(exc)})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled exception", path=request.url.path, error=str(exc), exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error", "request_id": request.headers.get("x-request-id")},
        )

    return app


app = create_application()
