"""
Levelscope: FastAPI Application Entry Point

Serves multi-timeframe level analysis over HTTP.
Run with: uvicorn levelscope.main:app
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from levelscope.config import get_settings
from levelscope.error_handlers import register_error_handlers
from levelscope.middleware import RequestLoggerMiddleware
from levelscope.routes import analysis_router, health_router

log = structlog.get_logger("levelscope.startup")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle hooks."""
    settings = get_settings()
    log.info(
        "startup",
        env=settings.app_env,
        timeframes=settings.default_timeframe_list,
        cache_ttl_seconds=settings.cache_ttl_seconds,
        provider=settings.binance_base_url,
    )
    yield
    log.info("shutdown")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    app = FastAPI(
        title="Levelscope",
        description="Multi-timeframe support/resistance, confluence and chart pattern analysis.",
        version="0.1.0",
        debug=settings.app_debug,
        lifespan=lifespan,
        openapi_tags=[
            {"name": "Health", "description": "Service health and cache counters"},
            {"name": "Analysis", "description": "Level, zone and pattern detection"},
        ],
    )

    register_error_handlers(app)
    app.add_middleware(RequestLoggerMiddleware)

    app.include_router(health_router, tags=["Health"])
    app.include_router(analysis_router, prefix="/v1", tags=["Analysis"])
    return app


app = create_app()
