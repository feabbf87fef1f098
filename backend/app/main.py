"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 8000

Or from the project root:
    python -m backend.app.main
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.app.core.config import settings
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.core.health import HealthStatus, run_health_check
from backend.app.core.cache import close_redis
from backend.app.delivery.engine import DeliveryEngine

# ── API routers ──
from backend.app.api.v1.otp import router as otp_router
from backend.app.api.v1.delivery_metrics import router as metrics_router
from backend.app.api.v1.delivery_history import router as history_router
from backend.app.api.v1.alerts import router as alert_router
from backend.app.api.v1.diagnostics import router as diagnostics_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


# ── Application lifespan (startup / shutdown) ──

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the delivery engine and background monitoring; stop them on exit."""
    logger.info(
        "Starting %s v%s [%s]",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
    )
    engine: DeliveryEngine = app.state.engine
    await engine.start()
    yield
    logger.info("Shutting down %s", settings.APP_NAME)
    await engine.stop()
    await close_redis()


# ── Create application ──

def create_app(engine: Optional[DeliveryEngine] = None) -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Multi-channel one-time-passcode delivery. "
            "Routes each code over SMS or email through a prioritised set of "
            "providers with automatic failover, tracks rolling provider health, "
            "records every attempt in a delivery ledger, and raises, escalates "
            "and resolves operator alerts."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.engine = engine or DeliveryEngine.from_settings(settings)

    # ── Middleware stack (outermost first) ──
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # ── Error handlers ──
    register_error_handlers(app)

    # ── Register routers ──
    app.include_router(otp_router)
    app.include_router(metrics_router)
    app.include_router(history_router)
    app.include_router(alert_router)
    app.include_router(diagnostics_router)

    # ── Root & health endpoints ──

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "modules": [
                "otp-delivery",
                "provider-health",
                "delivery-ledger",
                "alerting",
                "diagnostics",
            ],
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check():
        """Cache, database and per-channel provider status."""
        report = await run_health_check(app.state.engine)
        return report.to_dict()

    @app.get("/health/live", tags=["health"])
    async def liveness():
        """Process is up; touches no dependencies."""
        return {"status": "alive"}

    @app.get("/health/ready", tags=["health"])
    async def readiness():
        """503 while any channel has no usable provider."""
        report = await run_health_check(app.state.engine)
        if report.status == HealthStatus.UNHEALTHY:
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "backend.app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.RELOAD and settings.is_development,
        workers=1 if settings.RELOAD else settings.WORKERS,
    )
