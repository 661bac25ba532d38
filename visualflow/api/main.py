"""
VisualFlow API Application
==========================

Startup order (lifespan):
  1. Logging        (structured logger, rotating files when LOG_DIR is set)
  2. Storage        (SQLAlchemy when DATABASE_URL is set, otherwise in-memory)
  3. Orchestration  (lifecycle manager, default configuration installed)
  4. Health monitor (periodic registry probes when HEALTH_MONITOR_ENABLED)

Shutdown is the reverse: the monitor stops, in-flight executions are
cancelled and recorded as failed, then storage is closed.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from visualflow.core.config import settings
from visualflow.core.exceptions import VisualFlowException
from visualflow.core.storage import InMemoryPipelineStorage, PipelineStorage
from visualflow.core.types import HealthStatus
from visualflow.infra.health import (
    HealthMonitor,
    ServiceProbe,
    SystemHealth,
    aggregate_status,
    check_storage,
)
from visualflow.infra.telemetry import MetricsCollector, get_logger, get_metrics, setup_logging
from visualflow.orchestration.invokers import ServiceInvoker
from visualflow.orchestration.lifecycle import ExecutionLifecycleManager

from .exception_handlers import exception_handler, generic_exception_handler
from .routes import router as api_router

logger = get_logger(__name__)


async def _build_storage() -> PipelineStorage:
    if not settings.DATABASE_URL:
        return InMemoryPipelineStorage()
    from visualflow.db import Database, SQLAlchemyPipelineStorage

    storage = SQLAlchemyPipelineStorage(Database(settings.DATABASE_URL))
    await storage.init_schema()
    return storage


def create_app(
    storage: PipelineStorage | None = None,
    invoker: ServiceInvoker | None = None,
    *,
    health_probe: ServiceProbe | None = None,
    metrics: MetricsCollector | None = None,
) -> FastAPI:
    """Build the application. Arguments override the settings-driven defaults."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        # ==================== STARTUP ====================
        setup_logging(
            level=settings.LOG_LEVEL,
            json_output=settings.LOG_JSON,
            log_dir=settings.LOG_DIR,
            environment=settings.ENVIRONMENT,
        )
        logger.info("app_starting", version=settings.APP_VERSION, environment=settings.ENVIRONMENT)

        app_storage = storage or await _build_storage()
        lifecycle = ExecutionLifecycleManager(
            app_storage,
            invoker,
            concurrent_stages=settings.PIPELINE_CONCURRENT_STAGES,
            exclude_unhealthy=settings.ROUTER_EXCLUDE_UNHEALTHY,
            metrics=metrics,
        )
        if not await lifecycle.initialize_pipeline_system():
            logger.warning("pipeline_system_degraded")

        monitor = HealthMonitor(app_storage, health_probe)
        if settings.HEALTH_MONITOR_ENABLED:
            monitor.start()

        app.state.storage = app_storage
        app.state.lifecycle = lifecycle
        app.state.health_monitor = monitor
        logger.info("app_started")

        yield

        # ==================== SHUTDOWN ====================
        await monitor.stop()
        await lifecycle.shutdown()
        await app_storage.close()
        logger.info("app_stopped")

    app = FastAPI(
        title=settings.APP_NAME,
        description="Declarative multi-stage pipeline orchestration over a service registry",
        version=settings.APP_VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_methods=settings.ALLOWED_METHODS,
        allow_headers=["*"],
    )

    app.add_exception_handler(VisualFlowException, exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, generic_exception_handler)

    app.include_router(api_router, prefix=settings.API_PREFIX)

    @app.get("/", include_in_schema=False)
    async def root() -> dict[str, Any]:
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs",
            "health": "/health",
            "status": "operational",
        }

    @app.get("/health", include_in_schema=False)
    async def health(request: Request) -> dict[str, Any]:
        """Storage round trip plus the results of the last registry sweep."""
        checks = [await check_storage(request.app.state.storage)]
        sweep = request.app.state.health_monitor.last_sweep
        if sweep is not None:
            checks.extend(sweep.checks)
        probed = [c for c in checks if c.status != HealthStatus.UNKNOWN]
        report = SystemHealth(status=aggregate_status(probed), checks=checks).to_dict()
        report["activeExecutions"] = request.app.state.lifecycle.active_executions
        return report

    @app.get("/metrics", include_in_schema=False)
    async def prometheus_metrics() -> Response:
        collector = metrics or get_metrics()
        return Response(content=collector.render(), media_type=collector.CONTENT_TYPE)

    return app


app = create_app()


def run() -> None:
    """Console entry point: serve ``app`` with uvicorn."""
    import uvicorn

    uvicorn.run(
        "visualflow.api.main:app",
        host="0.0.0.0",
        port=8000,
        log_level=settings.LOG_LEVEL.lower(),
    )
