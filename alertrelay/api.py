"""HTTP API for alertrelay.

Producers post alert batches to ``/api/v2/alerts``. The remaining
endpoints expose the engine's state, trigger a configuration reload and
serve Prometheus metrics.
"""

from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI
from fastapi import HTTPException
from fastapi import Query
from fastapi import Request
from fastapi import status
from fastapi.responses import JSONResponse
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST
from prometheus_client import Counter
from prometheus_client import Histogram
from prometheus_client import generate_latest
from pydantic import BaseModel
from pydantic import Field

from . import __version__
from .config import Settings
from .config import default_config
from .engine import AlertEngine
from .errors import ConfigValidationError
from .errors import IngestionError
from .models import IngestResult

logger = structlog.get_logger()

# Metrics
REQUEST_COUNT = Counter(
    "alertrelay_http_requests_total", "Total HTTP requests", ["method", "endpoint", "status"]
)
REQUEST_DURATION = Histogram("alertrelay_http_request_duration_seconds", "HTTP request duration")


class ErrorResponse(BaseModel):
    """Error response model."""
    success: bool = Field(False, description="Always false for errors")
    error: str = Field(..., description="Error message")
    code: int = Field(..., description="Error code")
    details: list[str] = Field(default_factory=list, description="Individual problems")


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Overall health status")
    version: str = Field(..., description="Service version")


def create_app(settings: Settings | None = None, engine: AlertEngine | None = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        settings: Service settings; read from the environment when omitted
        engine: Pre-built engine; built from the settings when omitted
    """
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage the engine's lifecycle."""
        current = engine or AlertEngine.from_settings(settings)
        try:
            await current.initialize()
            app.state.engine = current
            logger.info("alertrelay started", host=settings.host, port=settings.port)
            yield
        finally:
            await current.close()

    app = FastAPI(
        title="alertrelay",
        description="Alert routing, grouping, inhibition and notification engine",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Add metrics collection."""
        with REQUEST_DURATION.time():
            response = await call_next(request)
            REQUEST_COUNT.labels(
                method=request.method,
                endpoint=request.url.path,
                status=response.status_code,
            ).inc()
            return response

    @app.exception_handler(IngestionError)
    async def ingestion_error_handler(request: Request, exc: IngestionError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=ErrorResponse(error=str(exc), code=status.HTTP_400_BAD_REQUEST).model_dump(),
        )

    @app.exception_handler(ConfigValidationError)
    async def config_error_handler(request: Request, exc: ConfigValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=ErrorResponse(
                error="Invalid configuration",
                code=status.HTTP_400_BAD_REQUEST,
                details=exc.problems,
            ).model_dump(),
        )

    @app.post("/api/v2/alerts", response_model=IngestResult, tags=["alerts"])
    async def post_alerts(request: Request) -> IngestResult:
        """Accept a batch of alert events.

        The batch is validated as a whole; a single malformed record rejects
        it with HTTP 400 and nothing is applied.
        """
        body = await request.body()
        if not body:
            raise IngestionError("Empty request body")
        return await request.app.state.engine.ingest(body)

    @app.get("/api/v2/alerts", tags=["alerts"])
    async def get_alerts(
        request: Request,
        active: bool = Query(False, description="Only firing, non-inhibited alerts"),
        receiver: str | None = Query(None, description="Only alerts routed to this receiver"),
    ) -> list[dict[str, Any]]:
        """List current alerts."""
        return request.app.state.engine.get_alerts(active_only=active, receiver=receiver)

    @app.get("/api/v2/alerts/groups", tags=["alerts"])
    async def get_groups(request: Request) -> list[dict[str, Any]]:
        """List current alert groups."""
        return request.app.state.engine.get_groups()

    @app.get("/api/v2/status", tags=["system"])
    async def get_status(request: Request) -> dict[str, Any]:
        """Engine statistics."""
        return {"version": __version__, **request.app.state.engine.get_stats()}

    @app.post("/-/reload", tags=["system"])
    async def reload_config(request: Request) -> dict[str, Any]:
        """Reload the routing configuration."""
        engine_ = request.app.state.engine
        if settings.config_file:
            runtime = await engine_.reload_from_file(settings.config_file)
        else:
            runtime = await engine_.reload(default_config(settings))
        return {
            "success": True,
            "routes": sum(1 for _ in runtime.tree.walk()),
            "receivers": sorted(runtime.receivers),
            "inhibit_rules": len(runtime.inhibitor),
        }

    @app.get("/-/healthy", response_model=HealthResponse, tags=["health"])
    async def healthy() -> HealthResponse:
        """Liveness check."""
        return HealthResponse(status="healthy", version=__version__)

    @app.get("/-/ready", response_model=HealthResponse, tags=["health"])
    async def ready(request: Request) -> HealthResponse:
        """Readiness check."""
        engine_ = getattr(request.app.state, "engine", None)
        if engine_ is None or engine_.started_at is None:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Engine not started")
        return HealthResponse(status="ready", version=__version__)

    @app.get("/metrics", response_class=Response, tags=["monitoring"])
    async def metrics():
        """Return Prometheus metrics."""
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app
