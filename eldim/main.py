"""eldim Main FastAPI App

Builds the HTTP surface around an already validated configuration:
- GET  /                      liveness / info
- POST /api/v1/file/upload/   the upload pipeline (eldim.ingest.router)
- GET  /metrics               Prometheus, only if enabled, behind Basic Auth

Serving (TLS, port) happens in eldim.cli.
"""

import logging
import sys
from typing import List, Optional

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, Response

from eldim.backends.registry import BackendRegistry
from eldim.config.clients import ClientConfig, ClientRegistry
from eldim.config.settings import Config
from eldim.errors import AuthenticationError, EldimError, PartialFailureError
from eldim.governance.auth import require_metrics_auth
from eldim.ingest.coordinator import UploadCoordinator
from eldim.ingest.router import router as upload_router
from eldim.utils.metrics import (
    get_metrics_text,
    http_requests_served_total,
    record_configuration,
    record_outcome,
)
from eldim.version import __version__

logger = structlog.get_logger()

UNMATCHED_ROUTE = "unmatched"


def configure_logging(json_logs: bool = False):
    """Structured logs: JSON for log shippers, key=value for humans"""
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=logging.INFO)
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.add_log_level,
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def build_coordinator(config: Config, roster: List[ClientConfig], connect: bool = True) -> UploadCoordinator:
    """Everything the upload pipeline needs, built once from the config

    `roster` is what config.validate_config() returned.
    """
    clients = ClientRegistry(roster)
    recipients = config.recipients()
    backends = BackendRegistry.from_config(config)
    if connect:
        backends.validate()

    record_configuration(
        clients=len(clients),
        backends_by_protocol=backends.by_protocol(),
        age_ids=len(recipients.age_ids),
        ssh_keys=len(recipients.ssh_keys),
    )
    logger.info(
        "Upload pipeline ready",
        clients=len(clients),
        backends=backends.names(),
        recipients=len(recipients),
    )
    return UploadCoordinator.from_config(config, clients, recipients, backends)


def _error_body(exc: EldimError) -> dict:
    if isinstance(exc, AuthenticationError):
        status = "rejected"
    elif isinstance(exc, PartialFailureError):
        status = "partial_failure"
    else:
        status = "failed"
    body = {"status": status, "error": exc.code, "message": exc.message}
    if isinstance(exc, PartialFailureError):
        body["failed_backends"] = exc.failed_backends
        body["compensated_backends"] = exc.compensated_backends
    return body


def _route_label(request: Request) -> str:
    """Route template for metrics labels; raw paths would add a series per scanned URL"""
    route = request.scope.get("route")
    return getattr(route, "path", None) or UNMATCHED_ROUTE


def create_app(config: Config, coordinator: UploadCoordinator) -> FastAPI:
    app = FastAPI(
        title="eldim",
        description="Encrypted off-site backup relay",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.config = config
    app.state.coordinator = coordinator

    app.include_router(upload_router)

    @app.on_event("shutdown")
    async def shutdown_event():
        coordinator.close()
        logger.info("eldim shut down")

    @app.middleware("http")
    async def count_and_tag(request: Request, call_next):
        response = await call_next(request)
        http_requests_served_total.labels(
            method=request.method,
            path=_route_label(request),
            status=str(response.status_code),
        ).inc()
        if config.servertokens:
            response.headers["Server"] = f"eldim {__version__}"
        return response

    @app.exception_handler(EldimError)
    async def eldim_error_handler(request: Request, exc: EldimError):
        record_outcome(exc.code)
        headers: Optional[dict] = None
        if isinstance(exc, AuthenticationError):
            headers = {"WWW-Authenticate": "Bearer"}
        logger.warning("Request failed", path=request.url.path, error=exc.code, status=exc.status_code)
        return JSONResponse(status_code=exc.status_code, content=_error_body(exc), headers=headers)

    @app.get("/")
    async def root():
        """Liveness / info"""
        info = {"message": "eldim - encrypted off-site backup relay", "status": "ok"}
        if config.servertokens:
            info["version"] = __version__
        return info

    if config.prometheusenabled:

        @app.get("/metrics", dependencies=[Depends(require_metrics_auth)])
        async def metrics():
            """Prometheus metrics endpoint"""
            return Response(content=get_metrics_text(), media_type="text/plain; version=0.0.4")

    return app
