"""Global error hierarchy and FastAPI exception handlers.

All sidecar-specific errors extend EgressError. Controller, router and
monitor code raises these; the orchestrator converts them into structured
operation results. Anything that still escapes to the HTTP layer (plus
Pydantic's RequestValidationError and unhandled exceptions) is rendered as
the same JSON envelope: { success, message, degraded, in_progress, data }.
"""

from __future__ import annotations

import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Error hierarchy
# ---------------------------------------------------------------------------


class EgressError(Exception):
    """Base error for all egress-sidecar errors."""

    status_code: int = 500
    message: str = "Internal server error"

    def __init__(self, message: str | None = None, **kwargs: object) -> None:
        self.message = message or self.__class__.message
        self.details = kwargs
        super().__init__(self.message)


class InstallationError(EgressError):
    """Tunnel client could not be installed (unsupported OS, installer failure)."""

    status_code = 502
    message = "Tunnel client installation failed"


class ConfigurationError(EgressError):
    """Tunnel client or tunnel service rejected the requested settings."""

    status_code = 422
    message = "Tunnel client rejected the configuration"


class ClientConnectionError(EgressError):
    """Registration or connection of the tunnel client failed."""

    status_code = 502
    message = "Tunnel client failed to connect"


class ProxyModeError(EgressError):
    """Local proxy mode could not be enabled on the requested port."""

    status_code = 409
    message = "Tunnel client proxy mode could not be enabled"


class RoutingError(EgressError):
    """A firewall rule could not be programmed or the routing gate refused."""

    status_code = 500
    message = "Traffic routing failed"


class ProbeTimeoutError(EgressError):
    """An external command or network probe exceeded its time budget."""

    status_code = 504
    message = "Probe timed out"


class AlreadyRunningError(EgressError):
    """The health monitor loop is already running."""

    status_code = 409
    message = "Health monitor is already running"


class OperationInProgressError(EgressError):
    """Another mutating operation holds the node lock."""

    status_code = 409
    message = "Another egress operation is in progress on this node"


class FeatureDisabledError(EgressError):
    """The host process disabled the egress proxy feature."""

    status_code = 403
    message = "Egress proxy is disabled on this node"


# ---------------------------------------------------------------------------
# FastAPI exception handlers
# ---------------------------------------------------------------------------


def _envelope(
    status_code: int,
    message: str,
    data: dict | None = None,
) -> JSONResponse:
    """Build a JSON envelope error response."""
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "message": message,
            "degraded": False,
            "in_progress": status_code == OperationInProgressError.status_code,
            "data": data,
        },
    )


async def _egress_error_handler(_request: Request, exc: EgressError) -> JSONResponse:
    """Handle EgressError subclasses."""
    data = {k: str(v) for k, v in exc.details.items()} if exc.details else None
    return _envelope(exc.status_code, exc.message, data=data)


async def _validation_error_handler(
    _request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle FastAPI / Pydantic RequestValidationError (422)."""
    field_errors = [
        {
            "field": " -> ".join(str(loc) for loc in err["loc"]),
            "message": err["msg"],
            "type": err["type"],
        }
        for err in exc.errors()
    ]
    return _envelope(
        status_code=422,
        message="Validation error",
        data={"fields": field_errors},
    )


async def _unhandled_error_handler(_request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unhandled exceptions: log traceback, return generic 500."""
    logger.error(
        "Unhandled exception: %s\n%s",
        exc,
        traceback.format_exc(),
    )
    return _envelope(status_code=500, message="Internal server error")


# ---------------------------------------------------------------------------
# Registration helper
# ---------------------------------------------------------------------------


def register_error_handlers(app: FastAPI) -> None:
    """Wire up all exception handlers on the FastAPI application."""
    app.add_exception_handler(EgressError, _egress_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _validation_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _unhandled_error_handler)  # type: ignore[arg-type]
