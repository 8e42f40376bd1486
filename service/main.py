"""
HTTP entry point for WB Fleet Admin (functions-framework, Flask request).

Endpoints:
- GET  /api/servers: List instances from inventory
- POST /api/servers/<id>/restart: Restart an instance
- POST /api/servers/<id>/update: Update an instance's version, then restart
- GET  /api/servers/<id>/status: Lifecycle status and health snapshot
- GET  /api/servers/<id>/logs: Container log
- GET  /api/versions: Installable server versions
- GET  /api/operation: Operation currently in flight
- GET  /health: Health check endpoint

Run locally with:
    functions-framework --source service/main.py --target main --port 3001

Orchestration state is held in memory, so serve from a single process.
All configuration is done via environment variables.
"""

import hmac
import logging
import os
import re
import sys
import threading
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Callable, Dict, Optional, Tuple

import functions_framework
from flask import Request

# Add src to path for local imports
sys.path.insert(
    0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "src")
)

from config import AdminConfig
from errors import (
    BusyError,
    InventoryError,
    NotFoundError,
    RemoteCommandError,
    TransportError,
    UnauthorizedCommandError,
)
from log_utils import setup_service_logging
from orchestrator import OperationOrchestrator

setup_service_logging(verbose=os.environ.get("VERBOSE", "").lower() in ("true", "1", "yes"))
logger = logging.getLogger(__name__)

Response = Tuple[Dict[str, Any], int]

SERVER_ROUTE = re.compile(r"^/api/servers/(?P<instance_id>[^/]+)/(?P<action>[a-z]+)$")
VERSION_RE = re.compile(r"^\d+(?:\.\d+){1,2}$")

_orchestrator: Optional[OperationOrchestrator] = None
_config: Optional[AdminConfig] = None
_init_lock = threading.Lock()


def get_config() -> AdminConfig:
    global _config
    if _config is None:
        _config = AdminConfig.from_env()
    return _config


def get_orchestrator() -> OperationOrchestrator:
    """Process-wide orchestrator, created on first use."""
    global _orchestrator
    with _init_lock:
        if _orchestrator is None:
            config = get_config()
            logger.info(
                f"Creating orchestrator: host={config.remote_host}, "
                f"inventory={config.inventory_url}, background_readiness={config.background_readiness}"
            )
            _orchestrator = OperationOrchestrator.from_config(config)
        return _orchestrator


# =============================================================================
# Security and Validation
# =============================================================================


def require_admin(func: Callable) -> Callable:
    """
    Gate mutating endpoints behind the admin bearer token.

    When ADMIN_API_TOKEN is unset the gate is open; identity is then expected
    to be enforced in front of this service.
    """

    @wraps(func)
    def wrapper(request: Request, *args, **kwargs) -> Response:
        token = get_config().admin_api_token
        if token:
            header = request.headers.get("Authorization", "")
            supplied = header[len("Bearer "):] if header.startswith("Bearer ") else ""
            if not hmac.compare_digest(supplied.encode(), token.encode()):
                logger.warning(f"Unauthorized {request.method} {request.path}")
                return create_response(
                    success=False,
                    error="Unauthorized",
                    message="A valid admin bearer token is required",
                    status_code=401,
                )
        return func(request, *args, **kwargs)

    return wrapper


def require_method(method: str) -> Callable:
    """Reject requests that do not use `method`."""

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(request: Request, *args, **kwargs) -> Response:
            if request.method != method:
                return create_response(
                    success=False,
                    error="Method Not Allowed",
                    message=f"Use {method} for {request.path}",
                    status_code=405,
                )
            return func(request, *args, **kwargs)

        return wrapper

    return decorator


def cors_headers(request: Request) -> Dict[str, str]:
    origin = request.headers.get("Origin", "")
    if not origin or origin not in get_config().allowed_origins:
        return {}
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Credentials": "true",
        "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
        "Access-Control-Allow-Headers": "Authorization, Content-Type",
        "Vary": "Origin",
    }


# =============================================================================
# Response Helpers
# =============================================================================


def create_response(
    success: bool,
    data: Optional[Any] = None,
    error: Optional[str] = None,
    message: Optional[str] = None,
    status_code: int = 200,
) -> Response:
    """Create a standardized API response."""
    response: Dict[str, Any] = {
        "success": success,
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    }

    if data is not None:
        response["data"] = data
    if error:
        response["error"] = error
    if message:
        response["message"] = message

    return response, status_code


# =============================================================================
# HTTP Endpoint Handlers
# =============================================================================


@functions_framework.http
def main(request: Request):
    """
    Main entry point.

    Routes requests based on path; instance routes carry the identifier in
    the path (/api/servers/<id>/<action>).
    """
    headers = cors_headers(request)
    if request.method == "OPTIONS":
        return "", 204, headers

    path = request.path.rstrip("/") or "/"

    routes = {
        "/": handle_info,
        "/health": handle_health,
        "/api/servers": handle_list,
        "/api/versions": handle_versions,
        "/api/operation": handle_operation,
    }
    instance_routes = {
        "restart": handle_restart,
        "update": handle_update,
        "status": handle_status,
        "logs": handle_logs,
    }

    handler = routes.get(path)
    args: Tuple[str, ...] = ()
    if handler is None:
        match = SERVER_ROUTE.match(path)
        if match:
            handler = instance_routes.get(match.group("action"))
            args = (match.group("instance_id"),)

    if not handler:
        body, status = create_response(
            success=False,
            error="Not Found",
            message=f"Unknown endpoint: {path}",
            status_code=404,
        )
        return body, status, headers

    try:
        body, status = handler(request, *args)
    except NotFoundError as e:
        body, status = create_response(
            success=False, error="Not Found", message=str(e), status_code=404
        )
    except BusyError as e:
        body, status = create_response(
            success=False, error="Busy", message=str(e), status_code=409
        )
    except UnauthorizedCommandError as e:
        logger.error(f"Command rejected by allow-list: {e.command!r}")
        body, status = create_response(
            success=False, error="Command Not Allowed", message=str(e), status_code=403
        )
    except (TransportError, InventoryError, RemoteCommandError) as e:
        logger.error(f"Upstream failure on {path}: {e}")
        body, status = create_response(
            success=False, error="Bad Gateway", message=str(e), status_code=502
        )
    except ValueError as e:
        logger.error(f"Validation error: {e}")
        body, status = create_response(
            success=False, error="Validation Error", message=str(e), status_code=400
        )
    except Exception as e:
        logger.exception(f"Internal error: {e}")
        body, status = create_response(
            success=False,
            error="Internal Server Error",
            message="An unexpected error occurred. Check service logs for details.",
            status_code=500,
        )
    return body, status, headers


def handle_info(request: Request) -> Response:
    """Handle API info request."""
    return create_response(
        success=True,
        data={
            "service": "WB Fleet Admin",
            "version": os.environ.get("APP_VERSION", "1.0.0"),
            "endpoints": {
                "GET /api/servers": "List instances",
                "POST /api/servers/<id>/restart": "Restart an instance",
                "POST /api/servers/<id>/update": "Update an instance's version and restart it",
                "GET /api/servers/<id>/status": "Lifecycle status and health",
                "GET /api/servers/<id>/logs": "Container log",
                "GET /api/versions": "Installable versions",
                "GET /api/operation": "Operation in flight",
                "GET /health": "Health check",
            },
        },
    )


def handle_health(request: Request) -> Response:
    """Handle health check request."""
    return create_response(success=True, data={"status": "healthy"})


def handle_list(request: Request) -> Response:
    orchestrator = get_orchestrator()
    refresh = request.args.get("refresh", "").lower() in ("1", "true", "yes")
    instances = orchestrator.list_instances(refresh=refresh)
    statuses = orchestrator.lifecycle_statuses()
    return create_response(
        success=True,
        data={
            "instances": [
                dict(inst.to_dict(), lifecycle=statuses.get(inst.id, "idle"))
                for inst in instances
            ],
        },
    )


@require_method("POST")
@require_admin
def handle_restart(request: Request, instance_id: str) -> Response:
    """Handle restart request."""
    logger.info(f"Restart requested for {instance_id}")
    result = get_orchestrator().request_restart(instance_id)
    return create_response(
        success=result.success,
        data=result.to_dict(),
        error=result.stderr if not result.success else None,
        message=result.message,
    )


@require_method("POST")
@require_admin
def handle_update(request: Request, instance_id: str) -> Response:
    """
    Handle update request.

    Request body:
    {
        "version": "1.6.12"
    }
    """
    body = request.get_json(silent=True) or {}
    version = str(body.get("version", "")).strip()
    if not version:
        raise ValueError("version is required")
    if not VERSION_RE.match(version):
        raise ValueError(f"Invalid version format: {version}")

    logger.info(f"Update requested for {instance_id} -> {version}")
    result = get_orchestrator().request_update(instance_id, version)
    return create_response(
        success=result.success,
        data=result.to_dict(),
        error=result.stderr if not result.success else None,
        message=result.message,
    )


def handle_status(request: Request, instance_id: str) -> Response:
    """Handle status request: lifecycle plus health snapshot (null when unknown)."""
    status = get_orchestrator().get_status(instance_id)
    return create_response(success=True, data=status.to_dict())


def handle_logs(request: Request, instance_id: str) -> Response:
    tail_raw = request.args.get("tail")
    tail = int(tail_raw) if tail_raw else None
    if tail is not None and tail < 0:
        raise ValueError(f"tail must be a non-negative integer: {tail_raw}")
    result = get_orchestrator().get_logs(instance_id, tail=tail)
    return create_response(
        success=result.success,
        data={"logs": result.stdout, "stderr": result.stderr, "exit_code": result.exit_code},
        error=result.stderr if not result.success else None,
    )


def handle_versions(request: Request) -> Response:
    versions = get_orchestrator().get_version_catalog()
    return create_response(success=True, data={"versions": versions})


def handle_operation(request: Request) -> Response:
    orchestrator = get_orchestrator()
    op = orchestrator.current_operation
    return create_response(
        success=True,
        data={
            "busy": op is not None,
            "operation": op.to_dict() if op else None,
            "lifecycle": orchestrator.lifecycle_statuses(),
        },
    )
