"""
API endpoint implementations for esmd.

Only health and status probes live here; CDN and build routes are
registered by their own routers through create_app(routers=...).
"""

from datetime import datetime

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from core.runtime.errors import StoreClosedError

from .exceptions import APIException, RuntimeNotReadyError, StoreUnavailableError
from .models import HealthResponse, NodeRuntimeInfo, StatusResponse
from .utils import create_error_response

# Create API router
router = APIRouter(prefix="/api", tags=["esmd API"])


def get_runtime(request: Request):
    """Return the runtime context attached to the application."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise RuntimeNotReadyError()
    return runtime


#######################################################################
## Health & Status Endpoints
#######################################################################

@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """
    Lightweight health check endpoint for load balancers and monitoring.

    Returns 503 once shutdown has begun or the store has been closed.
    """
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        return JSONResponse(status_code=503, content={"status": "starting", "store_open": False})

    store_open = not runtime.store.closed
    if runtime.shutdown_requested or not store_open:
        return JSONResponse(status_code=503, content={"status": "stopping", "store_open": store_open})
    return HealthResponse(status="healthy", store_open=store_open)


@router.get("/status", response_model=StatusResponse)
async def get_status(request: Request):
    """
    Get current runtime status.

    Returns the resolved mode, the Node.js runtime detected at startup and
    the uptime of this process.
    """
    runtime = get_runtime(request)
    config = runtime.config
    return StatusResponse(
        mode=config.mode.value,
        debug=config.debug,
        cdn_domain=config.cdn_domain,
        node=NodeRuntimeInfo(
            version=runtime.runtime_info.version,
            registry=runtime.runtime_info.registry,
        ),
        started_at=runtime.started_at,
        uptime_seconds=(datetime.now(runtime.started_at.tzinfo) - runtime.started_at).total_seconds(),
        store_open=not runtime.store.closed,
    )


def register_exception_handlers(app):
    """Register exception handlers with the FastAPI app."""

    @app.exception_handler(APIException)
    async def api_exception_handler(request, exc: APIException):
        """Handle API-specific exceptions with proper error responses."""
        return create_error_response(exc)

    @app.exception_handler(StoreClosedError)
    async def store_closed_handler(request, exc: StoreClosedError):
        """Requests that reach the store after shutdown see a 503."""
        return create_error_response(StoreUnavailableError(str(exc)))
