"""
Request pipeline assembly.

The middleware chain is plain data: an ordered list of MiddlewareSpec
descriptors, outermost first, consumed once when the application is built.
Routes are registered after the chain is in place and before any listener
starts accepting.

create_app frames the configured chain with two fixed stages: the error
response stage directly around the router, and in debug mode a response
observer outside everything so the debug tracer sees the final headers.
"""

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Type

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import PlainTextResponse, RedirectResponse
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware

from core import constants
from core.logger import LogSinks
from core.runtime.config import RuntimeConfig
from .endpoints import register_exception_handlers, router as api_router
from .middleware import (
    AccessLogMiddleware,
    DebugMiddleware,
    ErrorLoggingMiddleware,
    ErrorResponseMiddleware,
    HeaderMiddleware,
    ResponseObserverMiddleware,
)

if TYPE_CHECKING:
    from core.runtime.context import RuntimeContext


ACME_CHALLENGE_PREFIX = "/.well-known/acme-challenge/"
_ACME_TOKEN = re.compile(r"^[A-Za-z0-9_-]+$")


@dataclass(frozen=True)
class MiddlewareSpec:
    """One entry of the middleware chain."""

    name: str
    cls: Type[Any]
    options: Dict[str, Any] = field(default_factory=dict)

    def as_middleware(self) -> Middleware:
        return Middleware(self.cls, **self.options)


def build_middleware_specs(config: RuntimeConfig, sinks: LogSinks) -> List[MiddlewareSpec]:
    """
    Build the ordered middleware chain for the main application.

    Error and access logging come first so they wrap every other stage;
    the debug tracer, when enabled, is always last.
    """
    specs = [
        MiddlewareSpec("error_logger", ErrorLoggingMiddleware, {"sink": sinks.main}),
        MiddlewareSpec("access_logger", AccessLogMiddleware, {"sink": sinks.access}),
        MiddlewareSpec("server_header", HeaderMiddleware, {
            "name": constants.SERVER_HEADER_NAME,
            "value": constants.SERVER_HEADER_VALUE,
        }),
        MiddlewareSpec("cors", CORSMiddleware, {
            "allow_origins": ["*"],
            "allow_methods": list(constants.CORS_ALLOW_METHODS),
            "allow_headers": list(constants.CORS_ALLOW_HEADERS),
            "max_age": constants.CORS_MAX_AGE,
        }),
    ]
    if config.debug:
        specs.append(MiddlewareSpec("debug", DebugMiddleware, {"sink": sinks.main}))
    return specs


def create_app(
    context: "RuntimeContext",
    routers: Optional[Iterable[APIRouter]] = None,
) -> FastAPI:
    """
    Create the main FastAPI application for a bootstrapped runtime.

    Args:
        context: Runtime context exposed to handlers as app.state.runtime
        routers: Routers to register after the middleware chain
            (defaults to the built-in health/status router)

    Returns:
        FastAPI application ready to be served
    """
    config = context.config
    specs = build_middleware_specs(config, context.sinks)

    middleware = [spec.as_middleware() for spec in specs]
    if config.debug:
        middleware.insert(0, Middleware(ResponseObserverMiddleware))
    middleware.append(Middleware(ErrorResponseMiddleware, debug=config.debug))

    app = FastAPI(
        title="esmd",
        middleware=middleware,
        docs_url="/api/docs" if config.debug else None,
        redoc_url=None,
        openapi_url="/api/openapi.json" if config.debug else None,
    )
    app.state.runtime = context
    app.state.middleware_specs = specs

    register_exception_handlers(app)

    for router in (routers if routers is not None else [api_router]):
        app.include_router(router)

    return app


def https_redirect_url(request: Request, https_port: int) -> str:
    """Build the TLS URL for a plaintext request."""
    host = request.url.hostname or "localhost"
    if ":" in host:
        host = f"[{host}]"
    netloc = host if https_port == 443 else f"{host}:{https_port}"
    url = f"https://{netloc}{request.url.path}"
    if request.url.query:
        url = f"{url}?{request.url.query}"
    return url


def create_redirect_app(https_port: int, webroot: Path) -> FastAPI:
    """
    Create the plaintext application used in production.

    Serves ACME HTTP-01 challenge tokens from the webroot and redirects
    everything else to the TLS listener.
    """
    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)
    challenge_dir = Path(webroot) / ACME_CHALLENGE_PREFIX.strip("/")

    @app.get(ACME_CHALLENGE_PREFIX + "{token}")
    async def acme_challenge(token: str):
        if not _ACME_TOKEN.match(token):
            return PlainTextResponse("not found", status_code=404)
        path = challenge_dir / token
        if not path.is_file():
            return PlainTextResponse("not found", status_code=404)
        return PlainTextResponse(path.read_text(encoding="utf-8").strip())

    @app.api_route(
        "/{path:path}",
        methods=["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        include_in_schema=False,
    )
    async def redirect_to_https(request: Request, path: str):
        return RedirectResponse(https_redirect_url(request, https_port), status_code=308)

    return app
