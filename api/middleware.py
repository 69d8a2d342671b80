"""
Cross-cutting request middleware.

Error and access logging wrap everything downstream so they observe the
final outcome of each request. Each access record is one JSON line.

Unhandled exceptions are turned into a 500 by ErrorResponseMiddleware,
which sits directly around the router, so error responses still pass
through the header and CORS stages on their way out.
"""

import time
import traceback

from starlette.datastructures import Headers, MutableHeaders
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from core.logger import LogSink, utc_timestamp
from .utils import create_error_response

# Scope keys shared between stages of one request
UNHANDLED_ERROR_KEY = "esmd.unhandled_error"
RESPONSE_OBSERVERS_KEY = "esmd.response_observers"


class ErrorResponseMiddleware:
    """Innermost stage: convert an unhandled exception into a 500 response."""

    def __init__(self, app: ASGIApp, debug: bool = False):
        self.app = app
        self.debug = debug

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        response_started = False

        async def send_tracking(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self.app(scope, receive, send_tracking)
        except Exception as exc:
            if response_started:
                raise
            scope[UNHANDLED_ERROR_KEY] = exc
            response = create_error_response(exc, debug=self.debug)
            await response(scope, receive, send)


class ErrorLoggingMiddleware(BaseHTTPMiddleware):
    """Log unhandled exceptions and 5xx responses to the operational sink."""

    def __init__(self, app: ASGIApp, sink: LogSink):
        super().__init__(app)
        self.sink = sink

    def _log_exception(self, request, exc: BaseException) -> None:
        self.sink.error(
            f"{request.method} {request.url.path}: unhandled {type(exc).__name__}: {exc}\n"
            + "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        )

    async def dispatch(self, request, call_next):
        try:
            response = await call_next(request)
        except Exception as exc:
            self._log_exception(request, exc)
            raise

        if response.status_code >= 500:
            exc = request.scope.get(UNHANDLED_ERROR_KEY)
            if exc is not None:
                self._log_exception(request, exc)
            else:
                self.sink.error(f"{request.method} {request.url.path}: status {response.status_code}")
        return response


class AccessLogMiddleware(BaseHTTPMiddleware):
    """Persist one structured record per request to the access sink."""

    def __init__(self, app: ASGIApp, sink: LogSink):
        super().__init__(app)
        self.sink = sink

    async def dispatch(self, request, call_next):
        started = time.perf_counter()
        status = 500
        length = None
        try:
            response = await call_next(request)
            status = response.status_code
            length = response.headers.get("content-length")
            return response
        finally:
            client = request.client
            self.sink.record({
                "time": utc_timestamp(),
                "remote": client.host if client else None,
                "method": request.method,
                "host": request.headers.get("host"),
                "path": request.url.path,
                "query": request.url.query or None,
                "status": status,
                "length": int(length) if length and length.isdigit() else None,
                "duration_ms": round((time.perf_counter() - started) * 1000, 3),
                "referer": request.headers.get("referer"),
                "user_agent": request.headers.get("user-agent"),
            })


class HeaderMiddleware:
    """Inject a static response header."""

    def __init__(self, app: ASGIApp, name: str, value: str):
        self.app = app
        self.name = name
        self.value = value

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def send_with_header(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                headers[self.name] = self.value
            await send(message)

        await self.app(scope, receive, send_with_header)


class ResponseObserverMiddleware:
    """
    Outermost stage: hand the response start message, as sent on the wire,
    to observers that inner stages registered in the request scope.
    """

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        observers = scope.setdefault(RESPONSE_OBSERVERS_KEY, [])

        async def send_observed(message: Message) -> None:
            if message["type"] == "http.response.start":
                for observer in observers:
                    observer(message)
            await send(message)

        await self.app(scope, receive, send_observed)


class DebugMiddleware:
    """
    Verbose request tracing, installed only in debug mode.

    Sits last in the chain. The request line is traced on entry; the
    response is traced through ResponseObserverMiddleware once every outer
    stage has decorated it. Without an observer stage the response is
    traced as the handler produced it.
    """

    def __init__(self, app: ASGIApp, sink: LogSink):
        self.app = app
        self.sink = sink

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        method = scope["method"]
        path = scope["path"]
        started = time.perf_counter()
        self.sink.debug(f"--> {method} {path} headers={dict(Headers(scope=scope))}")

        def trace_response(message: Message) -> None:
            elapsed = (time.perf_counter() - started) * 1000
            self.sink.debug(
                f"<-- {method} {path} {message['status']} "
                f"{elapsed:.3f}ms headers={dict(Headers(raw=message.get('headers', [])))}"
            )

        observers = scope.get(RESPONSE_OBSERVERS_KEY)
        if observers is not None:
            observers.append(trace_response)

        async def send_timed(message: Message) -> None:
            if message["type"] == "http.response.start":
                elapsed = (time.perf_counter() - started) * 1000
                MutableHeaders(scope=message)["X-Debug-Duration"] = f"{elapsed:.3f}ms"
                if observers is None:
                    trace_response(message)
            await send(message)

        await self.app(scope, receive, send_timed)
