"""API middleware for logging, metrics, and error handling."""

import time
import uuid
from typing import Callable

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import Counter, Histogram
from starlette.exceptions import HTTPException as StarletteHTTPException

from zyper_daemon.core.exceptions import DaemonError
from zyper_daemon.utils.logging import bind_node_context

logger = structlog.get_logger()

REQUEST_COUNT = Counter(
    "zyper_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

REQUEST_DURATION = Histogram(
    "zyper_http_request_duration_seconds",
    "HTTP request duration",
    ["method", "endpoint"],
)


def _route_template(request: Request) -> str:
    # Label by route pattern so instance ids don't explode cardinality
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


def setup_error_handling(app: FastAPI) -> None:
    """Render daemon errors as ``{"error", "message", "code"}``."""

    @app.exception_handler(DaemonError)
    async def daemon_error_handler(request: Request, exc: DaemonError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("Request failed", error=exc.kind, message=str(exc), code=exc.code)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={
                "error": "ValidationError",
                "message": "Invalid request data",
                "details": jsonable_errors(exc),
            },
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": "HTTPException",
                "message": exc.detail,
            },
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unexpected error", exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={
                "error": "InternalServerError",
                "message": "An unexpected error occurred",
            },
        )


def jsonable_errors(exc: RequestValidationError) -> list:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]


def setup_logging_middleware(app: FastAPI) -> None:
    """Bind a request id and log each request."""

    @app.middleware("http")
    async def log_requests(request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        structlog.contextvars.clear_contextvars()
        store = getattr(request.app.state, "store", None)
        if store is not None:
            bind_node_context(store.get_meta("nodeId"), store.get_meta("nodeName"))
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            client=request.client.host if request.client else None,
        )
        start_time = time.time()

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.exception("Request failed", duration_seconds=time.time() - start_time, exc_info=exc)
            raise

        logger.info(
            "Request completed",
            status_code=response.status_code,
            duration_seconds=time.time() - start_time,
        )
        response.headers["X-Request-ID"] = request_id
        return response


def setup_metrics_middleware(app: FastAPI) -> None:
    """Count and time requests per route."""

    @app.middleware("http")
    async def collect_metrics(request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time
        endpoint = _route_template(request)

        REQUEST_COUNT.labels(
            method=request.method,
            endpoint=endpoint,
            status=response.status_code,
        ).inc()

        REQUEST_DURATION.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response
