from __future__ import annotations

"""FastAPI application factory for the reference chat backend.

Every module under :mod:`chatsync.server.routes` exposes an ``APIRouter``
named ``router``; ``create_app`` imports them all and registers each one.
"""

from importlib import import_module
import pkgutil

from fastapi import FastAPI
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

import structlog


logger = structlog.get_logger()


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log each request with its outcome."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        logger.info("request.start", method=request.method, path=request.url.path)
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.exception(
                "request.failure",
                method=request.method,
                path=request.url.path,
                error=str(exc),
            )
            raise
        logger.info(
            "request.success",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
        )
        return response


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(title="chatsync")
    app.add_middleware(RequestLoggingMiddleware)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    from . import routes as routes_pkg

    for _, module_name, _ in pkgutil.iter_modules(routes_pkg.__path__):
        module = import_module(f"{routes_pkg.__name__}.{module_name}")
        router = getattr(module, "router", None)
        if router is not None:
            app.include_router(router)

    return app
