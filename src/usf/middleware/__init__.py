"""HTTP middleware stack for the supporter service."""

from fastapi import FastAPI

from usf.config import Settings
from usf.middleware.cors import setup_cors
from usf.middleware.error_handler import setup_error_handlers
from usf.middleware.logging import setup_logging
from usf.middleware.rate_limit import RateLimitMiddleware
from usf.middleware.request_id import RequestIdMiddleware

# Orchestrator checks poll these; they never count against a client's window.
UNTHROTTLED_PATHS = ("/health", "/ready", "/version")


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Install logging, error mapping and the middleware chain.

    Outermost to innermost: CORS, request context, rate limit. Starlette
    wraps in reverse-add order, so the add calls below run inside out.
    """
    setup_logging(settings)
    setup_error_handlers(app)
    app.add_middleware(
        RateLimitMiddleware,
        requests_per_window=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
        exempt_paths=UNTHROTTLED_PATHS,
    )
    app.add_middleware(RequestIdMiddleware)
    setup_cors(app, settings)
