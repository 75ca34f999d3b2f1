"""Browser access for the admin dashboard.

Ko-fi calls the webhook server to server, so CORS only matters for the admin
routes. Those authenticate with headers, not cookies.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from usf.config import Settings

ADMIN_HEADERS = ["Content-Type", "X-Admin-Key", "X-Admin-User-Id", "X-Request-Id"]


def setup_cors(app: FastAPI, settings: Settings) -> None:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "PATCH", "DELETE"],
        allow_headers=ADMIN_HEADERS,
        expose_headers=["X-Request-Id", "X-RateLimit-Remaining", "X-RateLimit-Limit"],
        max_age=600,
    )
