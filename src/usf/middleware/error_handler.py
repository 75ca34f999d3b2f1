"""Exception handlers: every error leaves the API as ``{"detail": ...}`` JSON."""

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from usf.errors import SupporterEngineError, ValidationRejected, WebhookRejected

logger = structlog.get_logger()


def setup_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers."""

    @app.exception_handler(SupporterEngineError)
    async def engine_error_handler(request: Request, exc: SupporterEngineError) -> JSONResponse:
        """Map domain errors onto their HTTP status."""
        content: dict[str, object] = {"detail": exc.message}
        if isinstance(exc, ValidationRejected) and exc.errors:
            content["errors"] = exc.errors
        if not isinstance(exc, WebhookRejected):
            logger.info(
                "request_rejected",
                path=request.url.path,
                error=type(exc).__name__,
                detail=exc.message,
            )
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={"detail": "Validation error", "errors": jsonable_errors(exc)},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all for unhandled exceptions; always JSON."""
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    # ctx may hold exception instances (e.g. from Decimal validators)
    return [{k: v for k, v in err.items() if k not in ("ctx", "input")} for err in exc.errors()]
