"""Health, readiness, and version endpoints."""

from fastapi import APIRouter
from sqlalchemy import text

from usf.config import get_settings
from usf.database import get_session_factory
from usf.redis_client import get_redis

router = APIRouter()


@router.get("/health")
async def health() -> dict[str, str]:
    """Liveness probe."""
    return {"status": "healthy"}


@router.get("/ready")
async def readiness() -> dict[str, object]:
    """Readiness probe: database and Redis connectivity."""
    settings = get_settings()
    if settings.storage_backend == "memory":
        return {"status": "ready", "checks": {"storage": "memory"}}

    checks: dict[str, object] = {}
    try:
        async with get_session_factory()() as db:
            await db.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as exc:
        checks["database"] = f"error: {exc}"

    try:
        await get_redis().ping()
        checks["redis"] = "ok"
    except Exception as exc:
        checks["redis"] = f"error: {exc}"

    all_ok = all(v == "ok" for v in checks.values())
    return {"status": "ready" if all_ok else "degraded", "checks": checks}


@router.get("/version")
async def version() -> dict[str, str]:
    settings = get_settings()
    return {
        "version": settings.app_version,
        "environment": settings.environment,
    }
