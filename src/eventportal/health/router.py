"""Health, readiness, and version endpoints."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from eventportal.config import get_settings
from eventportal.database import get_session
from eventportal.redis_client import get_redis
from eventportal.telegram.channel import TelegramChannel

router = APIRouter()


@router.get("/health")
async def health() -> dict[str, str]:
    """Liveness probe: returns 200 if the process is alive."""
    return {"status": "healthy"}


@router.get("/ready")
async def readiness(
    request: Request,
    db: AsyncSession = Depends(get_session),  # noqa: B008
) -> dict[str, object]:
    """Readiness probe: checks DB and Redis connectivity, reports the chat channel."""
    checks: dict[str, object] = {}

    try:
        result = await db.execute(text("SELECT 1"))
        result.scalar()
        checks["database"] = "ok"
    except Exception as exc:
        checks["database"] = f"error: {exc}"

    # Redis only backs rate limiting and the optional signup store.
    try:
        redis = get_redis()
    except RuntimeError:
        checks["redis"] = "not_configured"
    else:
        try:
            await redis.ping()
            checks["redis"] = "ok"
        except Exception as exc:
            checks["redis"] = f"error: {exc}"

    channel = getattr(request.app.state, "chat_channel", None)
    telegram = "enabled" if isinstance(channel, TelegramChannel) else "disabled"

    all_ok = all(v in ("ok", "not_configured") for v in checks.values())
    return {"status": "ready" if all_ok else "degraded", "checks": checks, "telegram": telegram}


@router.get("/version")
async def version() -> dict[str, str]:
    """Return API version and environment."""
    settings = get_settings()
    return {
        "version": settings.app_version,
        "environment": settings.environment,
    }
