"""
Audit trail: login attempts and security events.

Both tables are append-only. Writers only add rows to the caller's session;
the caller owns the transaction.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import structlog

from eventportal.db.models import LoginAttempt, SecurityEvent

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession
    from starlette.requests import Request

logger = structlog.get_logger()

_MAX_USER_AGENT = 512


@dataclass(frozen=True)
class RequestContext:
    """Source metadata attached to audit rows and issued codes/sessions."""

    ip_address: str | None = None
    user_agent: str | None = None

    @classmethod
    def from_request(cls, request: Request) -> RequestContext:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            ip_address: str | None = forwarded.split(",")[0].strip()
        else:
            ip_address = request.client.host if request.client else None
        user_agent = request.headers.get("user-agent")
        return cls(ip_address=ip_address, user_agent=user_agent[:_MAX_USER_AGENT] if user_agent else None)


TELEGRAM_CONTEXT = RequestContext(ip_address=None, user_agent="telegram-bot")


async def record_login_attempt(
    db: AsyncSession,
    identifier: str,
    success: bool,
    reason: str | None = None,
    context: RequestContext | None = None,
) -> LoginAttempt:
    """Append a login attempt with a human-readable reason."""
    ctx = context or RequestContext()
    attempt = LoginAttempt(
        identifier=identifier[:320],
        success=success,
        failure_reason=None if success else reason,
        ip_address=ctx.ip_address,
        user_agent=ctx.user_agent,
        created_at=datetime.now(timezone.utc),
    )
    db.add(attempt)
    await db.flush()
    logger.info(
        "login_attempt",
        identifier=identifier,
        success=success,
        reason=reason,
        ip_address=ctx.ip_address,
    )
    return attempt


async def record_security_event(
    db: AsyncSession,
    event_type: str,
    description: str,
    account_id: int | None = None,
    metadata: dict[str, Any] | None = None,
    context: RequestContext | None = None,
) -> SecurityEvent:
    """Append a security event (signup, lockout, password change, ...)."""
    ctx = context or RequestContext()
    event = SecurityEvent(
        account_id=account_id,
        event_type=event_type,
        description=description,
        event_metadata=metadata or {},
        ip_address=ctx.ip_address,
        user_agent=ctx.user_agent,
        created_at=datetime.now(timezone.utc),
    )
    db.add(event)
    await db.flush()
    logger.info("security_event", event_type=event_type, account_id=account_id)
    return event
