"""
Account lockout after repeated failed logins.

State lives on the account row so every API instance sees the same counters.
Failures are counted with a single UPDATE ... RETURNING, so concurrent failed
attempts never lose an increment.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import and_, case, func, literal, or_, select, update

from eventportal.auth.identifiers import normalize_login_key
from eventportal.db.base import UTCDateTime
from eventportal.db.models import Account

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from eventportal.config import Settings

logger = structlog.get_logger()


@dataclass(frozen=True)
class LockoutStatus:
    locked: bool
    locked_until: datetime | None = None
    remaining_minutes: int | None = None


_UNLOCKED = LockoutStatus(locked=False)


class LockoutGuard:
    """Tracks failed attempts per identifier and computes lockout windows."""

    def __init__(self, settings: Settings) -> None:
        self.threshold = settings.account_lockout_threshold
        self.window = timedelta(minutes=settings.lockout_window_minutes)
        self.duration = timedelta(minutes=settings.account_lockout_duration_minutes)

    @staticmethod
    def _match(identifier: str):  # noqa: ANN205
        return func.lower(Account.identifier) == normalize_login_key(identifier)

    async def check_lockout(self, db: AsyncSession, identifier: str) -> LockoutStatus:
        """Read-only. Unknown identifiers are never locked."""
        result = await db.execute(select(Account.locked_until).where(self._match(identifier)))
        locked_until = result.scalar_one_or_none()
        now = datetime.now(timezone.utc)
        if locked_until is None or locked_until <= now:
            return _UNLOCKED
        remaining = math.ceil((locked_until - now).total_seconds() / 60)
        return LockoutStatus(locked=True, locked_until=locked_until, remaining_minutes=remaining)

    async def record_failure(self, db: AsyncSession, identifier: str) -> int:
        """
        Count one failed attempt. Returns the new count (0 for unknown identifiers).

        The window opens at the first failure and does not slide. The count
        restarts at 1 once the window is older than ``lockout_window_minutes``
        or an earlier lock has expired. Reaching the threshold sets
        ``locked_until``.
        """
        now = datetime.now(timezone.utc)
        restart = or_(
            Account.failure_window_started_at.is_(None),
            Account.failure_window_started_at < now - self.window,
            and_(Account.locked_until.is_not(None), Account.locked_until <= now),
        )
        new_count = case((restart, 1), else_=Account.failed_login_attempts + 1)
        stmt = (
            update(Account)
            .where(self._match(identifier))
            .values(
                failed_login_attempts=new_count,
                failure_window_started_at=case(
                    (restart, literal(now, UTCDateTime())),
                    else_=Account.failure_window_started_at,
                ),
                last_failed_login_at=now,
                locked_until=case(
                    (new_count >= self.threshold, literal(now + self.duration, UTCDateTime())),
                    else_=None,
                ),
            )
            .returning(Account.id, Account.failed_login_attempts, Account.locked_until)
            .execution_options(synchronize_session=False)
        )
        row = (await db.execute(stmt)).one_or_none()
        if row is None:
            return 0
        account_id, count, locked_until = row
        if locked_until is not None:
            logger.warning("account_locked", account_id=account_id, failed_attempts=count)
        return int(count)

    async def record_success(self, db: AsyncSession, identifier: str) -> None:
        """Reset the counter and clear any lock."""
        await db.execute(
            update(Account)
            .where(self._match(identifier))
            .values(
                failed_login_attempts=0,
                locked_until=None,
                failure_window_started_at=None,
                last_failed_login_at=None,
            )
            .execution_options(synchronize_session=False)
        )
