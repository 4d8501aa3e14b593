"""
Event store: the small slice of the calendar the auth core relies on.

Signup auto-enrolls new accounts into every active mandatory event, and the
bot's /status command lists a user's upcoming events.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import and_, func, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from eventportal.db.models import CalendarEvent, EventSignup

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()

MANDATORY = "mandatory"


@dataclass(frozen=True)
class UpcomingEvent:
    id: int
    title: str
    event_type: str
    event_date: date
    start_time: time | None
    location: str | None


class EventStore:
    async def list_active_mandatory_events(self, db: AsyncSession) -> list[int]:
        result = await db.execute(
            select(CalendarEvent.id)
            .where(func.lower(CalendarEvent.event_type) == MANDATORY)
            .where(CalendarEvent.is_active == True)  # noqa: E712
            .order_by(CalendarEvent.id)
        )
        return list(result.scalars().all())

    async def enroll(self, db: AsyncSession, account_id: int, event_id: int) -> bool:
        """Sign an account up for an event. Returns False if it already was."""
        insert = sqlite_insert if db.get_bind().dialect.name == "sqlite" else pg_insert
        stmt = (
            insert(EventSignup)
            .values(user_id=account_id, event_id=event_id, signup_date=datetime.now(timezone.utc))
            .on_conflict_do_nothing(index_elements=["user_id", "event_id"])
        )
        result = await db.execute(stmt)
        return result.rowcount == 1

    async def enroll_in_mandatory_events(self, db: AsyncSession, account_id: int) -> int:
        """Enroll in every active mandatory event. Returns the number of events."""
        event_ids = await self.list_active_mandatory_events(db)
        for event_id in event_ids:
            await self.enroll(db, account_id, event_id)
        logger.info("mandatory_events_enrolled", account_id=account_id, count=len(event_ids))
        return len(event_ids)

    async def list_upcoming_for_account(
        self,
        db: AsyncSession,
        account_id: int,
        limit: int = 5,
    ) -> list[UpcomingEvent]:
        now = datetime.now(timezone.utc)
        today, now_time = now.date(), now.time().replace(tzinfo=None)
        result = await db.execute(
            select(CalendarEvent)
            .join(EventSignup, EventSignup.event_id == CalendarEvent.id)
            .where(EventSignup.user_id == account_id)
            .where(CalendarEvent.is_active == True)  # noqa: E712
            .where(CalendarEvent.status == "approved")
            .where(
                or_(
                    CalendarEvent.event_date > today,
                    and_(
                        CalendarEvent.event_date == today,
                        or_(CalendarEvent.start_time.is_(None), CalendarEvent.start_time > now_time),
                    ),
                )
            )
            .order_by(CalendarEvent.event_date, CalendarEvent.start_time)
            .limit(limit)
        )
        return [
            UpcomingEvent(
                id=e.id,
                title=e.title,
                event_type=e.event_type,
                event_date=e.event_date,
                start_time=e.start_time,
                location=e.location,
            )
            for e in result.scalars().all()
        ]
