"""Tests for the chat signup conversation."""

from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from eventportal.auth.accounts import get_account_by_identifier
from eventportal.auth.password import verify_password
from eventportal.db.models import CalendarEvent, EventSignup, SecurityEvent
from eventportal.events.store import EventStore
from eventportal.telegram.sessions import InMemorySignupSessionStore, SignupSession
from eventportal.telegram.signup import SignupConversation, SignupOutcome
from tests.conftest import CHAT_ID, OTHER_STUDENT_ID, STRONG_PASSWORD, STUDENT_ID, create_test_account

NEW_CHAT = 5550001


@pytest.fixture
def store() -> InMemorySignupSessionStore:
    return InMemorySignupSessionStore()


@pytest.fixture
def conversation(settings, channel, store, session_factory) -> SignupConversation:
    return SignupConversation(settings, channel, store, session_factory, EventStore())


async def _seed_events(db) -> None:
    upcoming = date.today() + timedelta(days=7)
    db.add_all(
        [
            CalendarEvent(title="Orientation", event_type="Mandatory", event_date=upcoming),
            CalendarEvent(title="Safety briefing", event_type="mandatory", event_date=upcoming),
            CalendarEvent(title="Games night", event_type="Optional", event_date=upcoming),
            CalendarEvent(title="Cancelled", event_type="Mandatory", event_date=upcoming, is_active=False),
        ]
    )
    await db.commit()


class TestSignupStart:
    async def test_invalid_identifier(self, conversation, channel, store):
        assert await conversation.start(NEW_CHAT, "abc<b>") == SignupOutcome.INVALID_IDENTIFIER
        assert "&lt;b&gt;" in channel.last(NEW_CHAT)
        assert len(store) == 0

    async def test_prompts_for_password(self, conversation, channel, store):
        assert await conversation.start(NEW_CHAT, STUDENT_ID) == SignupOutcome.AWAITING_PASSWORD
        prompt = channel.last(NEW_CHAT)
        assert STUDENT_ID in prompt
        assert "special character" in prompt
        session = await store.get(NEW_CHAT)
        assert session.target_identifier == STUDENT_ID

    async def test_chat_already_linked(self, conversation, channel, student):
        assert await conversation.start(CHAT_ID, OTHER_STUDENT_ID) == SignupOutcome.CHAT_ALREADY_LINKED
        assert STUDENT_ID in channel.last(CHAT_ID)

    async def test_identifier_already_registered(self, conversation, channel, student):
        assert await conversation.start(NEW_CHAT, STUDENT_ID) == SignupOutcome.ALREADY_REGISTERED

    async def test_unverified_identifier_needs_support(self, session_factory, conversation, channel):
        await create_test_account(session_factory, OTHER_STUDENT_ID, verified=False, chat_id=None)
        assert await conversation.start(NEW_CHAT, OTHER_STUDENT_ID) == SignupOutcome.CONTACT_SUPPORT
        assert "support" in channel.last(NEW_CHAT)

    async def test_restart_replaces_pending_session(self, conversation, channel, store):
        await conversation.start(NEW_CHAT, STUDENT_ID)
        await conversation.start(NEW_CHAT, OTHER_STUDENT_ID)
        assert (await store.get(NEW_CHAT)).target_identifier == OTHER_STUDENT_ID
        assert len(store) == 1
        assert any("was cancelled" in m and STUDENT_ID in m for m in channel.messages_for(NEW_CHAT))


class TestSignupPassword:
    async def test_no_pending_session(self, conversation):
        assert await conversation.handle_text(NEW_CHAT, STRONG_PASSWORD) is None

    async def test_happy_path(self, session_factory, db, settings, conversation, channel, store):
        await _seed_events(db)
        await conversation.start(NEW_CHAT, STUDENT_ID)

        outcome = await conversation.handle_text(NEW_CHAT, STRONG_PASSWORD, message_id=42)
        assert outcome == SignupOutcome.COMPLETED
        assert (NEW_CHAT, 42) in channel.deleted
        assert len(store) == 0

        account = await get_account_by_identifier(db, STUDENT_ID)
        assert account.telegram_chat_id == NEW_CHAT
        assert account.email_verified
        assert account.role == "student"
        assert account.email == f"{STUDENT_ID}@{settings.institution_email_domain}"
        assert verify_password(STRONG_PASSWORD, account.password_hash)

        signups = (await db.execute(select(EventSignup).where(EventSignup.user_id == account.id))).scalars().all()
        assert len(signups) == 2

        confirmation = channel.last(NEW_CHAT)
        assert "Account created" in confirmation
        assert "2 mandatory events" in confirmation
        event = (await db.execute(select(SecurityEvent))).scalar_one()
        assert event.event_type == "TELEGRAM_SIGNUP"

    async def test_policy_failure_keeps_session(self, conversation, channel, store):
        await conversation.start(NEW_CHAT, STUDENT_ID)
        assert await conversation.handle_text(NEW_CHAT, "Weak1!") == SignupOutcome.AWAITING_PASSWORD
        assert "does not meet the requirements" in channel.last(NEW_CHAT)
        assert await store.get(NEW_CHAT) is not None

    async def test_timeout(self, db, settings, conversation, channel, store):
        stale = datetime.now(timezone.utc) - timedelta(minutes=settings.signup_session_timeout_minutes + 1)
        await store.put(SignupSession(chat_id=NEW_CHAT, target_identifier=STUDENT_ID, created_at=stale))

        assert await conversation.handle_text(NEW_CHAT, STRONG_PASSWORD) == SignupOutcome.TIMED_OUT
        assert "expired" in channel.last(NEW_CHAT)
        assert len(store) == 0
        assert await get_account_by_identifier(db, STUDENT_ID) is None

    async def test_conflict_abandons(self, session_factory, db, conversation, channel, store):
        await conversation.start(NEW_CHAT, STUDENT_ID)
        # Someone else registers the same identifier before the password arrives.
        await create_test_account(session_factory, STUDENT_ID, chat_id=None)

        assert await conversation.handle_text(NEW_CHAT, STRONG_PASSWORD) == SignupOutcome.ABANDONED
        assert "registered by another request" in channel.last(NEW_CHAT)
        assert len(store) == 0
        account = await get_account_by_identifier(db, STUDENT_ID)
        assert account.telegram_chat_id is None

    async def test_cancel(self, conversation, store):
        await conversation.start(NEW_CHAT, STUDENT_ID)
        assert await conversation.cancel(NEW_CHAT)
        assert not await conversation.has_pending(NEW_CHAT)
        assert not await conversation.cancel(NEW_CHAT)
