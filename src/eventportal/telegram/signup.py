"""
Chat signup conversation.

    NONE --/signup <id>--> AWAITING_PASSWORD --valid password--> COMPLETED
                                 |   ^
                                 |   +--policy failure (re-prompt)
                                 +--conflict--> ABANDONED
                                 +--/signup again or cancel()--> ABANDONED (replaced)
                                 +--any message after the timeout--> TIMED_OUT

Possession of the Telegram chat is the identity proof, so accounts created
here are verified immediately and bound to the chat. Timeouts are checked
lazily, when the next message from that chat arrives.
"""

from __future__ import annotations

import enum
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import structlog

from eventportal.auth import accounts
from eventportal.auth.audit import TELEGRAM_CONTEXT, record_security_event
from eventportal.auth.identifiers import derived_email, is_valid_identifier
from eventportal.auth.password import PASSWORD_RULES, check_password, describe_rule, hash_password
from eventportal.telegram import messages
from eventportal.telegram.sessions import SignupSession

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from eventportal.config import Settings
    from eventportal.events.store import EventStore
    from eventportal.telegram.channel import ChatChannel
    from eventportal.telegram.sessions import SignupSessionStore

logger = structlog.get_logger()


class SignupOutcome(str, enum.Enum):
    INVALID_IDENTIFIER = "invalid_identifier"
    CHAT_ALREADY_LINKED = "chat_already_linked"
    ALREADY_REGISTERED = "already_registered"
    CONTACT_SUPPORT = "contact_support"
    AWAITING_PASSWORD = "awaiting_password"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    TIMED_OUT = "timed_out"


class SignupConversation:
    """Per-chat signup dialogue driven by inbound Telegram messages."""

    def __init__(
        self,
        settings: Settings,
        channel: ChatChannel,
        store: SignupSessionStore,
        session_factory: async_sessionmaker[AsyncSession],
        events: EventStore,
    ) -> None:
        self.channel = channel
        self.store = store
        self.timeout = timedelta(minutes=settings.signup_session_timeout_minutes)
        self._session_factory = session_factory
        self._events = events

    def _is_stale(self, session: SignupSession) -> bool:
        return datetime.now(timezone.utc) - session.created_at > self.timeout

    async def expire_if_stale(self, chat_id: int, *, notify: bool = True) -> bool:
        """Destroy the chat's session if it outlived the timeout. Returns True if it did."""
        session = await self.store.get(chat_id)
        if session is None or not self._is_stale(session):
            return False
        await self.store.delete(chat_id)
        logger.info("signup_session_timed_out", chat_id=chat_id, identifier=session.target_identifier)
        if notify:
            await self.channel.send(chat_id, messages.signup_timed_out())
        return True

    async def cancel(self, chat_id: int) -> bool:
        session = await self.store.get(chat_id)
        if session is None:
            return False
        await self.store.delete(chat_id)
        logger.info("signup_session_cancelled", chat_id=chat_id, identifier=session.target_identifier)
        return True

    async def has_pending(self, chat_id: int) -> bool:
        return await self.store.get(chat_id) is not None

    # ----- NONE -> AWAITING_PASSWORD -----

    async def start(self, chat_id: int, identifier_text: str) -> SignupOutcome:
        identifier = identifier_text.strip()
        if not is_valid_identifier(identifier):
            await self.channel.send(chat_id, messages.invalid_identifier(identifier))
            return SignupOutcome.INVALID_IDENTIFIER

        async with self._session_factory() as db:
            linked = await accounts.get_account_by_chat_id(db, chat_id)
            existing = await accounts.get_account_by_identifier(db, identifier)

        if linked is not None:
            await self.channel.send(chat_id, messages.chat_already_linked(linked.identifier))
            return SignupOutcome.CHAT_ALREADY_LINKED
        if existing is not None and existing.email_verified:
            await self.channel.send(chat_id, messages.already_registered(identifier))
            return SignupOutcome.ALREADY_REGISTERED
        if existing is not None:
            logger.warning("signup_unverified_identifier", chat_id=chat_id, identifier=identifier)
            await self.channel.send(chat_id, messages.contact_support(identifier))
            return SignupOutcome.CONTACT_SUPPORT

        previous = await self.store.put(
            SignupSession(chat_id=chat_id, target_identifier=identifier, created_at=datetime.now(timezone.utc))
        )
        if previous is not None:
            logger.warning(
                "signup_session_replaced",
                chat_id=chat_id,
                previous_identifier=previous.target_identifier,
                identifier=identifier,
            )
            if previous.target_identifier != identifier:
                await self.channel.send(chat_id, messages.signup_restarted(previous.target_identifier))
        logger.info("signup_started", chat_id=chat_id, identifier=identifier)
        await self.channel.send(
            chat_id,
            messages.password_prompt(identifier, [describe_rule(rule) for rule in PASSWORD_RULES]),
        )
        return SignupOutcome.AWAITING_PASSWORD

    # ----- AWAITING_PASSWORD -> ... -----

    async def handle_text(self, chat_id: int, text: str, message_id: int | None = None) -> SignupOutcome | None:
        """Handle free text. Returns None when the chat has no pending signup."""
        session = await self.store.get(chat_id)
        if session is None:
            return None
        if await self.expire_if_stale(chat_id):
            return SignupOutcome.TIMED_OUT

        if message_id is not None:
            await self.channel.delete_message(chat_id, message_id)

        violations = check_password(text)
        if violations:
            logger.info(
                "signup_password_rejected",
                chat_id=chat_id,
                identifier=session.target_identifier,
                rules=[v.rule for v in violations],
            )
            await self.channel.send(chat_id, messages.password_rejected(violations))
            return SignupOutcome.AWAITING_PASSWORD

        return await self._complete(session, text)

    async def _complete(self, session: SignupSession, password: str) -> SignupOutcome:
        chat_id, identifier = session.chat_id, session.target_identifier
        async with self._session_factory() as db:
            try:
                account = await accounts.create_account(
                    db,
                    identifier,
                    hash_password(password),
                    telegram_chat_id=chat_id,
                    role=accounts.ROLE_STUDENT,
                    email_verified=True,
                )
            except accounts.AccountConflict:
                await self.store.delete(chat_id)
                await self.channel.send(chat_id, messages.signup_conflict())
                return SignupOutcome.ABANDONED

            account_id = account.id
            enrolled = await self._events.enroll_in_mandatory_events(db, account_id)
            await record_security_event(
                db,
                "TELEGRAM_SIGNUP",
                f"Account created via Telegram for {identifier}",
                account_id=account_id,
                metadata={"identifier": identifier, "chat_id": chat_id, "mandatory_events": enrolled},
                context=TELEGRAM_CONTEXT,
            )
            await db.commit()

        await self.store.delete(chat_id)
        logger.info("signup_completed", chat_id=chat_id, account_id=account_id, mandatory_events=enrolled)
        await self.channel.send(chat_id, messages.signup_complete(identifier, derived_email(identifier), enrolled))
        return SignupOutcome.COMPLETED
