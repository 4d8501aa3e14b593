"""Routes inbound Telegram updates to commands and the signup conversation."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from eventportal.auth.accounts import get_account_by_chat_id, unbind_chat
from eventportal.auth.audit import TELEGRAM_CONTEXT, record_security_event
from eventportal.telegram import messages

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from eventportal.events.store import EventStore
    from eventportal.telegram.channel import ChatChannel
    from eventportal.telegram.signup import SignupConversation

logger = structlog.get_logger()

STATUS_EVENT_LIMIT = 5


def parse_command(text: str) -> tuple[str, str]:
    """Split ``/cmd@botname args`` into ``("/cmd", "args")``."""
    head, _, args = text.strip().partition(" ")
    command = head.split("@", 1)[0].lower()
    return command, args.strip()


class ChatDispatcher:
    """
    Handles one Telegram update at a time.

    Updates are processed in arrival order, which keeps each chat's signup
    transitions ordered.
    """

    def __init__(
        self,
        conversation: SignupConversation,
        channel: ChatChannel,
        session_factory: async_sessionmaker[AsyncSession],
        events: EventStore,
    ) -> None:
        self.conversation = conversation
        self.channel = channel
        self._session_factory = session_factory
        self._events = events
        self._commands = {
            "/start": self._start,
            "/signup": self._signup,
            "/status": self._status,
            "/unregister": self._unregister,
            "/help": self._help,
        }

    async def dispatch(self, update: dict[str, Any]) -> None:
        message = update.get("message")
        if not message or "text" not in message:
            return
        chat = message.get("chat", {})
        if chat.get("type", "private") != "private":
            logger.debug("telegram_non_private_ignored", chat_id=chat.get("id"))
            return

        chat_id = int(chat["id"])
        text: str = message["text"]
        try:
            if text.startswith("/"):
                await self._handle_command(chat_id, text, message.get("message_id"))
            else:
                await self.conversation.handle_text(chat_id, text, message.get("message_id"))
        except Exception:
            logger.exception("telegram_update_failed", chat_id=chat_id, update_id=update.get("update_id"))
            await self.channel.send(chat_id, messages.system_error())

    async def _handle_command(self, chat_id: int, text: str, message_id: int | None = None) -> None:
        command, args = parse_command(text)
        # /signup replaces any pending session anyway; everything else reports the timeout.
        await self.conversation.expire_if_stale(chat_id, notify=command != "/signup")
        handler = self._commands.get(command)
        if handler is None:
            if await self.conversation.has_pending(chat_id):
                # Most likely a password typed during signup; keep it out of the chat history.
                if message_id is not None:
                    await self.channel.delete_message(chat_id, message_id)
                await self.channel.send(chat_id, messages.password_starts_with_slash())
                return
            logger.info("telegram_unknown_command", chat_id=chat_id, command=command)
            await self.channel.send(chat_id, messages.unknown_command())
            return
        logger.info("telegram_command", chat_id=chat_id, command=command)
        await handler(chat_id, args)

    # ----- commands -----

    async def _start(self, chat_id: int, _args: str) -> None:
        async with self._session_factory() as db:
            account = await get_account_by_chat_id(db, chat_id)
        identifier = account.identifier if account is not None and account.is_active else None
        await self.channel.send(chat_id, messages.welcome(identifier))

    async def _signup(self, chat_id: int, args: str) -> None:
        if not args:
            await self.channel.send(chat_id, messages.signup_usage())
            return
        await self.conversation.start(chat_id, args.split()[0])

    async def _status(self, chat_id: int, _args: str) -> None:
        async with self._session_factory() as db:
            account = await get_account_by_chat_id(db, chat_id)
            if account is None or not account.is_active:
                await self.channel.send(chat_id, messages.status_not_linked())
                return
            events = await self._events.list_upcoming_for_account(db, account.id, limit=STATUS_EVENT_LIMIT)
        await self.channel.send(chat_id, messages.status(account.identifier, account.email, events))

    async def _unregister(self, chat_id: int, _args: str) -> None:
        await self.conversation.cancel(chat_id)
        async with self._session_factory() as db:
            account = await get_account_by_chat_id(db, chat_id)
            if account is None:
                await self.channel.send(chat_id, messages.unregister_not_linked())
                return
            identifier = account.identifier
            await unbind_chat(db, chat_id)
            await record_security_event(
                db,
                "TELEGRAM_UNLINKED",
                f"Telegram chat unlinked by the user for {identifier}",
                account_id=account.id,
                metadata={"chat_id": chat_id},
                context=TELEGRAM_CONTEXT,
            )
            await db.commit()
        logger.info("telegram_chat_unregistered", chat_id=chat_id, identifier=identifier)
        await self.channel.send(chat_id, messages.unregistered(identifier))

    async def _help(self, chat_id: int, _args: str) -> None:
        await self.channel.send(chat_id, messages.help_text())
