"""
Chat channel adapter.

``ChatChannel`` is the interface the login service and the signup
conversation depend on. ``TelegramChannel`` implements it on top of the Bot
API and never raises into the caller: delivery failures are logged and
reported as ``False``. When Telegram says the bot was blocked or the chat is
gone, the stale binding is removed from whichever account holds it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

import httpx
import structlog

from eventportal.auth.accounts import unbind_chat
from eventportal.auth.audit import TELEGRAM_CONTEXT, record_security_event
from eventportal.telegram.client import TelegramApiError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from eventportal.telegram.client import TelegramBotClient

logger = structlog.get_logger()


class ChatChannel(Protocol):
    async def send(self, chat_id: int, message: str) -> bool: ...

    async def delete_message(self, chat_id: int, message_id: int) -> bool: ...


class TelegramChannel:
    """Best-effort delivery over Telegram with self-healing chat bindings."""

    def __init__(
        self,
        client: TelegramBotClient,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        self.client = client
        self._session_factory = session_factory

    async def send(self, chat_id: int, message: str) -> bool:
        try:
            await self.client.send_message(chat_id, message)
        except TelegramApiError as e:
            logger.warning(
                "telegram_send_failed",
                chat_id=chat_id,
                error_code=e.error_code,
                description=e.description,
            )
            if e.is_chat_unreachable:
                await self._unbind(chat_id, e)
            return False
        except httpx.HTTPError as e:
            logger.warning("telegram_send_failed", chat_id=chat_id, error=str(e))
            return False
        logger.debug("telegram_message_sent", chat_id=chat_id)
        return True

    async def delete_message(self, chat_id: int, message_id: int) -> bool:
        try:
            return await self.client.delete_message(chat_id, message_id)
        except (TelegramApiError, httpx.HTTPError) as e:
            logger.info("telegram_delete_failed", chat_id=chat_id, message_id=message_id, error=str(e))
            return False

    async def _unbind(self, chat_id: int, error: TelegramApiError) -> None:
        """Drop the chat binding in an independent transaction."""
        try:
            async with self._session_factory() as db:
                removed = await unbind_chat(db, chat_id)
                if removed:
                    await record_security_event(
                        db,
                        "TELEGRAM_UNLINKED",
                        "Chat binding removed after Telegram reported the chat unreachable",
                        metadata={"chat_id": chat_id, "error_code": error.error_code},
                        context=TELEGRAM_CONTEXT,
                    )
                await db.commit()
        except Exception:
            logger.exception("telegram_unbind_failed", chat_id=chat_id)
            return
        if removed:
            logger.info("telegram_chat_unbound", chat_id=chat_id, error_code=error.error_code)


class DisabledChannel:
    """Stand-in when no bot token is configured. Every delivery fails."""

    async def send(self, chat_id: int, message: str) -> bool:  # noqa: ARG002
        logger.error("telegram_not_configured", chat_id=chat_id)
        return False

    async def delete_message(self, chat_id: int, message_id: int) -> bool:  # noqa: ARG002
        return False
