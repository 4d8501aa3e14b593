"""Standalone Telegram bot process: long-polls updates and sweeps expired codes.

Usage: python -m eventportal.telegram.runner
"""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING

import httpx
import structlog

from eventportal.auth.codes import OneTimeCodeIssuer
from eventportal.config import Settings, get_settings
from eventportal.database import close_db, get_session_factory, init_db
from eventportal.events.store import EventStore
from eventportal.middleware.logging import setup_logging
from eventportal.redis_client import close_redis, get_redis, init_redis
from eventportal.telegram.channel import TelegramChannel
from eventportal.telegram.client import TelegramApiError, TelegramBotClient
from eventportal.telegram.dispatcher import ChatDispatcher
from eventportal.telegram.sessions import InMemorySignupSessionStore, RedisSignupSessionStore, SignupSessionStore
from eventportal.telegram.signup import SignupConversation

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = structlog.get_logger()

ERROR_BACKOFF_SECONDS = 5


class TelegramPoller:
    """Fetches updates with getUpdates and hands them to the dispatcher in order."""

    def __init__(self, client: TelegramBotClient, dispatcher: ChatDispatcher, poll_timeout: int = 30) -> None:
        self.client = client
        self.dispatcher = dispatcher
        self.poll_timeout = poll_timeout
        self._offset: int | None = None
        self._running = False

    def stop(self) -> None:
        self._running = False

    async def poll_once(self) -> int:
        """Fetch one batch of updates and dispatch them. Returns the batch size."""
        updates = await self.client.get_updates(offset=self._offset, timeout=self.poll_timeout)
        for update in updates:
            # Acknowledge before dispatching so a failing update is never redelivered forever.
            self._offset = int(update["update_id"]) + 1
            await self.dispatcher.dispatch(update)
        return len(updates)

    async def run(self) -> None:
        self._running = True
        while self._running:
            try:
                await self.poll_once()
            except (httpx.HTTPError, TelegramApiError) as e:
                logger.warning("telegram_poll_failed", error=str(e))
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)
            except Exception:
                logger.exception("telegram_poll_error")
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)


async def cleanup_expired_codes(
    session_factory: async_sessionmaker[AsyncSession],
    issuer: OneTimeCodeIssuer,
) -> int:
    async with session_factory() as db:
        deleted = await issuer.cleanup_expired(db)
        await db.commit()
    return deleted


def build_session_store(settings: Settings) -> SignupSessionStore:
    if settings.signup_session_backend == "redis":
        return RedisSignupSessionStore(get_redis(), ttl_seconds=settings.signup_session_timeout_minutes * 60)
    return InMemorySignupSessionStore()


def build_dispatcher(
    settings: Settings,
    client: TelegramBotClient,
    session_factory: async_sessionmaker[AsyncSession],
    store: SignupSessionStore,
) -> ChatDispatcher:
    channel = TelegramChannel(client, session_factory)
    events = EventStore()
    conversation = SignupConversation(settings, channel, store, session_factory, events)
    return ChatDispatcher(conversation, channel, session_factory, events)


async def main() -> None:
    """Run the long-poll loop and the periodic code cleanup."""
    settings = get_settings()
    setup_logging(settings)

    await init_db(settings.database_url)
    if settings.signup_session_backend == "redis":
        await init_redis(settings.redis_url, max_connections=settings.redis_max_connections)

    session_factory = get_session_factory()
    client = TelegramBotClient(
        settings.telegram_bot_token,
        api_base=settings.telegram_api_base,
        timeout=settings.telegram_request_timeout_seconds,
    )
    dispatcher = build_dispatcher(settings, client, session_factory, build_session_store(settings))
    poller = TelegramPoller(client, dispatcher, poll_timeout=settings.telegram_poll_timeout_seconds)
    issuer = OneTimeCodeIssuer(settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, poller.stop)

    async def code_cleaner() -> None:
        while True:
            try:
                await cleanup_expired_codes(session_factory, issuer)
            except Exception:
                logger.exception("code_cleanup_error")
            await asyncio.sleep(settings.code_cleanup_interval_minutes * 60)

    cleaner = asyncio.create_task(code_cleaner())
    try:
        me = await client.get_me()
        logger.info("telegram_bot_starting", username=me.get("username"), backend=settings.signup_session_backend)
        await poller.run()
    finally:
        cleaner.cancel()
        try:
            await cleaner
        except asyncio.CancelledError:
            pass
        await client.aclose()
        await close_redis()
        await close_db()
        logger.info("telegram_bot_stopped")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
