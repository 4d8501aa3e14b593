"""FastAPI application factory."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from eventportal.auth.router import router as auth_router
from eventportal.config import Settings, get_settings
from eventportal.database import close_db, get_session_factory, init_db
from eventportal.health.router import router as health_router
from eventportal.middleware import setup_middleware
from eventportal.redis_client import close_redis, init_redis
from eventportal.telegram.channel import ChatChannel, DisabledChannel, TelegramChannel
from eventportal.telegram.client import TelegramBotClient

logger = structlog.get_logger()


def build_chat_channel(settings: Settings) -> tuple[ChatChannel, TelegramBotClient | None]:
    """Telegram delivery when a bot token is set, otherwise a channel that always fails."""
    if not settings.telegram_bot_token:
        logger.warning("telegram_disabled", reason="EP_TELEGRAM_BOT_TOKEN not set")
        return DisabledChannel(), None
    client = TelegramBotClient(
        settings.telegram_bot_token,
        api_base=settings.telegram_api_base,
        timeout=settings.telegram_request_timeout_seconds,
    )
    return TelegramChannel(client, get_session_factory()), client


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url)
    await init_redis(settings.redis_url, max_connections=settings.redis_max_connections)

    channel, client = build_chat_channel(settings)
    app.state.chat_channel = channel

    yield

    if client is not None:
        await client.aclose()
    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Event Portal API",
        description="Authentication backend for the student event portal",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(auth_router)

    return app
