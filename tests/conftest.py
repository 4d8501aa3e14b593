"""Shared test fixtures.

Tests run against a throwaway SQLite file per test (aiosqlite) with the
schema created from the ORM metadata. Redis is never initialized, so the
rate limiter lets every request through.
"""

from __future__ import annotations

import os
import re
import tempfile
from collections.abc import AsyncGenerator
from html import unescape
from pathlib import Path

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


def _ensure_test_keys() -> None:
    """Generate an RSA key pair once per test run and point the settings at it."""
    existing = os.environ.get("EP_JWT_PRIVATE_KEY_PATH")
    if existing and "eventportal_test_keys_" in existing and Path(existing).exists():
        return
    keydir = Path(tempfile.mkdtemp(prefix="eventportal_test_keys_"))
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_path = keydir / "jwt_private.pem"
    public_path = keydir / "jwt_public.pem"
    private_path.write_bytes(
        private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    public_path.write_bytes(
        private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
    )
    os.environ["EP_JWT_PRIVATE_KEY_PATH"] = str(private_path)
    os.environ["EP_JWT_PUBLIC_KEY_PATH"] = str(public_path)


_ensure_test_keys()
os.environ["EP_TELEGRAM_BOT_TOKEN"] = ""
os.environ["EP_LOG_FORMAT"] = "console"

from eventportal.auth import accounts  # noqa: E402
from eventportal.auth.password import hash_password  # noqa: E402
from eventportal.auth.tokens import reset_keys  # noqa: E402
from eventportal.config import Settings, get_settings  # noqa: E402
from eventportal.database import close_db, get_engine, get_session_factory, init_db  # noqa: E402
from eventportal.db import models  # noqa: E402, F401
from eventportal.db.base import Base  # noqa: E402
from eventportal.db.models import Account  # noqa: E402

get_settings.cache_clear()
reset_keys()

STUDENT_ID = "1009999"
OTHER_STUDENT_ID = "1001234"
ADMIN_ID = "1005000"
STRONG_PASSWORD = "Str0ng!Passw0rd"
CHAT_ID = 424242

_MFA_IN_MESSAGE = re.compile(r"<code>([A-Z0-9]{7})</code>")
_TEMP_PASSWORD_IN_MESSAGE = re.compile(r"temporary password: <code>(.+?)</code>")


class FakeChannel:
    """Records every delivery instead of talking to Telegram."""

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[tuple[int, str]] = []
        self.deleted: list[tuple[int, int]] = []

    async def send(self, chat_id: int, message: str) -> bool:
        if self.fail:
            return False
        self.sent.append((chat_id, message))
        return True

    async def delete_message(self, chat_id: int, message_id: int) -> bool:
        self.deleted.append((chat_id, message_id))
        return True

    def messages_for(self, chat_id: int) -> list[str]:
        return [text for cid, text in self.sent if cid == chat_id]

    def last(self, chat_id: int) -> str:
        return self.messages_for(chat_id)[-1]


def extract_mfa_code(message: str) -> str:
    match = _MFA_IN_MESSAGE.search(message)
    assert match, message
    return match.group(1)


def extract_temporary_password(message: str) -> str:
    match = _TEMP_PASSWORD_IN_MESSAGE.search(message)
    assert match, message
    return unescape(match.group(1))


async def create_test_account(
    session_factory: async_sessionmaker[AsyncSession],
    identifier: str = STUDENT_ID,
    password: str = STRONG_PASSWORD,
    *,
    role: str = accounts.ROLE_STUDENT,
    chat_id: int | None = CHAT_ID,
    verified: bool = True,
) -> Account:
    async with session_factory() as db:
        account = await accounts.create_account(
            db,
            identifier,
            hash_password(password),
            telegram_chat_id=chat_id,
            role=role,
            email_verified=verified,
        )
        await db.commit()
    return account


async def reload_account(session_factory: async_sessionmaker[AsyncSession], account_id: int) -> Account:
    async with session_factory() as db:
        account = await accounts.get_account_by_id(db, account_id)
    assert account is not None
    return account


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest_asyncio.fixture
async def session_factory(tmp_path: Path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Fresh SQLite database per test, installed as the app-wide engine."""
    await init_db(f"sqlite+aiosqlite:///{tmp_path / 'eventportal.db'}")
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield get_session_factory()
    await close_db()


@pytest_asyncio.fixture
async def db(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest_asyncio.fixture
async def student(session_factory: async_sessionmaker[AsyncSession]) -> Account:
    return await create_test_account(session_factory)


@pytest_asyncio.fixture
async def admin(session_factory: async_sessionmaker[AsyncSession]) -> Account:
    return await create_test_account(session_factory, ADMIN_ID, role=accounts.ROLE_ADMIN, chat_id=None)


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    channel: FakeChannel,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app, with the fake channel in place of Telegram.

    The lifespan is not run; the fixture database is already initialized.
    """
    from eventportal.main import create_app

    app = create_app()
    app.state.chat_channel = channel
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
