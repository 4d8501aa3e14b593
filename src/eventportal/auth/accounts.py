"""
Credential store: account lookups and mutations.

The core never deletes accounts. Chat bindings are unique; creating an
account whose identifier or chat is already taken raises AccountConflict.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from eventportal.auth.identifiers import derived_email, normalize_login_key
from eventportal.db.models import Account

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()

ROLE_STUDENT = "student"
ROLE_CLUB = "club"
ROLE_ADMIN = "admin"


class AccountConflict(Exception):
    """The identifier or chat binding is already claimed by another account."""


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


async def get_account_by_id(db: AsyncSession, account_id: int) -> Account | None:
    result = await db.execute(select(Account).where(Account.id == account_id))
    return result.scalar_one_or_none()


async def get_account_by_identifier(db: AsyncSession, identifier: str) -> Account | None:
    """Fetch an account by its institution identifier (case-insensitive)."""
    result = await db.execute(
        select(Account).where(func.lower(Account.identifier) == identifier.strip().lower())
    )
    return result.scalar_one_or_none()


async def get_account_by_login_key(db: AsyncSession, key: str) -> Account | None:
    """Fetch an account by the raw identifier or its derived email."""
    return await get_account_by_identifier(db, normalize_login_key(key))


async def get_account_by_chat_id(db: AsyncSession, chat_id: int) -> Account | None:
    result = await db.execute(select(Account).where(Account.telegram_chat_id == chat_id))
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


async def create_account(
    db: AsyncSession,
    identifier: str,
    password_hash: str,
    *,
    telegram_chat_id: int | None = None,
    role: str = ROLE_STUDENT,
    email_verified: bool = False,
) -> Account:
    """
    Insert a new account.

    The email is always derived from the identifier. On a uniqueness
    conflict the caller's transaction is rolled back.

    Raises:
        AccountConflict: If the identifier, email or chat id is already taken.
    """
    identifier = identifier.strip()
    now = datetime.now(timezone.utc)
    account = Account(
        identifier=identifier,
        email=derived_email(identifier),
        password_hash=password_hash,
        role=role,
        email_verified=email_verified,
        is_active=True,
        telegram_chat_id=telegram_chat_id,
        session_token_version=0,
        failed_login_attempts=0,
        password_changed_at=now,
        created_at=now,
    )
    db.add(account)
    try:
        await db.flush()
    except IntegrityError as e:
        await db.rollback()
        logger.warning("account_create_conflict", identifier=identifier, telegram_chat_id=telegram_chat_id)
        msg = f"Account {identifier} or chat binding already exists"
        raise AccountConflict(msg) from e
    logger.info("account_created", account_id=account.id, identifier=identifier, role=role)
    return account


async def set_password_hash(db: AsyncSession, account: Account, password_hash: str) -> None:
    """Replace the password hash. Callers must also invalidate sessions."""
    account.password_hash = password_hash
    account.password_changed_at = datetime.now(timezone.utc)
    await db.flush()


async def touch_last_login(db: AsyncSession, account: Account) -> None:
    account.last_login = datetime.now(timezone.utc)
    await db.flush()


async def unbind_chat(db: AsyncSession, chat_id: int) -> int:
    """Remove a chat binding from whichever account holds it. Returns rows changed."""
    result = await db.execute(
        update(Account).where(Account.telegram_chat_id == chat_id).values(telegram_chat_id=None)
    )
    await db.flush()
    return result.rowcount  # type: ignore[return-value]
