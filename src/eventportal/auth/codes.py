"""
One-time codes: email verification codes, password-reset tokens and MFA codes.

Only the SHA-256 of the normalized code is stored; the plaintext is returned
once for out-of-band delivery. Consumption flips ``used`` with a
compare-and-set UPDATE, so two concurrent verifications of the same code
can never both succeed.
"""

from __future__ import annotations

import enum
import hashlib
import secrets
import string
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import delete, select, update

from eventportal.auth.errors import CodeAlreadyUsed, CodeExpired, InvalidCode
from eventportal.db.models import OneTimeCode

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from eventportal.auth.audit import RequestContext
    from eventportal.config import Settings

logger = structlog.get_logger()

MFA_CODE_LENGTH = 7
EMAIL_CODE_LENGTH = 6
_MFA_ALPHABET = string.ascii_uppercase + string.digits


class CodePurpose(str, enum.Enum):
    EMAIL_VERIFY = "email_verify"
    PASSWORD_RESET = "password_reset"
    MFA = "mfa"


def normalize_code(purpose: CodePurpose, code: str) -> str:
    """MFA codes compare case-insensitively; everything else is only trimmed."""
    code = code.strip()
    if purpose is CodePurpose.MFA:
        return code.upper()
    return code


def hash_code(purpose: CodePurpose, code: str) -> str:
    return hashlib.sha256(normalize_code(purpose, code).encode()).hexdigest()


def generate_code(purpose: CodePurpose) -> str:
    """Random code with the alphabet and length for ``purpose``."""
    if purpose is CodePurpose.MFA:
        return "".join(secrets.choice(_MFA_ALPHABET) for _ in range(MFA_CODE_LENGTH))
    if purpose is CodePurpose.EMAIL_VERIFY:
        return "".join(secrets.choice(string.digits) for _ in range(EMAIL_CODE_LENGTH))
    return secrets.token_urlsafe(48)


class OneTimeCodeIssuer:
    """Issues, consumes and sweeps one-time codes."""

    def __init__(self, settings: Settings) -> None:
        self._ttls = {
            CodePurpose.MFA: timedelta(minutes=settings.mfa_code_ttl_minutes),
            CodePurpose.EMAIL_VERIFY: timedelta(minutes=settings.email_verification_code_ttl_minutes),
            CodePurpose.PASSWORD_RESET: timedelta(minutes=settings.password_reset_token_ttl_minutes),
        }
        self._retention = timedelta(hours=settings.code_cleanup_retention_hours)

    # ----- issuing -----

    async def issue(
        self,
        db: AsyncSession,
        account_id: int,
        purpose: CodePurpose,
        ttl: timedelta | None = None,
        *,
        context: RequestContext | None = None,
    ) -> str:
        """
        Generate and persist a new code. Returns the plaintext code.

        Older unused codes of the same account and purpose are superseded.
        """
        now = datetime.now(timezone.utc)
        await db.execute(
            update(OneTimeCode)
            .where(OneTimeCode.account_id == account_id)
            .where(OneTimeCode.purpose == purpose.value)
            .where(OneTimeCode.used == False)  # noqa: E712
            .values(used=True, used_at=now)
            .execution_options(synchronize_session=False)
        )

        code = generate_code(purpose)
        row = OneTimeCode(
            account_id=account_id,
            purpose=purpose.value,
            code_hash=hash_code(purpose, code),
            created_at=now,
            expires_at=now + (ttl or self._ttls[purpose]),
            used=False,
            ip_address=context.ip_address if context else None,
            user_agent=context.user_agent if context else None,
        )
        db.add(row)
        await db.flush()
        logger.info("one_time_code_issued", account_id=account_id, purpose=purpose.value, code_id=row.id)
        return code

    async def has_recent_unused(
        self,
        db: AsyncSession,
        account_id: int,
        purpose: CodePurpose,
        within_seconds: int,
    ) -> bool:
        """True if an unused, unexpired code was issued less than ``within_seconds`` ago."""
        now = datetime.now(timezone.utc)
        result = await db.execute(
            select(OneTimeCode.id)
            .where(OneTimeCode.account_id == account_id)
            .where(OneTimeCode.purpose == purpose.value)
            .where(OneTimeCode.used == False)  # noqa: E712
            .where(OneTimeCode.expires_at > now)
            .where(OneTimeCode.created_at > now - timedelta(seconds=within_seconds))
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    # ----- consuming -----

    async def consume(
        self,
        db: AsyncSession,
        account_id: int,
        purpose: CodePurpose,
        submitted: str,
    ) -> OneTimeCode:
        """
        Validate and mark a code used.

        Raises:
            InvalidCode: No code of this account/purpose matches.
            CodeAlreadyUsed: The code was consumed or superseded, including by a
                concurrent caller.
            CodeExpired: The code is past ``expires_at``.
        """
        result = await db.execute(
            select(OneTimeCode)
            .where(OneTimeCode.account_id == account_id)
            .where(OneTimeCode.purpose == purpose.value)
            .where(OneTimeCode.code_hash == hash_code(purpose, submitted))
            .order_by(OneTimeCode.created_at.desc())
            .limit(1)
        )
        return await self._mark_used(db, result.scalar_one_or_none())

    async def consume_token(self, db: AsyncSession, purpose: CodePurpose, submitted: str) -> OneTimeCode:
        """Same as consume() but looked up by the code alone (reset-link tokens)."""
        result = await db.execute(
            select(OneTimeCode)
            .where(OneTimeCode.purpose == purpose.value)
            .where(OneTimeCode.code_hash == hash_code(purpose, submitted))
            .order_by(OneTimeCode.created_at.desc())
            .limit(1)
        )
        return await self._mark_used(db, result.scalar_one_or_none())

    async def _mark_used(self, db: AsyncSession, code: OneTimeCode | None) -> OneTimeCode:
        if code is None:
            raise InvalidCode
        if code.used:
            raise CodeAlreadyUsed
        now = datetime.now(timezone.utc)
        if code.expires_at <= now:
            raise CodeExpired

        # Compare-and-set: only one caller can flip used from false to true.
        result = await db.execute(
            update(OneTimeCode)
            .where(OneTimeCode.id == code.id)
            .where(OneTimeCode.used == False)  # noqa: E712
            .values(used=True, used_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning("one_time_code_race_lost", code_id=code.id, purpose=code.purpose)
            raise CodeAlreadyUsed
        code.used = True
        code.used_at = now
        logger.info("one_time_code_consumed", account_id=code.account_id, purpose=code.purpose)
        return code

    # ----- housekeeping -----

    async def revoke(self, db: AsyncSession, code_id: str) -> None:
        await db.execute(
            update(OneTimeCode)
            .where(OneTimeCode.id == code_id)
            .values(used=True, used_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )

    async def revoke_latest(self, db: AsyncSession, account_id: int, purpose: CodePurpose) -> None:
        """Revoke every unused code of this account and purpose."""
        await db.execute(
            update(OneTimeCode)
            .where(OneTimeCode.account_id == account_id)
            .where(OneTimeCode.purpose == purpose.value)
            .where(OneTimeCode.used == False)  # noqa: E712
            .values(used=True, used_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )

    async def cleanup_expired(self, db: AsyncSession, retention_hours: int | None = None) -> int:
        """Delete codes that expired before the retention cutoff. Returns rows deleted."""
        retention = timedelta(hours=retention_hours) if retention_hours is not None else self._retention
        cutoff = datetime.now(timezone.utc) - retention
        result = await db.execute(
            delete(OneTimeCode)
            .where(OneTimeCode.expires_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        deleted: int = result.rowcount  # type: ignore[assignment]
        if deleted:
            logger.info("one_time_codes_cleaned", deleted=deleted)
        return deleted
