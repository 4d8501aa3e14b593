"""
Login orchestration and password flows.

Login is two round-trips: password verification, then an MFA code delivered
over Telegram. Administrators skip the second step. Every outcome of either
step is appended to ``login_attempts``.

The service commits its own transactions: failure counters and audit rows
must persist even when the call ends in an error. Chat delivery always
happens outside an open write transaction, because a blocked chat makes the
channel unbind it in a separate transaction.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from eventportal.auth import accounts
from eventportal.auth.audit import RequestContext, record_login_attempt, record_security_event
from eventportal.auth.codes import CodePurpose, OneTimeCodeIssuer
from eventportal.auth.errors import (
    AccountLocked,
    AccountNotFound,
    DeliveryFailure,
    InvalidCredentials,
    InvalidOrExpiredCode,
    TelegramLinkRequired,
    ValidationError,
    VerificationRequired,
)
from eventportal.auth.lockout import LockoutGuard
from eventportal.auth.password import (
    check_needs_rehash,
    generate_temporary_password,
    hash_password,
    validate_password_strength,
    verify_password,
)
from eventportal.auth.tokens import IssuedSession, SessionTokenIssuer
from eventportal.telegram import messages

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from eventportal.config import Settings
    from eventportal.db.models import Account
    from eventportal.telegram.channel import ChatChannel

logger = structlog.get_logger()

_MFA_CODE = re.compile(r"^[A-Z0-9]{7}$")


class LoginStatus(str, enum.Enum):
    MFA_PENDING = "MFA_PENDING"
    SESSION_ISSUED = "SESSION_ISSUED"


@dataclass(frozen=True)
class LoginResult:
    status: LoginStatus
    account: Account
    session: IssuedSession | None = None
    message: str | None = None


class LoginService:
    """Composes the credential store, lockout guard, codes, channel and tokens."""

    def __init__(
        self,
        settings: Settings,
        channel: ChatChannel,
        *,
        lockout: LockoutGuard | None = None,
        codes: OneTimeCodeIssuer | None = None,
        tokens: SessionTokenIssuer | None = None,
    ) -> None:
        self.settings = settings
        self.channel = channel
        self.lockout = lockout or LockoutGuard(settings)
        self.codes = codes or OneTimeCodeIssuer(settings)
        self.tokens = tokens or SessionTokenIssuer(settings)

    # ----- helpers -----

    async def _raise_if_locked(self, db: AsyncSession, key: str, context: RequestContext | None) -> None:
        status = await self.lockout.check_lockout(db, key)
        if status.locked_until is None or status.remaining_minutes is None:
            return
        await record_login_attempt(db, key, False, "account locked", context)
        await db.commit()
        raise AccountLocked(status.remaining_minutes, status.locked_until)

    async def _fail(
        self,
        db: AsyncSession,
        key: str,
        reason: str,
        context: RequestContext | None,
        account: Account | None = None,
    ) -> None:
        """Record a counted failure and commit."""
        count = await self.lockout.record_failure(db, key)
        await record_login_attempt(db, key, False, reason, context)
        if account is not None and count >= self.lockout.threshold:
            await record_security_event(
                db,
                "ACCOUNT_LOCKED",
                f"Account locked after {count} failed attempts",
                account_id=account.id,
                metadata={"failed_attempts": count, "reason": reason},
                context=context,
            )
        await db.commit()

    async def _issue_session(
        self,
        db: AsyncSession,
        account: Account,
        key: str,
        reason: str,
        context: RequestContext | None,
    ) -> LoginResult:
        await self.lockout.record_success(db, key)
        issued = await self.tokens.issue(db, account, context)
        await accounts.touch_last_login(db, account)
        await record_login_attempt(db, key, True, reason, context)
        await record_security_event(
            db,
            "LOGIN_SUCCESS",
            reason,
            account_id=account.id,
            metadata={"session_id": issued.session_id},
            context=context,
        )
        await db.commit()
        return LoginResult(status=LoginStatus.SESSION_ISSUED, account=account, session=issued)

    # ----- step 1: password -----

    async def login(
        self,
        db: AsyncSession,
        identifier: str,
        password: str,
        context: RequestContext | None = None,
    ) -> LoginResult:
        """
        Verify the password and start the MFA challenge.

        Raises:
            AccountLocked, InvalidCredentials, VerificationRequired,
            TelegramLinkRequired, DeliveryFailure.
        """
        key = identifier.strip().lower()
        if not key or not password:
            raise ValidationError("Identifier and password are required")

        await self._raise_if_locked(db, key, context)

        account = await accounts.get_account_by_login_key(db, key)
        if account is None:
            await self._fail(db, key, "unknown identifier", context)
            raise InvalidCredentials
        if not account.is_active:
            await self._fail(db, key, "account inactive", context, account)
            raise InvalidCredentials
        if not verify_password(password, account.password_hash):
            await self._fail(db, key, "invalid password", context, account)
            raise InvalidCredentials

        if not account.email_verified:
            await record_login_attempt(db, key, False, "account not verified", context)
            await db.commit()
            raise VerificationRequired

        if check_needs_rehash(account.password_hash):
            account.password_hash = hash_password(password)
            logger.info("password_rehashed", account_id=account.id)

        if account.role == accounts.ROLE_ADMIN:
            logger.info("mfa_bypassed", account_id=account.id, role=account.role)
            return await self._issue_session(db, account, key, "admin login (MFA bypassed)", context)

        if account.telegram_chat_id is None:
            await record_login_attempt(db, key, False, "telegram not linked", context)
            await db.commit()
            raise TelegramLinkRequired

        return await self._start_mfa(db, account, account.telegram_chat_id, key, context)

    async def _start_mfa(
        self,
        db: AsyncSession,
        account: Account,
        chat_id: int,
        key: str,
        context: RequestContext | None,
    ) -> LoginResult:
        cooldown = self.settings.mfa_resend_cooldown_seconds
        if await self.codes.has_recent_unused(db, account.id, CodePurpose.MFA, cooldown):
            await record_login_attempt(db, key, False, "password verified, MFA code already sent", context)
            await db.commit()
            logger.info("mfa_code_cooldown", account_id=account.id)
            return LoginResult(
                status=LoginStatus.MFA_PENDING,
                account=account,
                message="A code was sent recently. Check your Telegram chat.",
            )

        code = await self.codes.issue(db, account.id, CodePurpose.MFA, context=context)
        await record_login_attempt(db, key, False, "password verified, MFA pending", context)
        # The code must be committed before the user can possibly receive it.
        await db.commit()

        delivered = await self.channel.send(chat_id, messages.mfa_code(code, self.settings.mfa_code_ttl_minutes))
        if not delivered:
            await self.codes.revoke_latest(db, account.id, CodePurpose.MFA)
            await record_security_event(
                db,
                "MFA_DELIVERY_FAILED",
                "Could not deliver MFA code over Telegram",
                account_id=account.id,
                context=context,
            )
            await db.commit()
            logger.warning("mfa_delivery_failed", account_id=account.id)
            raise DeliveryFailure

        logger.info("mfa_code_sent", account_id=account.id)
        return LoginResult(
            status=LoginStatus.MFA_PENDING,
            account=account,
            message="A login code has been sent to your Telegram chat.",
        )

    # ----- step 2: MFA code -----

    async def verify_mfa(
        self,
        db: AsyncSession,
        identifier: str,
        code: str,
        context: RequestContext | None = None,
    ) -> LoginResult:
        """
        Consume the MFA code and mint a session.

        Raises:
            ValidationError, AccountLocked, InvalidOrExpiredCode.
        """
        key = identifier.strip().lower()
        if not key or not _MFA_CODE.fullmatch(code.strip().upper()):
            raise ValidationError("Code must be 7 letters or digits")

        await self._raise_if_locked(db, key, context)

        account = await accounts.get_account_by_login_key(db, key)
        if account is None or not account.is_active:
            await self._fail(db, key, "MFA for unknown or inactive account", context)
            raise InvalidOrExpiredCode

        try:
            await self.codes.consume(db, account.id, CodePurpose.MFA, code)
        except InvalidOrExpiredCode as e:
            await self._fail(db, key, f"MFA failed: {e.reason}", context, account)
            raise

        return await self._issue_session(db, account, key, "MFA verified", context)

    # ----- password recovery -----

    async def forgot_password(self, db: AsyncSession, identifier: str, context: RequestContext | None = None) -> None:
        """
        Send a temporary password over Telegram.

        Silently does nothing for unknown or ineligible accounts so callers
        cannot probe which identifiers exist.
        """
        key = identifier.strip().lower()
        account = await accounts.get_account_by_login_key(db, key)
        if (
            account is None
            or not account.is_active
            or not account.email_verified
            or account.telegram_chat_id is None
        ):
            await record_security_event(
                db,
                "FORGOT_PASSWORD_IGNORED",
                "Password reset requested for an unknown or ineligible account",
                account_id=account.id if account is not None else None,
                metadata={"identifier": key},
                context=context,
            )
            await db.commit()
            return

        temporary = generate_temporary_password()
        delivered = await self.channel.send(account.telegram_chat_id, messages.temporary_password(temporary))
        if not delivered:
            await record_security_event(
                db,
                "FORGOT_PASSWORD_DELIVERY_FAILED",
                "Could not deliver temporary password over Telegram",
                account_id=account.id,
                context=context,
            )
            await db.commit()
            raise DeliveryFailure

        await accounts.set_password_hash(db, account, hash_password(temporary))
        await self.tokens.invalidate_all(db, account.id)
        await self.lockout.record_success(db, account.identifier)
        await record_security_event(
            db,
            "PASSWORD_RESET_TEMPORARY",
            "Temporary password issued over Telegram",
            account_id=account.id,
            context=context,
        )
        await db.commit()
        logger.info("temporary_password_issued", account_id=account.id)

    async def reset_password(
        self,
        db: AsyncSession,
        token: str,
        new_password: str,
        context: RequestContext | None = None,
    ) -> Account:
        """Consume a password-reset token and set the new password."""
        validate_password_strength(new_password)
        code = await self.codes.consume_token(db, CodePurpose.PASSWORD_RESET, token)
        account = await accounts.get_account_by_id(db, code.account_id)
        if account is None or not account.is_active:
            await db.rollback()
            raise InvalidOrExpiredCode

        await accounts.set_password_hash(db, account, hash_password(new_password))
        await self.tokens.invalidate_all(db, account.id)
        await self.lockout.record_success(db, account.identifier)
        await record_security_event(
            db,
            "PASSWORD_RESET",
            "Password reset with a reset token",
            account_id=account.id,
            context=context,
        )
        await db.commit()
        logger.info("password_reset", account_id=account.id)
        return account

    async def admin_reset_password(
        self,
        db: AsyncSession,
        admin: Account,
        identifier: str,
        context: RequestContext | None = None,
    ) -> None:
        """Send a reset link to the target's Telegram chat and end their sessions."""
        target = await accounts.get_account_by_login_key(db, identifier)
        if target is None:
            raise AccountNotFound
        if target.telegram_chat_id is None:
            raise TelegramLinkRequired("This account has no linked Telegram chat")

        token = await self.codes.issue(db, target.id, CodePurpose.PASSWORD_RESET, context=context)
        await self.tokens.invalidate_all(db, target.id)
        await record_security_event(
            db,
            "ADMIN_PASSWORD_RESET",
            f"Password reset initiated by admin {admin.identifier}",
            account_id=target.id,
            metadata={"admin_id": admin.id},
            context=context,
        )
        await db.commit()

        url = f"{self.settings.frontend_base_url.rstrip('/')}/reset-password?token={token}"
        ttl = self.settings.password_reset_token_ttl_minutes
        if not await self.channel.send(target.telegram_chat_id, messages.reset_link(url, ttl)):
            await self.codes.revoke_latest(db, target.id, CodePurpose.PASSWORD_RESET)
            await db.commit()
            raise DeliveryFailure
        logger.info("admin_password_reset", account_id=target.id, admin_id=admin.id)

    # ----- authenticated account actions -----

    async def change_password(
        self,
        db: AsyncSession,
        account: Account,
        current_password: str,
        new_password: str,
        context: RequestContext | None = None,
    ) -> None:
        """Change the password and end every session, including the caller's."""
        if not verify_password(current_password, account.password_hash):
            await record_security_event(
                db,
                "PASSWORD_CHANGE_FAILED",
                "Current password did not match",
                account_id=account.id,
                context=context,
            )
            await db.commit()
            raise InvalidCredentials("Current password is incorrect")
        if current_password == new_password:
            raise ValidationError("New password must be different from the current password")
        validate_password_strength(new_password)

        await accounts.set_password_hash(db, account, hash_password(new_password))
        await self.tokens.invalidate_all(db, account.id)
        await record_security_event(
            db,
            "PASSWORD_CHANGED",
            "Password changed by the account owner",
            account_id=account.id,
            context=context,
        )
        await db.commit()
        logger.info("password_changed", account_id=account.id)

    async def logout(self, db: AsyncSession, account: Account, claims: dict[str, Any]) -> None:
        """End the current session only. Other sessions and the token version are untouched."""
        await self.tokens.deactivate_session(db, claims["sid"])
        await db.commit()
        logger.info("logout", account_id=account.id, session_id=claims["sid"])

    async def logout_all(self, db: AsyncSession, account: Account, context: RequestContext | None = None) -> int:
        version = await self.tokens.invalidate_all(db, account.id)
        await record_security_event(
            db,
            "LOGOUT_ALL",
            "All sessions ended by the account owner",
            account_id=account.id,
            context=context,
        )
        await db.commit()
        return version
