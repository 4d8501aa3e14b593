"""
RS256 session tokens bound to a token version and a server-side session row.

A token is accepted only while its ``ver`` claim equals the account's live
``session_token_version`` and its ``sid`` names an active, unexpired session.
Bumping the version invalidates every token the account holds.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

import jwt
import structlog
from sqlalchemy import select, update

from eventportal.auth.errors import InvalidToken
from eventportal.db.models import Account, UserSession

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from eventportal.auth.audit import RequestContext
    from eventportal.config import Settings

logger = structlog.get_logger()

_private_key: str | None = None
_public_key: str | None = None


def _load_keys(settings: Settings) -> tuple[str, str]:
    """Load RSA keys from disk (cached after first call)."""
    global _private_key, _public_key  # noqa: PLW0603
    if _private_key is None or _public_key is None:
        _private_key = Path(settings.jwt_private_key_path).read_text()
        _public_key = Path(settings.jwt_public_key_path).read_text()
    return _private_key, _public_key


def reset_keys() -> None:
    """Reset cached keys (useful for testing)."""
    global _private_key, _public_key  # noqa: PLW0603
    _private_key = None
    _public_key = None


@dataclass(frozen=True)
class IssuedSession:
    token: str
    session_id: str
    expires_at: datetime
    expires_in: int


class SessionTokenIssuer:
    """Mints, verifies and invalidates bearer tokens."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.lifetime = timedelta(hours=settings.session_duration_hours)

    async def issue(
        self,
        db: AsyncSession,
        account: Account,
        context: RequestContext | None = None,
    ) -> IssuedSession:
        """Insert a session row and sign a token carrying the current version."""
        private_key, _ = _load_keys(self.settings)
        now = datetime.now(timezone.utc)
        expires_at = now + self.lifetime
        session = UserSession(
            session_id=str(uuid.uuid4()),
            account_id=account.id,
            ip_address=context.ip_address if context else None,
            user_agent=context.user_agent if context else None,
            created_at=now,
            expires_at=expires_at,
            last_activity=now,
            is_active=True,
        )
        db.add(session)
        await db.flush()

        payload: dict[str, Any] = {
            "sub": str(account.id),
            "identifier": account.identifier,
            "role": account.role,
            "ver": account.session_token_version,
            "sid": session.session_id,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": expires_at,
            "iss": self.settings.jwt_issuer,
            "type": "access",
        }
        token = jwt.encode(payload, private_key, algorithm=self.settings.jwt_algorithm)
        logger.info("session_issued", account_id=account.id, session_id=session.session_id)
        return IssuedSession(
            token=token,
            session_id=session.session_id,
            expires_at=expires_at,
            expires_in=int(self.lifetime.total_seconds()),
        )

    def decode(self, token: str) -> dict[str, Any]:
        """
        Verify signature, issuer, expiry and type.

        Raises:
            InvalidToken: If any check fails.
        """
        _, public_key = _load_keys(self.settings)
        try:
            payload: dict[str, Any] = jwt.decode(
                token,
                public_key,
                algorithms=[self.settings.jwt_algorithm],
                issuer=self.settings.jwt_issuer,
                options={"require": ["exp", "iat", "sub", "ver", "sid"]},
            )
        except jwt.ExpiredSignatureError:
            raise InvalidToken("Session has expired") from None
        except jwt.InvalidTokenError as e:
            logger.info("token_rejected", reason=str(e))
            raise InvalidToken from None

        if payload.get("type") != "access":
            raise InvalidToken
        return payload

    async def authenticate(self, db: AsyncSession, token: str) -> tuple[Account, dict[str, Any]]:
        """Resolve a bearer token to its account. Touches the session's last_activity."""
        claims = self.decode(token)
        try:
            account_id = int(claims["sub"])
        except (TypeError, ValueError):
            raise InvalidToken from None

        result = await db.execute(
            select(Account).where(Account.id == account_id).execution_options(populate_existing=True)
        )
        account = result.scalar_one_or_none()
        if account is None or not account.is_active:
            raise InvalidToken
        if claims["ver"] != account.session_token_version:
            logger.info("token_version_mismatch", account_id=account_id)
            raise InvalidToken("Session has been invalidated. Please log in again.")

        now = datetime.now(timezone.utc)
        result = await db.execute(
            update(UserSession)
            .where(UserSession.session_id == claims["sid"])
            .where(UserSession.account_id == account_id)
            .where(UserSession.is_active == True)  # noqa: E712
            .where(UserSession.expires_at > now)
            .values(last_activity=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidToken("Session has ended. Please log in again.")
        return account, claims

    async def invalidate_all(self, db: AsyncSession, account_id: int) -> int:
        """Bump the token version and end every session. Returns the new version."""
        result = await db.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(session_token_version=Account.session_token_version + 1)
            .returning(Account.session_token_version)
            .execution_options(synchronize_session=False)
        )
        version = result.scalar_one()
        await db.execute(
            update(UserSession)
            .where(UserSession.account_id == account_id)
            .where(UserSession.is_active == True)  # noqa: E712
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        logger.info("sessions_invalidated", account_id=account_id, token_version=version)
        return int(version)

    async def deactivate_session(self, db: AsyncSession, session_id: str) -> bool:
        """End one session (logout). The token version is untouched."""
        result = await db.execute(
            update(UserSession)
            .where(UserSession.session_id == session_id)
            .where(UserSession.is_active == True)  # noqa: E712
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
