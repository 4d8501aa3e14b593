"""FastAPI authentication dependencies."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from eventportal.auth.accounts import ROLE_ADMIN
from eventportal.auth.audit import RequestContext
from eventportal.auth.errors import InvalidToken
from eventportal.auth.service import LoginService
from eventportal.auth.tokens import SessionTokenIssuer
from eventportal.config import Settings, get_settings
from eventportal.database import get_session
from eventportal.db.models import Account
from eventportal.telegram.channel import ChatChannel, DisabledChannel

_bearer = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class CurrentSession:
    account: Account
    claims: dict[str, Any]


def get_request_context(request: Request) -> RequestContext:
    return RequestContext.from_request(request)


def get_chat_channel(request: Request) -> ChatChannel:
    """The channel created at startup (a DisabledChannel without a bot token)."""
    return getattr(request.app.state, "chat_channel", None) or DisabledChannel()


def get_login_service(
    channel: ChatChannel = Depends(get_chat_channel),
    settings: Settings = Depends(get_settings),
) -> LoginService:
    return LoginService(settings, channel)


async def get_current_session(
    credentials: HTTPAuthorizationCredentials | None = Security(_bearer),
    db: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> CurrentSession:
    """
    Verify the bearer token against its session row and token version.

    Raises InvalidToken (401) on any failure.
    """
    if credentials is None:
        raise InvalidToken("Not authenticated")
    account, claims = await SessionTokenIssuer(settings).authenticate(db, credentials.credentials)
    # Persist last_activity before the handler runs.
    await db.commit()
    return CurrentSession(account=account, claims=claims)


async def get_current_account(current: CurrentSession = Depends(get_current_session)) -> Account:
    return current.account


async def require_admin(account: Account = Depends(get_current_account)) -> Account:
    if account.role != ROLE_ADMIN:
        raise HTTPException(status_code=403, detail="Admin access required")
    return account
