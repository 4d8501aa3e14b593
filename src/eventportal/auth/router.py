"""Authentication router: all /api/v1/auth/* endpoints.

Errors are raised as AuthError subclasses and rendered by the handler in
``eventportal.middleware.error_handler``.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from eventportal.auth.audit import RequestContext
from eventportal.auth.dependencies import (
    CurrentSession,
    get_current_account,
    get_current_session,
    get_login_service,
    get_request_context,
    require_admin,
)
from eventportal.auth.schemas import (
    AccountResponse,
    AdminResetPasswordRequest,
    ChangePasswordRequest,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    ResetPasswordRequest,
    VerifyMfaRequest,
)
from eventportal.auth.service import LoginResult, LoginService
from eventportal.database import get_session
from eventportal.db.models import Account

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])

FORGOT_PASSWORD_ACK = (
    "If an eligible account exists for that identifier, a temporary password has been sent to its Telegram chat."
)


def _account_response(account: Account) -> AccountResponse:
    """Build an AccountResponse from an Account model."""
    return AccountResponse(
        id=account.id,
        identifier=account.identifier,
        email=account.email,
        role=account.role,
        email_verified=account.email_verified,
        telegram_linked=account.telegram_chat_id is not None,
        created_at=account.created_at,
        last_login=account.last_login,
    )


def _login_response(result: LoginResult) -> LoginResponse:
    if result.session is None:
        return LoginResponse(status=result.status.value, message=result.message)
    return LoginResponse(
        status=result.status.value,
        message=result.message,
        access_token=result.session.token,
        token_type="bearer",
        expires_in=result.session.expires_in,
        account=_account_response(result.account),
    )


# ---------------------------------------------------------------------------
# Two-step login
# ---------------------------------------------------------------------------


@router.post("/login", response_model=LoginResponse)
async def login(
    body: LoginRequest,
    context: RequestContext = Depends(get_request_context),
    service: LoginService = Depends(get_login_service),
    db: AsyncSession = Depends(get_session),
) -> LoginResponse:
    """Verify the password. Returns MFA_PENDING, or SESSION_ISSUED for admins."""
    result = await service.login(db, body.identifier, body.password, context)
    return _login_response(result)


@router.post("/verify-mfa", response_model=LoginResponse)
async def verify_mfa(
    body: VerifyMfaRequest,
    context: RequestContext = Depends(get_request_context),
    service: LoginService = Depends(get_login_service),
    db: AsyncSession = Depends(get_session),
) -> LoginResponse:
    """Exchange the Telegram code for a session token."""
    result = await service.verify_mfa(db, body.identifier, body.code, context)
    return _login_response(result)


# ---------------------------------------------------------------------------
# Password recovery
# ---------------------------------------------------------------------------


@router.post("/forgot-password", response_model=MessageResponse)
async def forgot_password(
    body: ForgotPasswordRequest,
    context: RequestContext = Depends(get_request_context),
    service: LoginService = Depends(get_login_service),
    db: AsyncSession = Depends(get_session),
) -> MessageResponse:
    """Send a temporary password over Telegram. Always returns the same acknowledgement."""
    await service.forgot_password(db, body.identifier, context)
    return MessageResponse(message=FORGOT_PASSWORD_ACK)


@router.post("/reset-password", response_model=MessageResponse)
async def reset_password(
    body: ResetPasswordRequest,
    context: RequestContext = Depends(get_request_context),
    service: LoginService = Depends(get_login_service),
    db: AsyncSession = Depends(get_session),
) -> MessageResponse:
    """Reset password with a token from a reset link."""
    await service.reset_password(db, body.token, body.new_password, context)
    return MessageResponse(message="Password has been reset. Please log in with your new password.")


@router.post("/admin/reset-password", response_model=MessageResponse)
async def admin_reset_password(
    body: AdminResetPasswordRequest,
    admin: Account = Depends(require_admin),
    context: RequestContext = Depends(get_request_context),
    service: LoginService = Depends(get_login_service),
    db: AsyncSession = Depends(get_session),
) -> MessageResponse:
    """Send a reset link to the account's Telegram chat and end its sessions."""
    await service.admin_reset_password(db, admin, body.identifier, context)
    return MessageResponse(message="A password reset link has been sent to the account's Telegram chat.")


# ---------------------------------------------------------------------------
# Authenticated account actions
# ---------------------------------------------------------------------------


@router.post("/change-password", response_model=MessageResponse)
async def change_password(
    body: ChangePasswordRequest,
    account: Account = Depends(get_current_account),
    context: RequestContext = Depends(get_request_context),
    service: LoginService = Depends(get_login_service),
    db: AsyncSession = Depends(get_session),
) -> MessageResponse:
    """Change password. Every session, including this one, is signed out."""
    await service.change_password(db, account, body.current_password, body.new_password, context)
    return MessageResponse(message="Password changed. Please log in again.")


@router.post("/logout", response_model=MessageResponse)
async def logout(
    current: CurrentSession = Depends(get_current_session),
    service: LoginService = Depends(get_login_service),
    db: AsyncSession = Depends(get_session),
) -> MessageResponse:
    """End the current session only."""
    await service.logout(db, current.account, current.claims)
    return MessageResponse(message="Logged out")


@router.post("/logout-all", response_model=MessageResponse)
async def logout_all(
    account: Account = Depends(get_current_account),
    context: RequestContext = Depends(get_request_context),
    service: LoginService = Depends(get_login_service),
    db: AsyncSession = Depends(get_session),
) -> MessageResponse:
    """End every session of this account."""
    await service.logout_all(db, account, context)
    return MessageResponse(message="All sessions have been logged out")


@router.get("/me", response_model=AccountResponse)
async def me(account: Account = Depends(get_current_account)) -> AccountResponse:
    """Get the authenticated account."""
    return _account_response(account)
