"""
Authentication error taxonomy.

Every error carries a stable ``code`` and a public ``message`` that is safe to
return to clients. Detailed reasons belong in the audit tables and the logs,
never in the message.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from eventportal.auth.password import PolicyViolation


class AuthError(Exception):
    """Base class for all authentication failures."""

    status_code = 400
    code = "auth_error"
    message = "Authentication failed"

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)

    def extra(self) -> dict[str, Any]:
        """Additional public fields rendered alongside detail/code."""
        return {}

    def headers(self) -> dict[str, str] | None:
        return None


class ValidationError(AuthError):
    """Malformed input: bad identifier format, bad code shape, weak password."""

    status_code = 400
    code = "validation_error"
    message = "Invalid input"


class PasswordStrengthError(ValidationError):
    """Raised when a password fails one or more policy rules."""

    code = "weak_password"
    message = "Password does not meet the requirements"

    def __init__(self, violations: list[PolicyViolation]) -> None:
        self.violations = violations
        super().__init__(violations[0].message if len(violations) == 1 else None)

    def extra(self) -> dict[str, Any]:
        return {"violations": [{"rule": v.rule, "message": v.message} for v in self.violations]}


class InvalidCredentials(AuthError):
    """Wrong identifier or password. Indistinguishable from an unknown account."""

    status_code = 401
    code = "invalid_credentials"
    message = "Invalid credentials"


class AccountLocked(AuthError):
    """Too many failed attempts; the account is locked until ``locked_until``."""

    status_code = 423
    code = "account_locked"

    def __init__(self, remaining_minutes: int, locked_until: datetime) -> None:
        self.remaining_minutes = remaining_minutes
        self.locked_until = locked_until
        super().__init__(
            f"Account is temporarily locked. Try again in {remaining_minutes} minute"
            f"{'' if remaining_minutes == 1 else 's'}."
        )

    def extra(self) -> dict[str, Any]:
        return {"remaining_minutes": self.remaining_minutes, "locked_until": self.locked_until.isoformat()}

    def headers(self) -> dict[str, str] | None:
        seconds = (self.locked_until - datetime.now(timezone.utc)).total_seconds()
        return {"Retry-After": str(max(1, math.ceil(seconds)))}


class VerificationRequired(AuthError):
    status_code = 403
    code = "verification_required"
    message = "Please complete account verification before logging in"

    def extra(self) -> dict[str, Any]:
        return {"requires_verification": True}


class TelegramLinkRequired(AuthError):
    status_code = 403
    code = "telegram_link_required"
    message = "Link your Telegram account with the bot before logging in"

    def extra(self) -> dict[str, Any]:
        return {"requires_telegram_link": True}


class InvalidOrExpiredCode(AuthError):
    """Base for one-time code failures. The public message never says which."""

    status_code = 401
    code = "invalid_or_expired_code"
    message = "Invalid or expired code"
    reason = "invalid or expired code"

    def __init__(self) -> None:
        super().__init__(InvalidOrExpiredCode.message)


class InvalidCode(InvalidOrExpiredCode):
    reason = "code mismatch"


class CodeExpired(InvalidOrExpiredCode):
    reason = "code expired"


class CodeAlreadyUsed(InvalidOrExpiredCode):
    reason = "code already used"


class AccountNotFound(AuthError):
    """Only raised on admin-only paths, where revealing existence is acceptable."""

    status_code = 404
    code = "account_not_found"
    message = "Account not found"


class DeliveryFailure(AuthError):
    """The chat channel could not deliver a message."""

    status_code = 502
    code = "delivery_failure"
    message = "Could not deliver the message to your Telegram account. Please try again later."


class AuthSystemError(AuthError):
    """Unexpected persistence or transport failure."""

    status_code = 500
    code = "system_error"
    message = "An unexpected error occurred. Please try again later."


class InvalidToken(AuthError):
    """Bearer token rejected."""

    status_code = 401
    code = "invalid_token"
    message = "Invalid or expired session"

    def headers(self) -> dict[str, str] | None:
        return {"WWW-Authenticate": "Bearer"}
