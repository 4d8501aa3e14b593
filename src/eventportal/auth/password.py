"""
Password hashing and the shared password policy.

Hashing uses argon2id. The policy is an ordered tuple of named rules so the
chat signup, reset and change-password paths all report the same structured
violations.
"""

from __future__ import annotations

import re
import secrets
import string
from collections.abc import Callable
from dataclasses import dataclass

import argon2

from eventportal.auth.errors import PasswordStrengthError
from eventportal.config import get_settings

_hasher = argon2.PasswordHasher(
    time_cost=2,
    memory_cost=65536,  # 64 MB
    parallelism=1,
    hash_len=32,
    salt_len=16,
    type=argon2.Type.ID,  # argon2id
)

SPECIAL_CHARACTERS = '!@#$%^&*(),.?":{}|<>'

_REPEATED_CHAR = re.compile(r"(.)\1{2,}")
_COMMON_PATTERN = re.compile(r"123|abc|qwe|password|admin|user", re.IGNORECASE)


def hash_password(password: str) -> str:
    """Hash a password using argon2id. Returns the full hash string."""
    return _hasher.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify a password against its argon2id hash.

    Returns True if the password matches. Never raises on mismatch.
    """
    try:
        return _hasher.verify(password_hash, password)
    except argon2.exceptions.VerifyMismatchError:
        return False
    except argon2.exceptions.InvalidHashError:
        return False


def check_needs_rehash(password_hash: str) -> bool:
    """Check if the hash needs to be updated (parameters changed)."""
    return _hasher.check_needs_rehash(password_hash)


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PolicyViolation:
    rule: str
    message: str


@dataclass(frozen=True)
class PasswordRule:
    """A named predicate. ``check`` returns True when the password passes."""

    name: str
    description: str
    check: Callable[[str], bool]


def _min_length(password: str) -> bool:
    return len(password) >= get_settings().password_min_length


def _max_length(password: str) -> bool:
    return len(password) <= get_settings().password_max_length


PASSWORD_RULES: tuple[PasswordRule, ...] = (
    PasswordRule("min_length", "At least {min} characters long", _min_length),
    PasswordRule("max_length", "At most {max} characters long", _max_length),
    PasswordRule("uppercase", "At least one uppercase letter", lambda p: any(c.isupper() for c in p)),
    PasswordRule("lowercase", "At least one lowercase letter", lambda p: any(c.islower() for c in p)),
    PasswordRule("digit", "At least one number", lambda p: any(c.isdigit() for c in p)),
    PasswordRule(
        "special",
        f"At least one special character ({SPECIAL_CHARACTERS})",
        lambda p: any(c in SPECIAL_CHARACTERS for c in p),
    ),
    PasswordRule(
        "no_repeats",
        "No character repeated three or more times in a row",
        lambda p: _REPEATED_CHAR.search(p) is None,
    ),
    PasswordRule(
        "no_common_patterns",
        "No common patterns (123, abc, qwe, password, admin, user)",
        lambda p: _COMMON_PATTERN.search(p) is None,
    ),
)


def describe_rule(rule: PasswordRule) -> str:
    settings = get_settings()
    # Substitute only the length placeholders; the special-character list contains literal braces.
    return rule.description.replace("{min}", str(settings.password_min_length)).replace(
        "{max}", str(settings.password_max_length)
    )


def check_password(password: str) -> list[PolicyViolation]:
    """Run every rule in order. Returns the violations (empty when the password is acceptable)."""
    return [
        PolicyViolation(rule=rule.name, message=describe_rule(rule))
        for rule in PASSWORD_RULES
        if not rule.check(password)
    ]


def validate_password_strength(password: str) -> None:
    """
    Validate a password against the policy.

    Raises PasswordStrengthError carrying every violated rule.
    """
    violations = check_password(password)
    if violations:
        raise PasswordStrengthError(violations)


# ---------------------------------------------------------------------------
# Temporary passwords (forgot-password flow)
# ---------------------------------------------------------------------------

_TEMP_SPECIALS = "!@#$%^&*"
_TEMP_CLASSES = (string.ascii_uppercase, string.ascii_lowercase, string.digits, _TEMP_SPECIALS)
_TEMP_ALPHABET = "".join(_TEMP_CLASSES)


def generate_temporary_password(length: int | None = None) -> str:
    """
    Generate a random password containing every character class.

    Regenerated until it passes the policy (the random draw can produce a
    triple repeat or a common pattern).
    """
    length = max(length or get_settings().password_min_length, len(_TEMP_CLASSES))
    rng = secrets.SystemRandom()
    while True:
        chars = [secrets.choice(cls) for cls in _TEMP_CLASSES]
        chars += [secrets.choice(_TEMP_ALPHABET) for _ in range(length - len(chars))]
        rng.shuffle(chars)
        candidate = "".join(chars)
        if not check_password(candidate):
            return candidate
