"""Institution identifier parsing and derived email addresses."""

from __future__ import annotations

import re
from functools import lru_cache

from eventportal.config import get_settings


@lru_cache(maxsize=8)
def _pattern(raw: str) -> re.Pattern[str]:
    return re.compile(raw)


def is_valid_identifier(value: str) -> bool:
    """Check the institution ID format (e.g. ``1009999``)."""
    settings = get_settings()
    return bool(_pattern(settings.identifier_pattern).fullmatch(value.strip()))


def derived_email(identifier: str) -> str:
    """The institution mailbox for an identifier. Always recomputed, never trusted from input."""
    settings = get_settings()
    return f"{identifier.strip()}@{settings.institution_email_domain}".lower()


def normalize_login_key(value: str) -> str:
    """
    Normalize a login key.

    Accepts either the raw identifier or the derived email. Returns the
    identifier when the email is on the institution domain, otherwise the
    lower-cased input unchanged (so lookups simply miss).
    """
    settings = get_settings()
    key = value.strip().lower()
    local, sep, domain = key.partition("@")
    if sep and domain == settings.institution_email_domain.lower():
        return local
    return key
