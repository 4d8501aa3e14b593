"""
Telegram message texts.

All messages use Telegram's HTML parse mode. Anything that originates from a
user (identifiers typed into the chat, event titles) is escaped.
"""

from __future__ import annotations

from collections.abc import Sequence
from html import escape
from typing import TYPE_CHECKING

from eventportal.config import get_settings

if TYPE_CHECKING:
    from eventportal.auth.password import PolicyViolation
    from eventportal.events.store import UpcomingEvent

COMMANDS_HELP = (
    "/signup &lt;student_id&gt; - Create your portal account\n"
    "/status - Your account and upcoming events\n"
    "/unregister - Unlink this Telegram account\n"
    "/help - Show this help message"
)


def _portal() -> str:
    return escape(f"{get_settings().institution_name} Event Portal")


# ----- general -----


def welcome(identifier: str | None) -> str:
    if identifier:
        return (
            f"<b>Welcome back to the {_portal()} bot!</b>\n\n"
            f"This chat is linked to student ID <code>{escape(identifier)}</code>. "
            "Login codes for the portal will be sent here.\n\n"
            f"{COMMANDS_HELP}"
        )
    return (
        f"<b>Welcome to the {_portal()} bot!</b>\n\n"
        "To create your portal account, send:\n"
        "<code>/signup YOUR_STUDENT_ID</code>\n"
        "Example: <code>/signup 1009999</code>\n\n"
        f"{COMMANDS_HELP}"
    )


def help_text() -> str:
    return (
        f"<b>{_portal()} bot</b>\n\n"
        f"{COMMANDS_HELP}\n\n"
        "<b>How it works</b>\n"
        "1. Start signup with your student ID\n"
        "2. Reply with a password that meets the requirements\n"
        "3. Log in on the portal; your login codes arrive in this chat\n\n"
        "Each Telegram account can be linked to exactly one student ID."
    )


def unknown_command() -> str:
    return "Unknown command. Send /help to see what I can do."


def system_error() -> str:
    return "Sorry, something went wrong on our side. Please try again in a few minutes."


# ----- signup -----


def signup_usage() -> str:
    return "Please include your student ID.\nExample: <code>/signup 1009999</code>"


def invalid_identifier(text: str) -> str:
    return (
        f"<b>Invalid student ID</b>\n\n"
        f"<code>{escape(text)}</code> is not a valid student ID.\n"
        "Example: <code>/signup 1009999</code>"
    )


def chat_already_linked(identifier: str) -> str:
    return (
        "<b>This Telegram account is already linked</b>\n\n"
        f"It is linked to student ID <code>{escape(identifier)}</code>. "
        "Use /unregister first if you want to link a different account."
    )


def already_registered(identifier: str) -> str:
    return (
        f"Student ID <code>{escape(identifier)}</code> is already registered.\n"
        "Log in on the portal instead. If you forgot your password, use "
        "\"Forgot password\" on the login page."
    )


def contact_support(identifier: str) -> str:
    return (
        f"Student ID <code>{escape(identifier)}</code> has an account that was never verified.\n"
        "Please contact support to finish setting it up."
    )


def password_prompt(identifier: str, requirements: Sequence[str]) -> str:
    rules = "\n".join(f"• {escape(r)}" for r in requirements)
    minutes = get_settings().signup_session_timeout_minutes
    return (
        f"<b>Creating account for {escape(identifier)}</b>\n\n"
        "Reply with the password you want to use. It must have:\n"
        f"{rules}\n\n"
        f"Your message will be deleted from this chat. This signup expires in {minutes} minutes."
    )


def password_rejected(violations: Sequence[PolicyViolation]) -> str:
    problems = "\n".join(f"• {escape(v.message)}" for v in violations)
    return f"<b>That password does not meet the requirements</b>\n\n{problems}\n\nPlease send another password."


def password_starts_with_slash() -> str:
    return (
        "Passwords cannot start with <code>/</code> because that is how bot commands begin. "
        "Your message was deleted. Please send another password."
    )


def signup_complete(identifier: str, email: str, enrolled: int) -> str:
    events = f"You have been enrolled in {enrolled} mandatory event{'' if enrolled == 1 else 's'}.\n" if enrolled else ""
    return (
        "<b>Account created!</b>\n\n"
        f"Student ID: <code>{escape(identifier)}</code>\n"
        f"Email: {escape(email)}\n\n"
        f"{events}"
        "Log in on the portal with your student ID and password. "
        "Your login codes will be sent to this chat."
    )


def signup_conflict() -> str:
    return (
        "This student ID or Telegram account was registered by another request in the meantime. "
        "Send /status to check, or contact support."
    )


def signup_timed_out() -> str:
    return "Your signup session expired. Send /signup YOUR_STUDENT_ID to start again."


def signup_restarted(previous_identifier: str) -> str:
    return f"The pending signup for <code>{escape(previous_identifier)}</code> was cancelled."


# ----- status / unregister -----


def status_not_linked() -> str:
    return "This Telegram account is not linked to any portal account.\nUse <code>/signup YOUR_STUDENT_ID</code> to get started."


def status(identifier: str, email: str, events: Sequence[UpcomingEvent]) -> str:
    lines = [
        "<b>Account status</b>\n",
        f"Student ID: <code>{escape(identifier)}</code>",
        f"Email: {escape(email)}\n",
        f"<b>Upcoming events ({len(events)})</b>",
    ]
    if not events:
        lines.append("No upcoming events.")
    for i, event in enumerate(events, start=1):
        marker = "🔴" if event.event_type.lower() == "mandatory" else "🟠"
        when = event.event_date.isoformat()
        if event.start_time is not None:
            when += f" at {event.start_time.strftime('%H:%M')}"
        lines.append(f"{i}. {marker} {escape(event.title)}\n   {when}")
        if event.location:
            lines.append(f"   {escape(event.location)}")
    return "\n".join(lines)


def unregister_not_linked() -> str:
    return "This Telegram account is not linked to any portal account."


def unregistered(identifier: str) -> str:
    return (
        f"<b>Unlinked</b>\n\nThis chat is no longer linked to student ID <code>{escape(identifier)}</code>.\n"
        "You will not be able to receive login codes until support relinks your account."
    )


# ----- login / password delivery -----


def mfa_code(code: str, ttl_minutes: int) -> str:
    return (
        f"<b>{_portal()} login code</b>\n\n"
        f"<code>{escape(code)}</code>\n\n"
        f"This code expires in {ttl_minutes} minutes. If you did not try to log in, "
        "change your password."
    )


def temporary_password(password: str) -> str:
    return (
        "<b>Password reset</b>\n\n"
        f"Your temporary password: <code>{escape(password)}</code>\n\n"
        "All your sessions have been signed out. Log in and change this password right away."
    )


def reset_link(url: str, ttl_minutes: int) -> str:
    return (
        "<b>Password reset</b>\n\n"
        "An administrator started a password reset for your account.\n"
        f'<a href="{escape(url, quote=True)}">Choose a new password</a>\n\n'
        f"The link expires in {ttl_minutes} minutes."
    )
