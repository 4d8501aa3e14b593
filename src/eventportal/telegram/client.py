"""
Minimal async Telegram Bot API client over httpx.

Only the methods the portal bot needs: getMe, getUpdates, sendMessage and
deleteMessage. Bot API level failures (``ok: false``) raise TelegramApiError
with the numeric ``error_code``; transport failures surface as httpx.HTTPError.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

logger = structlog.get_logger()


class TelegramApiError(Exception):
    """The Bot API answered with ``ok: false``."""

    def __init__(self, error_code: int, description: str) -> None:
        self.error_code = error_code
        self.description = description
        super().__init__(f"Telegram API error {error_code}: {description}")

    @property
    def is_chat_unreachable(self) -> bool:
        """The bot was blocked or the chat no longer exists."""
        if self.error_code == 403:
            return True
        return self.error_code == 400 and "chat not found" in self.description.lower()


class TelegramBotClient:
    """Thin wrapper around ``https://api.telegram.org/bot<token>/<method>``."""

    def __init__(
        self,
        token: str,
        api_base: str = "https://api.telegram.org",
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not token:
            msg = "Telegram bot token is not configured"
            raise ValueError(msg)
        self._base_url = f"{api_base.rstrip('/')}/bot{token}/"
        self._timeout = timeout
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _call(self, method: str, payload: dict[str, Any] | None = None, timeout: float | None = None) -> Any:  # noqa: ANN401
        response = await self._http.post(
            self._base_url + method,
            json=payload or {},
            timeout=timeout or self._timeout,
        )
        try:
            body = response.json()
        except ValueError:
            response.raise_for_status()
            raise
        if not body.get("ok"):
            raise TelegramApiError(
                int(body.get("error_code", response.status_code)),
                str(body.get("description", "unknown error")),
            )
        return body.get("result")

    async def get_me(self) -> dict[str, Any]:
        return await self._call("getMe")

    async def get_updates(self, offset: int | None = None, timeout: int = 30) -> list[dict[str, Any]]:
        """Long-poll for updates. The HTTP timeout is padded past the poll timeout."""
        payload: dict[str, Any] = {"timeout": timeout, "allowed_updates": ["message"]}
        if offset is not None:
            payload["offset"] = offset
        return await self._call("getUpdates", payload, timeout=timeout + self._timeout)

    async def send_message(self, chat_id: int, text: str, parse_mode: str | None = "HTML") -> dict[str, Any]:
        payload: dict[str, Any] = {"chat_id": chat_id, "text": text, "disable_web_page_preview": True}
        if parse_mode:
            payload["parse_mode"] = parse_mode
        return await self._call("sendMessage", payload)

    async def delete_message(self, chat_id: int, message_id: int) -> bool:
        return bool(await self._call("deleteMessage", {"chat_id": chat_id, "message_id": message_id}))
