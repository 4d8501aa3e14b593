"""
Pending chat signups, keyed by chat id.

Two stores share one interface: an in-process dict (single bot process) and
Redis (JSON value with a TTL). Both keep ``created_at`` so the conversation
can enforce its own timeout on every access regardless of backend.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Protocol

from eventportal.redis_client import redis_key

if TYPE_CHECKING:
    from redis.asyncio import Redis

AWAITING_PASSWORD = "awaiting_password"


@dataclass(frozen=True)
class SignupSession:
    chat_id: int
    target_identifier: str
    created_at: datetime
    step: str = AWAITING_PASSWORD

    def to_json(self) -> str:
        return json.dumps(
            {
                "chat_id": self.chat_id,
                "target_identifier": self.target_identifier,
                "created_at": self.created_at.isoformat(),
                "step": self.step,
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> SignupSession:
        data = json.loads(raw)
        return cls(
            chat_id=int(data["chat_id"]),
            target_identifier=data["target_identifier"],
            created_at=datetime.fromisoformat(data["created_at"]),
            step=data.get("step", AWAITING_PASSWORD),
        )


class SignupSessionStore(Protocol):
    async def get(self, chat_id: int) -> SignupSession | None: ...

    async def put(self, session: SignupSession) -> SignupSession | None:
        """Store ``session``; return the session it replaced, if any."""
        ...

    async def delete(self, chat_id: int) -> None: ...


class InMemorySignupSessionStore:
    """Process-local store. Pending signups are lost on restart."""

    def __init__(self) -> None:
        self._sessions: dict[int, SignupSession] = {}

    async def get(self, chat_id: int) -> SignupSession | None:
        return self._sessions.get(chat_id)

    async def put(self, session: SignupSession) -> SignupSession | None:
        previous = self._sessions.get(session.chat_id)
        self._sessions[session.chat_id] = session
        return previous

    async def delete(self, chat_id: int) -> None:
        self._sessions.pop(chat_id, None)

    def __len__(self) -> int:
        return len(self._sessions)


class RedisSignupSessionStore:
    """Redis-backed store shared by every bot replica."""

    def __init__(self, redis: Redis, ttl_seconds: int) -> None:
        self._redis = redis
        self._ttl = ttl_seconds

    def _key(self, chat_id: int) -> str:
        return redis_key("signup_session", chat_id)

    async def get(self, chat_id: int) -> SignupSession | None:
        raw = await self._redis.get(self._key(chat_id))
        if raw is None:
            return None
        return SignupSession.from_json(raw)

    async def put(self, session: SignupSession) -> SignupSession | None:
        # The key outlives the timeout so a late message still finds it and
        # gets the "timed out" reply.
        previous = await self._redis.set(self._key(session.chat_id), session.to_json(), ex=self._ttl * 2, get=True)
        return SignupSession.from_json(previous) if previous else None

    async def delete(self, chat_id: int) -> None:
        await self._redis.delete(self._key(chat_id))
