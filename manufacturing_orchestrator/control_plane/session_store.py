"""
Session Store

Tracks Fishbowl auth tokens and the interactive (UI) session flag in Redis,
so both survive a process restart.

Tracked tokens let an operator clean up orphaned remote sessions; the
interactive flag keeps the scheduler from starting a job while a person is
driving the system.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)


class SessionStore:
    """
    Redis-backed token registry.

    Keys:
        {prefix}tokens          hash token -> JSON {server_url, username, tracked_at}
        {prefix}service_token   cached scheduler token
        {prefix}interactive     hash {token, login_time, last_activity},
                                expires after interactive_timeout_seconds idle
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        key_prefix: str = "fishbowl:",
        interactive_timeout_seconds: int = 1800,
    ):
        """
        Initialize session store.

        Args:
            redis_client: Redis async client (decode_responses=True)
            key_prefix: Namespace for all keys
            interactive_timeout_seconds: Idle time after which an interactive session lapses
        """
        self.redis = redis_client
        self.key_prefix = key_prefix
        self.interactive_timeout_seconds = interactive_timeout_seconds

    @property
    def _tokens_key(self) -> str:
        return f"{self.key_prefix}tokens"

    @property
    def _service_key(self) -> str:
        return f"{self.key_prefix}service_token"

    @property
    def _interactive_key(self) -> str:
        return f"{self.key_prefix}interactive"

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    # Tokens

    async def track_token(self, token: str, server_url: str, username: Optional[str]) -> int:
        """Remember a token; returns the number of tracked tokens."""
        info = {"server_url": server_url, "username": username, "tracked_at": self._now()}
        await self.redis.hset(self._tokens_key, token, json.dumps(info))
        count = await self.redis.hlen(self._tokens_key)
        logger.info(f"Token tracked for {username}. Total active tokens: {count}")
        return count

    async def untrack_token(self, token: str) -> None:
        await self.redis.hdel(self._tokens_key, token)
        if await self.redis.get(self._service_key) == token:
            await self.redis.delete(self._service_key)

    async def tracked_tokens(self) -> List[Dict[str, Any]]:
        raw = await self.redis.hgetall(self._tokens_key)
        tokens = []
        for token, payload in raw.items():
            info = json.loads(payload)
            info["token"] = token
            tokens.append(info)
        return tokens

    async def get_service_token(self) -> Optional[str]:
        token = await self.redis.get(self._service_key)
        if token and await self.redis.hexists(self._tokens_key, token):
            return token
        return None

    async def set_service_token(self, token: str) -> None:
        await self.redis.set(self._service_key, token)

    # Interactive session

    async def start_interactive(self, token: str) -> None:
        now = self._now()
        await self.redis.hset(
            self._interactive_key,
            mapping={"token": token, "login_time": now, "last_activity": now},
        )
        await self.redis.expire(self._interactive_key, self.interactive_timeout_seconds)
        logger.info("Interactive session started")

    async def touch_interactive(self) -> None:
        """Record activity and push the session's expiry out again."""
        if await self.redis.exists(self._interactive_key):
            await self.redis.hset(self._interactive_key, "last_activity", self._now())
            await self.redis.expire(self._interactive_key, self.interactive_timeout_seconds)

    async def end_interactive(self) -> None:
        await self.redis.delete(self._interactive_key)
        logger.info("Interactive session ended")

    async def is_interactive_active(self) -> bool:
        return bool(await self.redis.exists(self._interactive_key))

    async def interactive_session(self) -> Dict[str, Any]:
        data = await self.redis.hgetall(self._interactive_key)
        return {
            "is_active": bool(data),
            "login_time": data.get("login_time"),
            "last_activity": data.get("last_activity"),
        }
