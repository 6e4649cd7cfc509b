import json
import logging
from typing import Any, Dict, List

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..settings import Settings

logger = logging.getLogger(__name__)

HISTORY_KEY_PREFIX = "chat:"


class ChatHistoryStore:
    """Chat turns per session kept in a capped Redis list with TTL."""

    def __init__(self, url: str, ttl_seconds: int, max_messages: int) -> None:
        """Create a store for the given Redis URL (e.g. redis://localhost:6379/0)."""
        self._url = url
        self._ttl = ttl_seconds
        self._max_messages = max_messages
        self._client: Redis | None = None

    async def connect(self) -> None:
        """Establish connection to Redis. Idempotent."""
        if self._client is not None:
            return
        self._client = Redis.from_url(self._url, decode_responses=True)
        try:
            await self._client.ping()
            logger.info("Redis connection established: %s", self._url.split("@")[-1])
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis ping failed: %s", e)
            await self._client.aclose()
            self._client = None
            raise

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Redis connection closed")

    @property
    def client(self) -> Redis | None:
        """Return the underlying Redis client, or None if not connected."""
        return self._client

    def _key(self, session_id: str) -> str:
        return f"{HISTORY_KEY_PREFIX}{session_id}"

    async def load(self, session_id: str) -> List[Dict[str, Any]]:
        """Return stored turns oldest first. Empty if missing, unavailable or on error."""
        if self._client is None:
            return []
        try:
            raw_turns = await self._client.lrange(self._key(session_id), 0, -1)
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis lrange %s failed: %s", session_id, e)
            return []

        turns = []
        for raw in raw_turns:
            try:
                turn = json.loads(raw)
            except (json.JSONDecodeError, TypeError) as e:
                logger.warning("Invalid history entry for %s: %s", session_id, e)
                continue
            if isinstance(turn, dict) and "role" in turn:
                turns.append(turn)
        return turns

    async def append(self, session_id: str, *turns: Dict[str, Any]) -> bool:
        """Append turns, trim to the newest ``max_messages`` and refresh the TTL."""
        if self._client is None or not turns:
            return False
        key = self._key(session_id)
        try:
            encoded = [json.dumps(turn) for turn in turns]
        except (TypeError, ValueError) as e:
            logger.warning("History serialization failed for %s: %s", session_id, e)
            return False
        try:
            pipe = self._client.pipeline(transaction=True)
            pipe.rpush(key, *encoded)
            pipe.ltrim(key, -self._max_messages, -1)
            if self._ttl > 0:
                pipe.expire(key, self._ttl)
            await pipe.execute()
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis append %s failed: %s", session_id, e)
            return False

    async def clear(self, session_id: str) -> bool:
        """Delete a session's history. Returns True on success."""
        if self._client is None:
            return False
        try:
            await self._client.delete(self._key(session_id))
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis delete %s failed: %s", session_id, e)
            return False


def get_history_store(settings: Settings) -> ChatHistoryStore | None:
    """Return a history store if redis_url is configured, else None."""
    if not settings.redis_url or not settings.redis_url.strip():
        return None
    return ChatHistoryStore(
        settings.redis_url.strip(),
        ttl_seconds=settings.history_ttl_seconds,
        max_messages=settings.history_max_messages,
    )
