"""Redis-backed cache with an explicit error policy at each call site."""

import json
import logging
from typing import Any, Optional

import redis
from redis.exceptions import RedisError

from message_hub.infra.metrics import cache_errors_total

logger = logging.getLogger(__name__)


def message_cache_key(message_id: str) -> str:
    return f"message:{message_id}"


def duplicate_key(external_id: str, conversation_id: Optional[str] = None) -> str:
    return f"duplicate:{external_id}:{conversation_id or 'no-conv'}"


class RedisCache:
    """
    JSON cache over Redis.

    Never raises on Redis failures: reads return the caller-supplied fallback,
    writes return False. Every absorbed failure is logged and counted.
    """

    def __init__(self, redis_url: Optional[str] = None, key_prefix: str = "", client: Any = None):
        if client is None:
            client = redis.Redis.from_url(
                redis_url,
                decode_responses=True,
                socket_connect_timeout=2,
                socket_timeout=2,
            )
        self._client = client
        self.key_prefix = key_prefix

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def _absorb(self, operation: str, key: str, error: Exception) -> None:
        cache_errors_total.labels(operation=operation).inc()
        logger.warning(
            f"Cache {operation} failed",
            extra={"key": key, "error": str(error), "error_type": type(error).__name__},
        )

    def get(self, key: str, default: Any = None) -> Any:
        """Return the decoded value, or ``default`` when missing or unavailable."""
        try:
            raw = self._client.get(self._key(key))
        except RedisError as e:
            self._absorb("get", key, e)
            return default
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError as e:
            self._absorb("decode", key, e)
            return default

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        try:
            payload = json.dumps(value, default=str)
            if ttl_seconds:
                self._client.set(self._key(key), payload, ex=ttl_seconds)
            else:
                self._client.set(self._key(key), payload)
            return True
        except (RedisError, TypeError) as e:
            self._absorb("set", key, e)
            return False

    def exists(self, key: str, on_error: bool = False) -> bool:
        """
        Check for a key.

        Args:
            key: Cache key (without prefix)
            on_error: Answer to give when Redis is unavailable. Dedup checks
                pass False so that an outage fails open.
        """
        try:
            return bool(self._client.exists(self._key(key)))
        except RedisError as e:
            self._absorb("exists", key, e)
            return on_error

    def delete(self, key: str) -> bool:
        try:
            self._client.delete(self._key(key))
            return True
        except RedisError as e:
            self._absorb("delete", key, e)
            return False

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except RedisError as e:
            self._absorb("ping", "", e)
            return False

    def close(self) -> None:
        try:
            self._client.close()
        except RedisError as e:
            logger.warning("Error closing cache connection", extra={"error": str(e)})
