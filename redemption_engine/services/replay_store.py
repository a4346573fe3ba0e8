"""
Replay Store - Redis-backed single-use consumption, dynamic codes, blocklist

The only primitive relied on for safety is ``SET key value NX EX ttl``:
of two concurrent callers consuming the same key exactly one gets True.
Redis failures raise InfrastructureError; nothing here fails open.
"""
import json
import logging
from typing import Any, Dict, Optional

import redis

from redemption_engine.config import settings
from redemption_engine.errors import InfrastructureError

logger = logging.getLogger(__name__)

CONSUMED_PREFIX = "redemption:consumed:"
DYNAMIC_CODE_PREFIX = "redemption:dyncode:"
REPLAY_ATTEMPTS_PREFIX = "redemption:replays:"
BLOCKLIST_KEY = "redemption:blocklist"

REPLAY_ATTEMPTS_TTL_SEC = 24 * 3600


class ReplayStore:
    """Thin wrapper over a Redis client with the operations the engine needs"""

    def __init__(self, client: Optional[redis.Redis] = None):
        self._redis_client = client

    def _get_redis(self) -> redis.Redis:
        if self._redis_client is None:
            self._redis_client = redis.from_url(
                settings.REDIS_URL,
                decode_responses=True
            )
        return self._redis_client

    def use_client(self, client: redis.Redis) -> None:
        """Swap the underlying client (tests, alternative deployments)."""
        self._redis_client = client

    def ping(self) -> None:
        try:
            self._get_redis().ping()
        except redis.RedisError as e:
            raise InfrastructureError("Replay store unavailable", original_error=e)

    # ============================================================
    # ATOMIC CONSUMPTION
    # ============================================================

    def consume_if_absent(self, key: str, ttl_sec: int) -> bool:
        """
        Atomically mark key consumed.

        Returns True for the first caller, False if already consumed.
        """
        ttl_sec = max(1, int(ttl_sec))
        try:
            created = self._get_redis().set(
                f"{CONSUMED_PREFIX}{key}", "1", nx=True, ex=ttl_sec
            )
        except redis.RedisError as e:
            logger.error(f"Replay store unavailable while consuming {key}: {e}")
            raise InfrastructureError("Replay store unavailable", original_error=e)
        return bool(created)

    def is_consumed(self, key: str) -> bool:
        try:
            return bool(self._get_redis().exists(f"{CONSUMED_PREFIX}{key}"))
        except redis.RedisError as e:
            logger.error(f"Replay store unavailable while reading {key}: {e}")
            raise InfrastructureError("Replay store unavailable", original_error=e)

    # ============================================================
    # DYNAMIC SHORT CODES
    # ============================================================

    def store_dynamic_code(self, code: str, payload: Dict[str, Any], ttl_sec: int) -> bool:
        """Store a dynamic code; False if the code is already taken."""
        try:
            created = self._get_redis().set(
                f"{DYNAMIC_CODE_PREFIX}{code}",
                json.dumps(payload),
                nx=True,
                ex=max(1, int(ttl_sec))
            )
        except redis.RedisError as e:
            logger.error(f"Replay store unavailable while storing code: {e}")
            raise InfrastructureError("Replay store unavailable", original_error=e)
        return bool(created)

    def load_dynamic_code(self, code: str) -> Optional[Dict[str, Any]]:
        try:
            raw = self._get_redis().get(f"{DYNAMIC_CODE_PREFIX}{code}")
        except redis.RedisError as e:
            logger.error(f"Replay store unavailable while loading code: {e}")
            raise InfrastructureError("Replay store unavailable", original_error=e)
        if raw is None:
            return None
        return json.loads(raw)

    # ============================================================
    # FRAUD SIGNALS
    # ============================================================

    def record_replay_attempt(self, customer_id: str) -> int:
        """Count a rejected replay for a customer (rolling 24h window)."""
        key = f"{REPLAY_ATTEMPTS_PREFIX}{customer_id}"
        try:
            pipe = self._get_redis().pipeline()
            pipe.incr(key)
            pipe.expire(key, REPLAY_ATTEMPTS_TTL_SEC)
            count, _ = pipe.execute()
        except redis.RedisError as e:
            logger.error(f"Replay store unavailable while counting replays: {e}")
            raise InfrastructureError("Replay store unavailable", original_error=e)
        return int(count)

    def replay_attempts(self, customer_id: str) -> int:
        try:
            value = self._get_redis().get(f"{REPLAY_ATTEMPTS_PREFIX}{customer_id}")
        except redis.RedisError as e:
            logger.error(f"Replay store unavailable while reading replays: {e}")
            raise InfrastructureError("Replay store unavailable", original_error=e)
        return int(value) if value else 0

    def add_to_blocklist(self, identifier: str) -> None:
        try:
            self._get_redis().sadd(BLOCKLIST_KEY, identifier)
        except redis.RedisError as e:
            logger.error(f"Replay store unavailable while blocklisting: {e}")
            raise InfrastructureError("Replay store unavailable", original_error=e)
        logger.info(f"Added {identifier} to redemption blocklist")

    def is_blocklisted(self, identifier: str) -> bool:
        try:
            return bool(self._get_redis().sismember(BLOCKLIST_KEY, identifier))
        except redis.RedisError as e:
            logger.error(f"Replay store unavailable while reading blocklist: {e}")
            raise InfrastructureError("Replay store unavailable", original_error=e)


# Singleton instance
replay_store = ReplayStore()
