import logging
import uuid
from typing import Optional

import redis
from redis.exceptions import RedisError

from app.core.config import settings

logger = logging.getLogger(__name__)

# Deletes the key only while it still holds our token
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class RedisLock:
    """Redis-backed lock keeping two scheduler sweeps from overlapping"""

    def __init__(self, client: Optional[redis.Redis] = None):
        """Initialize lock helper (lazy connection)"""
        self._client = client
        self._tokens: dict[str, str] = {}

    def _get_client(self) -> Optional[redis.Redis]:
        if self._client is not None:
            return self._client
        try:
            client_kwargs = {
                'decode_responses': True,
                'socket_connect_timeout': 2,
                'socket_timeout': 2,
                'retry_on_timeout': False,
                'health_check_interval': 0,
            }
            if settings.redis_password:
                client_kwargs['password'] = settings.redis_password
            self._client = redis.from_url(settings.redis_url, **client_kwargs)
        except (RedisError, ValueError) as e:
            logger.error(f"RedisLock: Failed to create Redis client - {e}")
            self._client = None
        return self._client

    def ping(self) -> bool:
        """Check if Redis is reachable"""
        client = self._get_client()
        if client is None:
            return False
        try:
            return bool(client.ping())
        except RedisError:
            return False

    def acquire(self, lock_key: str, timeout_seconds: int) -> bool:
        """
        Try once to take the lock with SET NX EX.

        Returns True if the lock was acquired, False if it is held elsewhere
        or Redis is unavailable. Callers distinguish the two with ping().
        """
        client = self._get_client()
        if client is None:
            logger.warning(f"RedisLock: Cannot acquire lock {lock_key} - Redis not available")
            return False
        token = str(uuid.uuid4())
        try:
            acquired = client.set(lock_key, token, nx=True, ex=timeout_seconds)
        except RedisError as e:
            logger.error(f"RedisLock: Error acquiring lock {lock_key}: {e}")
            return False
        if acquired:
            self._tokens[lock_key] = token
            logger.debug(f"RedisLock: Lock acquired - {lock_key}")
            return True
        logger.debug(f"RedisLock: Lock held elsewhere - {lock_key}")
        return False

    def release(self, lock_key: str):
        """Release a lock previously acquired by this instance"""
        token = self._tokens.pop(lock_key, None)
        if token is None:
            return
        client = self._get_client()
        if client is None:
            logger.warning(f"RedisLock: Cannot release lock {lock_key} - Redis not available")
            return
        try:
            client.eval(_RELEASE_SCRIPT, 1, lock_key, token)
            logger.debug(f"RedisLock: Lock released - {lock_key}")
        except RedisError as e:
            logger.error(f"RedisLock: Error releasing lock {lock_key}: {e}")


_lock_instance: Optional[RedisLock] = None


def get_sweep_lock() -> RedisLock:
    """Get global Redis lock instance"""
    global _lock_instance
    if _lock_instance is None:
        _lock_instance = RedisLock()
    return _lock_instance
