"""
Short-lived Redis locks that stop two workers processing the same message
"""
import logging
import uuid
from typing import Optional

import redis

logger = logging.getLogger(__name__)

# Delete only if the lock still holds our token
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class MessageLocks:
    """SET NX EX locks; an expired lock is simply taken by the next worker"""

    def __init__(self, client: redis.Redis, ttl_seconds: int = 60):
        self.client = client
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, redis_url: str, ttl_seconds: int = 60) -> 'MessageLocks':
        return cls(redis.from_url(redis_url, decode_responses=True), ttl_seconds)

    def acquire(self, name: str) -> Optional[str]:
        """Return a token when the lock was taken, None when another worker holds it"""
        token = uuid.uuid4().hex
        if self.client.set(name, token, nx=True, ex=self.ttl_seconds):
            logger.debug(f"Acquired {name}")
            return token
        logger.debug(f"{name} is held by another worker")
        return None

    def release(self, name: str, token: str) -> bool:
        try:
            released = bool(self.client.eval(_RELEASE_SCRIPT, 1, name, token))
        except redis.RedisError as e:
            # Left to expire
            logger.error(f"Redis release of {name} failed: {e}")
            return False
        if not released:
            logger.warning(f"{name} expired before release")
        return released
