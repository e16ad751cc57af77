"""Best-effort run lock.

Keeps two automation runs (scheduled and manual) from evaluating the same
windows at once. Correctness does not depend on it: the per-fixture
claim rows in the audit log already prevent double dispatch. If Redis is
down the lock fails open.
"""

import uuid

import redis.asyncio as redis
import structlog

logger = structlog.get_logger(__name__)

# Delete the key only if we still own it
RELEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


class RunLock:
    """Redis SET NX PX lock with owner token."""

    def __init__(
        self,
        redis_client: redis.Redis | None,
        key: str = "lock:automation:run",
        ttl_seconds: int = 1260,
    ):
        self.redis = redis_client
        self.key = key
        self.ttl_ms = int(ttl_seconds * 1000)
        self.token = uuid.uuid4().hex
        self._held = False

    async def acquire(self) -> bool:
        """
        Try to take the lock.

        Returns:
            False only if another run holds it; True otherwise, including
            when Redis is unavailable
        """
        if self.redis is None:
            return True

        try:
            acquired = await self.redis.set(self.key, self.token, nx=True, px=self.ttl_ms)
        except Exception as e:
            logger.warning("run_lock_unavailable", key=self.key, error=str(e))
            return True

        self._held = bool(acquired)
        if not self._held:
            logger.info("run_lock_held_elsewhere", key=self.key)
        return self._held

    async def release(self) -> None:
        if self.redis is None or not self._held:
            return

        try:
            await self.redis.eval(RELEASE_SCRIPT, 1, self.key, self.token)
        except Exception as e:
            logger.warning("run_lock_release_failed", key=self.key, error=str(e))
        finally:
            self._held = False
