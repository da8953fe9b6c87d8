import time
from typing import Callable, Dict, Optional

import redis

from crm_inbox.config import settings
from crm_inbox.logging_config import get_logger

logger = get_logger("throttle")


class TriggerThrottled(Exception):
    def __init__(self, retry_after_seconds: int):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(f"Подождите {retry_after_seconds} сек. перед повторным запуском")


class RunThrottle:
    """At most one manual run per user per ``interval_seconds``, within this process.

    Handed to whoever needs it instead of living in a module global.
    """

    def __init__(self, interval_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.interval_seconds = interval_seconds
        self.clock = clock
        self._last_run: Dict[str, float] = {}

    def remaining(self, user_id) -> int:
        last = self._last_run.get(str(user_id))
        if last is None:
            return 0
        left = self.interval_seconds - (self.clock() - last)
        return max(0, int(left + 0.999))

    def acquire(self, user_id) -> None:
        """Record a run start or raise TriggerThrottled."""
        left = self.remaining(user_id)
        if left > 0:
            raise TriggerThrottled(left)
        self._last_run[str(user_id)] = self.clock()


class RedisRunThrottle(RunThrottle):
    """Same limit shared by every worker: one ``SET NX EX`` key per agent.

    If Redis is unreachable the limit falls back to this process only.
    """

    KEY_PREFIX = "crm:trigger-run:"

    def __init__(self, interval_seconds: float = 60.0, redis_url: Optional[str] = None, client=None):
        super().__init__(interval_seconds)
        self.redis_url = redis_url or settings.redis_url
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = redis.Redis.from_url(self.redis_url, decode_responses=True)
        return self._client

    def _key(self, user_id) -> str:
        return f"{self.KEY_PREFIX}{user_id}"

    def _ttl(self, user_id) -> int:
        ttl = self.client.ttl(self._key(user_id))
        if ttl == -1:
            # key without expiry; should not happen, treat as a fresh run
            return int(self.interval_seconds)
        return max(0, ttl)

    def remaining(self, user_id) -> int:
        try:
            return self._ttl(user_id)
        except redis.RedisError as e:
            logger.warning(f"Throttle lookup failed: {e}", extra={"context": {"user_id": str(user_id)}})
            return super().remaining(user_id)

    def acquire(self, user_id) -> None:
        try:
            acquired = self.client.set(self._key(user_id), "1", nx=True, ex=max(1, int(self.interval_seconds)))
            if acquired:
                return
            left = self._ttl(user_id)
        except redis.RedisError as e:
            logger.warning(
                f"Throttle store unavailable, limiting per process: {e}",
                extra={"context": {"user_id": str(user_id)}},
            )
            super().acquire(user_id)
            return
        raise TriggerThrottled(max(1, left))
