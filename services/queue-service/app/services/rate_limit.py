import logging
import time
from typing import Callable

import redis

logger = logging.getLogger(__name__)


class PhoneRateLimiter:
    """
    Rejects a request when the previous accepted request from the same phone
    arrived less than ``window_seconds`` ago.

    The last accepted time is kept in Redis under ``<prefix><phone>`` and
    expires with the window, so every worker sharing the Redis instance sees
    the same state. Rejected requests are not recorded.
    """

    def __init__(
        self,
        client: redis.Redis,
        window_seconds: float,
        clock: Callable[[], float] = time.time,
        prefix: str = "ussd:rl:",
    ):
        self.client = client
        self.window_seconds = window_seconds
        self.clock = clock
        self.prefix = prefix

    def allow(self, phone: str) -> bool:
        if self.window_seconds <= 0:
            return True

        now = self.clock()
        key = f"{self.prefix}{phone}"
        ttl_ms = max(int(self.window_seconds * 1000), 1)
        try:
            if self.client.set(key, now, nx=True, px=ttl_ms):
                return True
            last = self.client.get(key)
            if last is not None and now - float(last) < self.window_seconds:
                return False
            self.client.set(key, now, px=ttl_ms)
            return True
        except redis.RedisError as exc:
            # An unreachable Redis must not lock users out
            logger.error("Rate limit check failed, allowing request: %s", exc)
            return True
