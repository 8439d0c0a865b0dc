"""Redis token bucket used to throttle key issuance and link creation."""

from time import time

import redis

from linkpay.common.errors import RateLimitError
from linkpay.common.logging import logger


class TokenBucketLimiter:
    """Token bucket per key (capacity = refill rate = limit per minute)."""

    def __init__(self, client, limit_per_minute: int, namespace: str = "tokenbucket") -> None:
        self.client = client
        self.limit_per_minute = limit_per_minute
        self.namespace = namespace

    @classmethod
    def from_url(cls, redis_url: str, limit_per_minute: int) -> "TokenBucketLimiter | None":
        if not redis_url or limit_per_minute <= 0:
            return None
        return cls(redis.Redis.from_url(redis_url, decode_responses=True), limit_per_minute)

    def enforce(self, scope: str, identity: str) -> None:
        """Consume one token or raise `RateLimitError`.

        Redis outages fail open so payments keep flowing.
        """

        key = f"{self.namespace}:{scope}:{identity}"
        now = time()
        capacity = float(self.limit_per_minute)
        refill_per_sec = capacity / 60.0
        try:
            values = self.client.hmget(key, "tokens", "updated_at")
            tokens = float(values[0]) if values[0] is not None else capacity
            updated_at = float(values[1]) if values[1] is not None else now
            elapsed = max(0.0, now - updated_at)
            tokens = min(capacity, tokens + elapsed * refill_per_sec)

            allowed = tokens >= 1.0
            if allowed:
                tokens -= 1.0
            self.client.hset(key, mapping={"tokens": tokens, "updated_at": now})
            self.client.expire(key, 120)
        except redis.RedisError as exc:
            logger.warning("rate_limit_check_failed scope=%s error=%s", scope, exc)
            return
        if not allowed:
            raise RateLimitError("rate limit exceeded", details={"scope": scope})
