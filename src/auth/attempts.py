"""
Failed MFA attempt limiting.

Counts wrong TOTP/backup codes per user. After max_attempts failures
inside the window the user is locked out of verification until the
window passes; a successful verification clears the counter.

The window is fixed: it opens with the first failure and later failures
do not push it back. Uses Redis INCR with a TTL set once per window when
available, in-memory fallback otherwise.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

import redis

logger = logging.getLogger(__name__)


class AttemptLimiter:
    """
    Per-user failure counter for MFA verification.

    Example usage:
        limiter = AttemptLimiter(redis_client=None, max_attempts=3, window_seconds=900)
        allowed, remaining = limiter.check(user_id)
        if not code_ok:
            remaining = limiter.record_failure(user_id)
        else:
            limiter.clear(user_id)
    """

    def __init__(
        self,
        redis_client: Optional[redis.Redis] = None,
        max_attempts: int = 3,
        window_seconds: int = 900,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.redis = redis_client
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        # In-memory fallback storage: user_id -> (failures, window end)
        self._memory_store: Dict[str, Tuple[int, float]] = {}

    def _key(self, user_id: str) -> str:
        return f"carexps:mfa_attempts:{user_id}"

    def _now(self) -> float:
        return self._clock().timestamp()

    def _prune(self, now: float) -> None:
        """Drop every fallback entry whose window has closed."""
        expired = [user_id for user_id, (_, ends) in self._memory_store.items() if ends <= now]
        for user_id in expired:
            del self._memory_store[user_id]

    def _memory_count(self, user_id: str) -> int:
        entry = self._memory_store.get(user_id)
        if entry is None:
            return 0
        count, ends = entry
        if ends <= self._now():
            self._memory_store.pop(user_id, None)
            return 0
        return count

    def _memory_increment(self, user_id: str) -> int:
        now = self._now()
        self._prune(now)
        count, ends = self._memory_store.get(user_id, (0, now + self.window_seconds))
        self._memory_store[user_id] = (count + 1, ends)
        return count + 1

    def _redis_increment(self, user_id: str) -> int:
        key = self._key(user_id)
        pipe = self.redis.pipeline()
        pipe.incr(key)
        pipe.ttl(key)
        count, ttl = pipe.execute()
        # Only a key without expiry (fresh window) gets one
        if ttl is None or ttl < 0:
            self.redis.expire(key, self.window_seconds)
        return count

    def _get_count(self, user_id: str) -> int:
        if self.redis is not None:
            try:
                count = self.redis.get(self._key(user_id))
                return int(count) if count else 0
            except redis.RedisError as e:
                logger.warning(f"Redis error in MFA attempt check: {e}")
        return self._memory_count(user_id)

    def check(self, user_id: str) -> tuple[bool, int]:
        """
        Check if the user may attempt verification.

        Returns:
            Tuple of (allowed, remaining_attempts)
        """
        remaining = self.max_attempts - self._get_count(user_id)
        return remaining > 0, max(0, remaining)

    def record_failure(self, user_id: str) -> int:
        """
        Record a wrong code.

        Returns:
            Attempts remaining before lockout.
        """
        count = None
        if self.redis is not None:
            try:
                count = self._redis_increment(user_id)
            except redis.RedisError as e:
                logger.warning(f"Redis error in MFA attempt increment: {e}")

        if count is None:
            count = self._memory_increment(user_id)

        remaining = max(0, self.max_attempts - count)
        if remaining == 0:
            logger.warning(f"MFA verification locked for user {user_id} after {count} failed attempts")
        return remaining

    def clear(self, user_id: str) -> None:
        """Forget all failures for a user (after a successful verification)."""
        if self.redis is not None:
            try:
                self.redis.delete(self._key(user_id))
            except redis.RedisError as e:
                logger.warning(f"Redis error clearing MFA attempts: {e}")
        self._memory_store.pop(user_id, None)
