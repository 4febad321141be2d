"""
Tests for failed MFA attempt limiting.

Covers:
- In-memory counting, fixed window expiry and pruning
- Redis-backed counting
- Fallback when Redis errors
"""
from unittest.mock import MagicMock

import redis

from src.auth.attempts import AttemptLimiter


class TestInMemoryLimiter:
    """Test limiter without Redis."""

    def test_allows_until_max_attempts(self, clock):
        limiter = AttemptLimiter(max_attempts=3, window_seconds=900, clock=clock)

        assert limiter.check("user-1") == (True, 3)
        assert limiter.record_failure("user-1") == 2
        assert limiter.record_failure("user-1") == 1
        assert limiter.record_failure("user-1") == 0
        assert limiter.check("user-1") == (False, 0)

    def test_window_expiry_unlocks(self, clock):
        limiter = AttemptLimiter(max_attempts=3, window_seconds=900, clock=clock)
        for _ in range(3):
            limiter.record_failure("user-1")

        clock.advance(seconds=901)

        assert limiter.check("user-1") == (True, 3)

    def test_clear_resets_counter(self, clock):
        limiter = AttemptLimiter(max_attempts=3, clock=clock)
        limiter.record_failure("user-1")
        limiter.record_failure("user-1")

        limiter.clear("user-1")

        assert limiter.check("user-1") == (True, 3)

    def test_users_counted_separately(self, clock):
        limiter = AttemptLimiter(max_attempts=3, clock=clock)
        for _ in range(3):
            limiter.record_failure("user-1")

        assert limiter.check("user-2") == (True, 3)

    def test_window_starts_at_first_failure(self, clock):
        limiter = AttemptLimiter(max_attempts=3, window_seconds=900, clock=clock)
        limiter.record_failure("user-1")
        clock.advance(seconds=600)
        limiter.record_failure("user-1")
        limiter.record_failure("user-1")

        clock.advance(seconds=299)
        assert limiter.check("user-1") == (False, 0)

        # Later failures do not push the window back
        clock.advance(seconds=1)
        assert limiter.check("user-1") == (True, 3)

    def test_expired_entries_are_pruned(self, clock):
        limiter = AttemptLimiter(max_attempts=3, window_seconds=900, clock=clock)
        limiter.record_failure("user-1")
        limiter.record_failure("user-2")

        clock.advance(seconds=901)
        limiter.record_failure("user-3")

        assert set(limiter._memory_store) == {"user-3"}

    def test_clear_removes_entry(self, clock):
        limiter = AttemptLimiter(max_attempts=3, clock=clock)
        limiter.record_failure("user-1")

        limiter.clear("user-1")

        assert limiter._memory_store == {}


class TestRedisLimiter:
    """Test limiter with a Redis client."""

    def test_counts_in_redis(self, mock_redis_client, clock):
        limiter = AttemptLimiter(redis_client=mock_redis_client, max_attempts=3, window_seconds=900, clock=clock)

        limiter.record_failure("user-1")
        limiter.record_failure("user-1")

        assert mock_redis_client.store["carexps:mfa_attempts:user-1"] == 2
        assert mock_redis_client.expiry["carexps:mfa_attempts:user-1"] == 900
        assert limiter.check("user-1") == (True, 1)

    def test_expiry_set_once_per_window(self, mock_redis_client, clock):
        limiter = AttemptLimiter(redis_client=mock_redis_client, max_attempts=3, window_seconds=900, clock=clock)

        for _ in range(3):
            limiter.record_failure("user-1")

        assert mock_redis_client.expire_calls == [("carexps:mfa_attempts:user-1", 900)]

    def test_new_window_after_clear_gets_expiry(self, mock_redis_client, clock):
        limiter = AttemptLimiter(redis_client=mock_redis_client, window_seconds=900, clock=clock)
        limiter.record_failure("user-1")
        limiter.clear("user-1")

        limiter.record_failure("user-1")

        assert len(mock_redis_client.expire_calls) == 2
        assert mock_redis_client.expiry["carexps:mfa_attempts:user-1"] == 900

    def test_clear_deletes_key(self, mock_redis_client, clock):
        limiter = AttemptLimiter(redis_client=mock_redis_client, clock=clock)
        limiter.record_failure("user-1")

        limiter.clear("user-1")

        assert "carexps:mfa_attempts:user-1" not in mock_redis_client.store

    def test_falls_back_to_memory_on_redis_error(self, clock):
        broken = MagicMock()
        broken.get.side_effect = redis.ConnectionError("down")
        broken.pipeline.side_effect = redis.ConnectionError("down")
        broken.delete.side_effect = redis.ConnectionError("down")
        limiter = AttemptLimiter(redis_client=broken, max_attempts=3, clock=clock)

        assert limiter.record_failure("user-1") == 2
        assert limiter.check("user-1") == (True, 2)
        limiter.clear("user-1")
        assert limiter.check("user-1") == (True, 3)
