"""Tests for the Redis slot cache and payment attempt limiter."""

from unittest.mock import MagicMock

import redis

from clinicdesk.core.redis_client import CacheManager, RateLimiter


def test_cache_manager_get_json():
    """Test CacheManager get_json method."""
    mock_redis = MagicMock()
    cache_manager = CacheManager(redis_client=mock_redis)

    # Test cache miss
    mock_redis.get.return_value = None
    assert cache_manager.get_json("slots:doc-house:2030-01-01") is None

    # Test cache hit
    mock_redis.reset_mock()
    mock_redis.get.return_value = '[{"starts_at": "2030-01-01T09:00:00+00:00"}]'
    result = cache_manager.get_json("slots:doc-house:2030-01-01")
    assert result == [{"starts_at": "2030-01-01T09:00:00+00:00"}]
    mock_redis.get.assert_called_once_with("slots:doc-house:2030-01-01")


def test_cache_manager_set_json():
    """Test CacheManager set_json method."""
    mock_redis = MagicMock()
    cache_manager = CacheManager(redis_client=mock_redis)

    assert cache_manager.set_json("key", {"available": True}) is True
    mock_redis.set.assert_called_once()

    mock_redis.reset_mock()
    assert cache_manager.set_json("key", {"available": True}, ttl=60) is True
    mock_redis.setex.assert_called_once()


def test_cache_manager_delete_pattern():
    """Test CacheManager delete_pattern method."""
    mock_redis = MagicMock()
    cache_manager = CacheManager(redis_client=mock_redis)

    mock_redis.scan_iter.return_value = iter(
        ["slots:doc-house:2030-01-01", "slots:doc-house:2030-01-02"]
    )
    mock_redis.delete.return_value = 2

    assert cache_manager.delete_pattern("slots:doc-house:*") == 2
    mock_redis.scan_iter.assert_called_once_with(match="slots:doc-house:*")
    mock_redis.delete.assert_called_once_with(
        "slots:doc-house:2030-01-01", "slots:doc-house:2030-01-02"
    )


def test_cache_manager_degrades_when_redis_is_down():
    """Every cache operation turns a Redis error into a miss."""
    mock_redis = MagicMock()
    mock_redis.get.side_effect = redis.ConnectionError("down")
    mock_redis.set.side_effect = redis.ConnectionError("down")
    mock_redis.scan_iter.side_effect = redis.ConnectionError("down")
    cache_manager = CacheManager(redis_client=mock_redis)

    assert cache_manager.get_json("key") is None
    assert cache_manager.set_json("key", {"a": 1}) is False
    assert cache_manager.delete_pattern("slots:*") == 0


def test_rate_limiter_counts_attempts():
    """Test RateLimiter fixed window."""
    mock_redis = MagicMock()
    limiter = RateLimiter(redis_client=mock_redis)

    mock_redis.incr.return_value = 1
    assert limiter.check_rate_limit("ratelimit:card:u1", limit=2) is True
    mock_redis.expire.assert_called_once_with("ratelimit:card:u1", 60)

    mock_redis.reset_mock()
    mock_redis.incr.return_value = 3
    assert limiter.check_rate_limit("ratelimit:card:u1", limit=2) is False
    mock_redis.expire.assert_not_called()


def test_rate_limiter_fails_open():
    """A Redis outage never blocks payments."""
    mock_redis = MagicMock()
    mock_redis.incr.side_effect = redis.ConnectionError("down")
    limiter = RateLimiter(redis_client=mock_redis)

    assert limiter.check_rate_limit("ratelimit:card:u1", limit=1) is True
