"""Tests for rate limiting in runtime.py and the Redis token bucket.

Rate limits must be shared by every worker, so production runs require
Redis; the per-process bucket is only allowed under TEST_MODE or
ALLOW_REDIS_FALLBACK_DEV.
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import RedisError

from migente_auth.api.routes import _enforce_rate_limit
from migente_auth.config import reset_settings_cache
from migente_auth.service.errors import RateLimitedError
from migente_auth.service.runtime import Runtime, check_rate_limit
from migente_auth.storage import redis_cache
from migente_auth.storage.redis_cache import RedisCache, SyncRedisCache


def _local_runtime(test_mode=False):
    return SimpleNamespace(
        settings=SimpleNamespace(test_mode=test_mode),
        cache=None,
        _local_rate_limits={},
        _local_rate_limit_lock=asyncio.Lock(),
    )


class TestCheckRateLimit:
    async def test_uses_redis_when_available(self):
        runtime = _local_runtime()
        runtime.cache = AsyncMock()
        runtime.cache.check_rate_limit = AsyncMock(return_value=(False, 0, 42))

        result = await check_rate_limit(
            runtime, "reset:confirm:a@x.com", 5, 300, return_remaining=True
        )

        assert result == (False, 0, 42)
        runtime.cache.check_rate_limit.assert_called_once_with(
            "reset:confirm:a@x.com", 5, 300, return_remaining=True, cost=1
        )
        assert runtime._local_rate_limits == {}

    async def test_local_bucket_without_redis(self):
        runtime = _local_runtime()
        for _ in range(3):
            assert await check_rate_limit(runtime, "login:a@x.com", 3, 60)
        assert not await check_rate_limit(runtime, "login:a@x.com", 3, 60)
        assert "login:a@x.com" in runtime._local_rate_limits

    async def test_exhausted_bucket_raises_rate_limited(self):
        runtime = _local_runtime()
        await _enforce_rate_limit(runtime, "reset:confirm:a@x.com", 1, 300)
        with pytest.raises(RateLimitedError) as exc_info:
            await _enforce_rate_limit(runtime, "reset:confirm:a@x.com", 1, 300)
        assert exc_info.value.status_code == 429
        assert exc_info.value.error_code == "rate_limited"
        assert exc_info.value.detail["retry_after"] >= 1


class TestRedisRequirement:
    def test_refuses_to_start_without_redis(self, monkeypatch):
        with monkeypatch.context() as m:
            m.setenv("TEST_MODE", "false")
            m.setenv("REDIS_URL", "")
            m.setenv("ALLOW_REDIS_FALLBACK_DEV", "false")
            reset_settings_cache()
            with pytest.raises(RuntimeError, match="Redis is required"):
                Runtime()

            m.setenv("ALLOW_REDIS_FALLBACK_DEV", "true")
            reset_settings_cache()
            assert Runtime().cache is None
        reset_settings_cache()

    def test_unreachable_redis_is_reported(self, monkeypatch):
        def refuse(self):
            raise RedisError("connection refused")

        monkeypatch.setattr(SyncRedisCache, "verify_connection", refuse)
        monkeypatch.setattr(RedisCache, "verify_connection", refuse)
        with monkeypatch.context() as m:
            m.setenv("TEST_MODE", "false")
            m.setenv("REDIS_URL", "redis://cache.internal:6379/0")
            m.setenv("ALLOW_REDIS_FALLBACK_DEV", "false")
            reset_settings_cache()
            with pytest.raises(RuntimeError) as exc_info:
                Runtime()
            assert isinstance(exc_info.value.__cause__, RedisError)
        reset_settings_cache()


class TestRedisTokenBucket:
    @pytest.fixture
    def fake_client(self, monkeypatch):
        client = MagicMock()
        script = MagicMock(return_value=[0, 0, 42])
        client.register_script.return_value = script
        monkeypatch.setattr(redis_cache.Redis, "from_url", lambda *args, **kwargs: client)
        return client

    async def test_sync_cache_runs_bucket_script(self, fake_client):
        cache = SyncRedisCache("redis://localhost:6379/0")
        allowed, remaining, reset = await cache.check_rate_limit(
            "reset:confirm:a@x.com", 5, 300, return_remaining=True
        )

        assert (allowed, remaining, reset) == (False, 0, 42)
        script = fake_client.register_script.return_value
        call = script.call_args.kwargs
        assert call["keys"] == [RedisCache._normalize_rate_key("reset:confirm:a@x.com")]
        assert call["args"][1:] == [5 / 300, 5, 1]

    async def test_allowed_result_is_plain_bool(self, fake_client):
        fake_client.register_script.return_value.return_value = [1, 4, 0]
        cache = SyncRedisCache("redis://localhost:6379/0")
        assert await cache.check_rate_limit("login:a@x.com", 5, 60) is True

    def test_rate_keys_are_hashed(self):
        key = RedisCache._normalize_rate_key("login:a@x.com")
        assert key.startswith("rate:")
        assert "a@x.com" not in key
        assert key == RedisCache._normalize_rate_key("login:a@x.com")
