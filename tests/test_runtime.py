import asyncio
from unittest.mock import AsyncMock, MagicMock

from otpgate.service import runtime as runtime_module
from otpgate.service.auth import AuthService
from otpgate.service.runtime import _mask_url_password, get_runtime, reset_runtime_for_tests
from otpgate.storage.memory import MemoryCache, MemoryStore
from otpgate.storage.redis_cache import RedisCache


def test_runtime_wires_memory_backends():
    runtime = get_runtime()

    assert isinstance(runtime.store, MemoryStore)
    assert isinstance(runtime.cache, MemoryCache)
    assert isinstance(runtime.auth, AuthService)
    assert runtime.challenges.max_attempts == runtime.settings.otp_max_attempts
    assert runtime.sessions.max_active_sessions == runtime.settings.max_active_sessions
    assert runtime.email.ttl_minutes == runtime.settings.otp_ttl_minutes


def test_reset_builds_fresh_runtime():
    first = get_runtime()
    second = reset_runtime_for_tests()

    assert second is not first
    assert get_runtime() is second


def test_settings_flow_into_managers(monkeypatch):
    monkeypatch.setenv("OTP_MAX_ATTEMPTS", "2")
    monkeypatch.setenv("MAX_ACTIVE_SESSIONS", "1")

    runtime = reset_runtime_for_tests()

    assert runtime.challenges.max_attempts == 2
    assert runtime.sessions.max_active_sessions == 1


async def test_runtime_end_to_end_with_dev_notifier():
    runtime = get_runtime()
    sent = []

    async def capture(identifier, kind, code):
        sent.append(code)

    runtime.challenges.notifier.send_code = capture

    context_id = await runtime.auth.issue_self_service_challenge("user@example.com")
    result = await runtime.auth.verify_challenge(context_id, sent[-1], "cli", "127.0.0.1")
    ctx = await runtime.auth.authenticate(result.session_token)

    assert ctx.role.value == "user"


async def test_reset_keeps_pending_cache_close():
    runtime = get_runtime()
    cache = RedisCache.__new__(RedisCache)
    cache.redis_url = "redis://unused"
    cache.client = MagicMock()
    cache.client.aclose = AsyncMock()
    runtime.cache = cache

    reset_runtime_for_tests()

    assert len(runtime_module._pending_closes) == 1
    await asyncio.gather(*runtime_module._pending_closes)
    await asyncio.sleep(0)
    cache.client.aclose.assert_awaited_once()
    assert not runtime_module._pending_closes


def test_mask_url_password():
    assert _mask_url_password("redis://:hunter2@cache:6379/0") == "redis://:***@cache:6379/0"
    assert _mask_url_password("redis://cache:6379/0") == "redis://cache:6379/0"
    assert _mask_url_password(None) is None
