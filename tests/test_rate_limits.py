"""Unit tests for rate-limit config, the spacing gate and header parsing."""

from __future__ import annotations

import asyncio

import pytest

from webapp_backend.rate_limits import (
    RateLimitConfig,
    RequestGate,
    ai_rate_limits,
    calculate_wait_time,
    parse_rate_limit_headers,
    telegram_rate_limits,
)


class TestConfig:
    def test_defaults(self, monkeypatch) -> None:
        for name in (
            "TELEGRAM_MIN_REQUEST_INTERVAL_MS",
            "TELEGRAM_MAX_RETRIES",
            "TELEGRAM_RETRY_DELAY_MS",
            "TELEGRAM_CACHE_TTL_MS",
        ):
            monkeypatch.delenv(name, raising=False)

        cfg = telegram_rate_limits()

        assert cfg == RateLimitConfig(min_request_interval=1.0, max_retries=3, retry_delay=2.0, cache_ttl=300.0)

    def test_env_override_and_garbage(self, monkeypatch) -> None:
        monkeypatch.setenv("TELEGRAM_MIN_REQUEST_INTERVAL_MS", "250")
        monkeypatch.setenv("TELEGRAM_MAX_RETRIES", "not-a-number")

        cfg = telegram_rate_limits()

        assert cfg.min_request_interval == 0.25
        assert cfg.max_retries == 3

    def test_ai_limits_only_pace_and_retry(self, monkeypatch) -> None:
        monkeypatch.setenv("AI_MIN_REQUEST_INTERVAL_MS", "250")
        monkeypatch.setenv("AI_MAX_RETRIES", "5")
        monkeypatch.setenv("AI_RETRY_DELAY_MS", "9000")

        cfg = ai_rate_limits()

        assert cfg == RateLimitConfig(min_request_interval=0.25, max_retries=5)
        assert cfg.retry_delay == 0.0 and cfg.cache_ttl == 0.0

    def test_backoff_is_exponential(self) -> None:
        cfg = RateLimitConfig(min_request_interval=0, max_retries=3, retry_delay=2.0, cache_ttl=0)
        assert [cfg.backoff_delay(i) for i in range(3)] == [2.0, 4.0, 8.0]


@pytest.mark.asyncio
class TestRequestGate:
    async def test_concurrent_callers_are_serialized(self, clock) -> None:
        gate = RequestGate(1.0, clock=clock, sleep=clock.sleep)
        started = clock.now

        delays = await asyncio.gather(gate.wait(), gate.wait(), gate.wait())

        assert delays[0] == 0.0
        assert all(d > 0 for d in delays[1:])
        assert clock.now - started >= 2.0

    async def test_first_call_does_not_wait(self, clock) -> None:
        gate = RequestGate(1.0, clock=clock, sleep=clock.sleep)

        assert await gate.wait() == 0.0
        assert clock.sleeps == []


class TestHeaders:
    def test_parse(self) -> None:
        limits = parse_rate_limit_headers(
            {"x-ratelimit-limit": "100", "x-ratelimit-remaining": "0", "retry-after": "12", "x-other": "1"}
        )
        assert limits == {"limit": 100, "remaining": 0, "retry_after": 12}

    def test_garbage_values_are_skipped(self) -> None:
        assert parse_rate_limit_headers({"retry-after": "soon"}) == {}

    def test_wait_prefers_retry_after(self) -> None:
        assert calculate_wait_time({"retry_after": 5, "reset": 10_000}, now=0) == 5.0

    def test_wait_from_epoch_reset(self) -> None:
        now = 1_700_000_000.0
        assert calculate_wait_time({"reset": 1_700_000_030}, now=now) == 30.0
        assert calculate_wait_time({"reset": 1_699_999_900}, now=now) == 0.0

    def test_wait_from_delta_reset(self) -> None:
        assert calculate_wait_time({"reset": 30}, now=1_700_000_000.0) == 30.0
        assert calculate_wait_time({"reset": 0}) == 0.0

    def test_wait_unknown(self) -> None:
        assert calculate_wait_time({}) is None
