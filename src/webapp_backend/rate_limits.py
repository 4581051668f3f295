# file: src/webapp_backend/rate_limits.py
import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

# x-ratelimit-reset ниже этого считаем дельтой в секундах (1e9 ~ сентябрь 2001)
EPOCH_RESET_THRESHOLD = 1_000_000_000


# ==========
# env helpers (env читается во время вызова, не при импорте)
# ==========
def env_int(name: str, default: int, lo: Optional[int] = None, hi: Optional[int] = None) -> int:
    try:
        v = int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        v = default
    if lo is not None:
        v = max(lo, v)
    if hi is not None:
        v = min(hi, v)
    return v


def _env_ms(name: str, default_ms: int) -> float:
    # в env всё в миллисекундах, внутри - секунды
    return env_int(name, default_ms, 0) / 1000.0


@dataclass(frozen=True)
class RateLimitConfig:
    min_request_interval: float
    max_retries: int
    retry_delay: float = 0.0
    cache_ttl: float = 0.0

    def backoff_delay(self, attempt: int) -> float:
        return self.retry_delay * (2 ** attempt)


def telegram_rate_limits() -> RateLimitConfig:
    return RateLimitConfig(
        min_request_interval=_env_ms("TELEGRAM_MIN_REQUEST_INTERVAL_MS", 1000),
        max_retries=env_int("TELEGRAM_MAX_RETRIES", 3, 0, 10),
        retry_delay=_env_ms("TELEGRAM_RETRY_DELAY_MS", 2000),
        cache_ttl=_env_ms("TELEGRAM_CACHE_TTL_MS", 5 * 60 * 1000),
    )


def ai_rate_limits() -> RateLimitConfig:
    # backoff делает сам openai SDK (max_retries), ответы оценки не кэшируем
    return RateLimitConfig(
        min_request_interval=_env_ms("AI_MIN_REQUEST_INTERVAL_MS", 500),
        max_retries=env_int("AI_MAX_RETRIES", 2, 0, 10),
    )


# ==========
# Spacing gate
# ==========
class RequestGate:
    """
    Минимальный интервал между исходящими запросами к одному сервису.

    Один gate на клиента: все каналы и все джобы идут через него,
    так что потолок пропускной способности глобальный.
    Слот резервируется синхронно (до await), поэтому конкурентные
    корутины выстраиваются друг за другом, а не проскакивают вместе.
    """

    def __init__(
        self,
        min_interval: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.min_interval = max(0.0, float(min_interval))
        self._clock = clock
        self._sleep = sleep
        self._last_request_at: Optional[float] = None

    async def wait(self) -> float:
        now = self._clock()
        if self._last_request_at is None:
            slot = now
        else:
            slot = max(now, self._last_request_at + self.min_interval)
        self._last_request_at = slot

        delay = slot - now
        if delay > 0:
            logger.info("Rate limiting: waiting %.0fms before next request", delay * 1000)
            await self._sleep(delay)
        return delay


# ==========
# Rate limit headers
# ==========
def _header_int(headers: Mapping[str, str], name: str) -> Optional[int]:
    raw = headers.get(name)
    if raw is None:
        return None
    try:
        return int(str(raw).strip())
    except ValueError:
        return None


def parse_rate_limit_headers(headers: Mapping[str, str]) -> Dict[str, int]:
    limits: Dict[str, int] = {}
    for key, header in (
        ("limit", "x-ratelimit-limit"),
        ("remaining", "x-ratelimit-remaining"),
        ("reset", "x-ratelimit-reset"),
        ("retry_after", "retry-after"),
    ):
        v = _header_int(headers, header)
        if v is not None:
            limits[key] = v
    return limits


def calculate_wait_time(limits: Mapping[str, int], now: Optional[float] = None) -> Optional[float]:
    """Сколько секунд ждать по заголовкам; None - заголовки ничего не говорят."""
    if limits.get("retry_after") is not None:
        return float(limits["retry_after"])

    if limits.get("reset") is not None:
        reset = float(limits["reset"])
        # маленькое значение - это "секунд до сброса", большое - epoch
        if reset < EPOCH_RESET_THRESHOLD:
            return max(0.0, reset)
        current = time.time() if now is None else now
        return max(0.0, reset - current)

    return None
