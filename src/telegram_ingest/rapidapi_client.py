# file: src/telegram_ingest/rapidapi_client.py
import asyncio
import copy
import logging
import math
import os
import random
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

import httpx

from webapp_backend.errors import RateLimitedError, UpstreamUnavailableError
from webapp_backend.rate_limits import (
    RateLimitConfig,
    RequestGate,
    calculate_wait_time,
    parse_rate_limit_headers,
    telegram_rate_limits,
)

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 10.0
DEFAULT_MESSAGES_LIMIT = 5
DEFAULT_MAX_ID = 999999999


def _mask_key(key: Optional[str]) -> str:
    return f"{key[:10]}..." if key else "UNDEFINED"


def generate_placeholder_messages(channel_name: str, limit: int) -> List[Dict[str, Any]]:
    """
    Заглушка вместо постов, когда /channel/message упёрся в 429.
    Даты идут по убыванию от сейчас с шагом в сутки, медиа нет.
    """
    logger.info("Generating placeholder messages for %s", channel_name)

    now = datetime.now(timezone.utc)
    now_ms = int(now.timestamp() * 1000)
    messages: List[Dict[str, Any]] = []
    for i in range(max(0, int(limit))):
        messages.append(
            {
                "id": now_ms + i,
                "date": (now - timedelta(days=i)).isoformat(),
                "text": (
                    f"Sample message {i + 1} from {channel_name}. "
                    "This is placeholder content for demonstration purposes."
                ),
                "views": random.randint(100, 1099),
                "video": {"url": None},
                "photo": {"url": None},
            }
        )
    return messages


@dataclass
class CacheEntry:
    value: Any
    stored_at: float


class TelegramDataClient:
    """
    Клиент к Telegram data API (RapidAPI).

    - TTL-кэш успешных ответов (hit не трогает сеть и gate)
    - общий spacing gate на все исходящие запросы
    - 429 -> экспоненциальный backoff, не больше max_retries повторов
    """

    def __init__(
        self,
        api_key: str,
        api_host: str,
        *,
        config: Optional[RateLimitConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.api_key = api_key
        self.api_host = api_host
        self.base_url = f"https://{api_host}"
        self.config = config or telegram_rate_limits()

        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(REQUEST_TIMEOUT_SECONDS))
        self._owns_http = http_client is None
        self._clock = clock
        self._sleep = sleep
        self._gate = RequestGate(self.config.min_request_interval, clock=clock, sleep=sleep)
        self._cache: Dict[str, CacheEntry] = {}

        logger.info(
            "TelegramDataClient initialized: host=%s key=%s",
            api_host or "UNDEFINED",
            _mask_key(api_key),
        )

    @classmethod
    def from_env(cls, **kwargs: Any) -> "TelegramDataClient":
        return cls(
            os.getenv("RAPIDAPI_KEY", "").strip(),
            os.getenv("RAPIDAPI_HOST", "").strip(),
            **kwargs,
        )

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    # ==========
    # cache
    # ==========
    def _get_cached(self, key: str) -> Any:
        entry = self._cache.get(key)
        if entry is None:
            return None
        if self._clock() - entry.stored_at < self.config.cache_ttl:
            # копия, чтобы правки вызывающего не портили кэш
            return copy.deepcopy(entry.value)
        self._cache.pop(key, None)
        return None

    def _set_cached(self, key: str, value: Any) -> None:
        self._cache[key] = CacheEntry(value=copy.deepcopy(value), stored_at=self._clock())

    def clear_cache(self) -> None:
        self._cache.clear()

    # ==========
    # public API
    # ==========
    async def fetch_info(self, channel_name: str) -> Dict[str, Any]:
        cache_key = f"info:{channel_name}"
        cached = self._get_cached(cache_key)
        if cached is not None:
            logger.info("Using cached channel info for %s", channel_name)
            return cached

        try:
            data = await self._request_with_retry(
                "/channel/info",
                {"channel": channel_name},
                "Failed to fetch channel info",
            )
        except (RateLimitedError, UpstreamUnavailableError) as e:
            logger.error("Channel info error for %s: %s", channel_name, e)
            raise

        self._set_cached(cache_key, data)
        return data

    async def fetch_messages(
        self,
        channel_name: str,
        limit: int = DEFAULT_MESSAGES_LIMIT,
        max_id: int = DEFAULT_MAX_ID,
        *,
        fallback_on_rate_limit: bool = True,
    ) -> List[Dict[str, Any]]:
        cache_key = f"messages:{channel_name}:{limit}"
        cached = self._get_cached(cache_key)
        if cached is not None:
            logger.info("Using cached messages for %s", channel_name)
            return cached

        try:
            data = await self._request_with_retry(
                "/channel/message",
                {"channel": channel_name, "limit": limit, "max_id": max_id},
                "Failed to fetch channel messages",
            )
        except RateLimitedError as e:
            logger.error("Channel messages error for %s: %s", channel_name, e)
            if not fallback_on_rate_limit:
                raise
            logger.warning("Using placeholder messages for %s due to rate limiting", channel_name)
            return generate_placeholder_messages(channel_name, limit)
        except UpstreamUnavailableError as e:
            logger.error("Channel messages error for %s: %s", channel_name, e)
            raise

        self._set_cached(cache_key, data)
        return data

    # ==========
    # transport
    # ==========
    def _headers(self) -> Dict[str, str]:
        return {
            "x-rapidapi-host": self.api_host,
            "x-rapidapi-key": self.api_key,
            "Accept": "application/json",
        }

    async def _request_with_retry(self, path: str, params: Mapping[str, Any], error_message: str) -> Any:
        url = self.base_url + path
        max_retries = self.config.max_retries

        attempt = 0
        while True:
            await self._gate.wait()
            logger.debug("RapidAPI request: url=%s params=%s key=%s", url, dict(params), _mask_key(self.api_key))

            try:
                resp = await self._http.get(
                    url,
                    params=dict(params),
                    headers=self._headers(),
                    timeout=REQUEST_TIMEOUT_SECONDS,
                )
            except httpx.RequestError as e:
                logger.warning("RapidAPI no response for %s: %r", url, e)
                raise UpstreamUnavailableError(f"{error_message}: No response from server") from e
            except (httpx.InvalidURL, ValueError, TypeError) as e:
                raise UpstreamUnavailableError(f"{error_message}: {e}") from e

            if resp.status_code == 429:
                if attempt < max_retries:
                    delay = self.config.backoff_delay(attempt)
                    logger.warning(
                        "Rate limited. Retrying in %.0fms (attempt %d/%d)",
                        delay * 1000,
                        attempt + 1,
                        max_retries,
                    )
                    await self._sleep(delay)
                    attempt += 1
                    continue

                wait = calculate_wait_time(parse_rate_limit_headers(resp.headers))
                # 0 клиенту не отдаём: без нормальной подсказки будет дефолт
                raise RateLimitedError(
                    f"{error_message}: 429 rate limit exceeded after {attempt + 1} attempts",
                    retry_after=math.ceil(wait) if wait is not None and wait > 0 else None,
                )

            if resp.status_code >= 400:
                raise UpstreamUnavailableError(f"{error_message}: {resp.status_code} {resp.reason_phrase}")

            try:
                return resp.json()
            except ValueError as e:
                raise UpstreamUnavailableError(f"{error_message}: invalid JSON in response") from e
