# file: src/webapp_backend/analysis_service.py
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple

from telegram_ingest.channel_links import extract_channel_name

from .errors import ChannelAuditError, PersistenceError, RateLimitedError, UpstreamUnavailableError

logger = logging.getLogger(__name__)

RECENT_MESSAGES_LIMIT = 5
SAVE_FAILED_WARNING = "Analysis completed but not saved to database"


class ChannelDataSource(Protocol):
    async def fetch_info(self, channel_name: str) -> Dict[str, Any]: ...

    async def fetch_messages(self, channel_name: str, limit: int = ...) -> List[Dict[str, Any]]: ...


class Assessor(Protocol):
    async def assess(self, channel_info: Dict[str, Any], messages: List[Dict[str, Any]]) -> Dict[str, Any]: ...


class Store(Protocol):
    async def find_by_channel_name(self, channel_name: str) -> Optional[Dict[str, Any]]: ...

    async def insert(self, record: Dict[str, Any]) -> Dict[str, Any]: ...


@dataclass(frozen=True)
class AnalysisOutcome:
    success: bool
    data: Dict[str, Any] = field(default_factory=dict)
    cached: bool = False
    warning: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"success": self.success, "data": self.data, "cached": self.cached}
        if self.warning:
            out["warning"] = self.warning
        return out


class AnalysisService:
    """
    Один канал: store lookup -> fetch info+messages -> оценка -> сохранение.
    Используется и одиночным роутом, и батч-очередью.
    """

    def __init__(self, telegram_client: ChannelDataSource, assessor: Assessor, store: Store) -> None:
        self.telegram_client = telegram_client
        self.assessor = assessor
        self.store = store

    async def _find_existing(self, channel_name: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.store.find_by_channel_name(channel_name)
        except PersistenceError as e:
            # нет ответа от базы == нет записи, считаем заново
            logger.warning("Stored analysis lookup failed for %s: %s", channel_name, e)
            return None

    async def _fetch_channel_data(self, channel_name: str) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
        try:
            info, messages = await asyncio.gather(
                self.telegram_client.fetch_info(channel_name),
                self.telegram_client.fetch_messages(channel_name, RECENT_MESSAGES_LIMIT),
            )
        except RateLimitedError:
            raise
        except ChannelAuditError as e:
            logger.error("Telegram API error for %s: %s", channel_name, e)
            if isinstance(e, UpstreamUnavailableError):
                raise
            raise UpstreamUnavailableError(str(e)) from e
        return info, messages

    async def analyze(self, channel_link: str) -> AnalysisOutcome:
        channel_name = extract_channel_name(channel_link)

        existing = await self._find_existing(channel_name)
        if existing:
            logger.info("Using stored analysis for %s", channel_name)
            return AnalysisOutcome(success=True, data=existing, cached=True)

        channel_info, messages = await self._fetch_channel_data(channel_name)

        analysis = await self.assessor.assess(channel_info, messages)

        record: Dict[str, Any] = {
            "channel_name": channel_name,
            "channel_link": channel_link,
            "channel_info": channel_info,
            "messages": messages,
            "analysis_result": analysis,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }

        try:
            saved = await self.store.insert(record)
        except PersistenceError as e:
            logger.error("Database save error for %s: %s", channel_name, e)
            return AnalysisOutcome(
                success=True,
                data={**record, "id": int(time.time() * 1000)},
                cached=False,
                warning=SAVE_FAILED_WARNING,
            )

        return AnalysisOutcome(success=True, data=saved, cached=False)
