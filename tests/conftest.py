"""Shared pytest fixtures for the channel auditor tests.

Fixture summary
---------------
clock            - fake monotonic clock whose ``sleep`` advances time instantly.
fake_store       - in-memory stand-in for the Supabase ``channel_analyses`` table.
fake_assessor    - assessor returning a canned, schema-valid assessment.
fake_telegram    - data source returning canned channel info and messages.
assessment       - a schema-valid assessment dict.

Nothing here talks to the network: HTTP-level tests build their own
``httpx.MockTransport``.
"""

from __future__ import annotations

import asyncio
import copy
import itertools
from typing import Any, Dict, List, Optional

import pytest

from webapp_backend.errors import PersistenceError

ASSESSMENT: Dict[str, Any] = {
    "profileCheck": {
        "bioConsistency": "clear",
        "externalLinks": "official",
        "ownerContact": "present",
        "score": 80,
    },
    "contentCheck": {
        "relevance": "crypto-related",
        "activityLevel": "active",
        "engagementMetrics": {
            "subscriberCount": 1000,
            "avgViewsPerPost": 150,
            "engagementRatio": "15.00%",
            "avgCommentsPerPost": 0,
            "avgReactionsPerPost": 0,
        },
        "scamIndicators": ["guaranteed returns"],
        "score": 70,
    },
    "crossCheck": {"officialReferences": "yes", "inconsistencies": [], "score": 75},
    "verdict": {"trustScore": 74, "rating": "Legit", "explanation": "Looks fine."},
}


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay
        await asyncio.sleep(0)


class FakeStore:
    def __init__(self) -> None:
        self.rows: List[Dict[str, Any]] = []
        self.fail_insert = False
        self.fail_lookup = False
        self.lookups: List[str] = []
        self._ids = itertools.count(1)
        self.configured = True

    def add(self, row: Dict[str, Any]) -> Dict[str, Any]:
        saved = {"id": next(self._ids), **row}
        self.rows.append(saved)
        return saved

    async def find_by_channel_name(self, channel_name: str) -> Optional[Dict[str, Any]]:
        self.lookups.append(channel_name)
        if self.fail_lookup:
            raise PersistenceError("lookup failed")
        for row in self.rows:
            if row.get("channel_name") == channel_name:
                return row
        return None

    async def get_by_id(self, analysis_id: str) -> Optional[Dict[str, Any]]:
        for row in self.rows:
            if str(row.get("id")) == str(analysis_id):
                return row
        return None

    async def insert(self, record: Dict[str, Any]) -> Dict[str, Any]:
        if self.fail_insert:
            raise PersistenceError("insert failed")
        return self.add(record)

    async def query_page(self, *, rating=None, date_from=None, date_to=None, offset=0, limit=10):
        rows = await self.list_all(rating=rating, date_from=date_from, date_to=date_to)
        return rows[offset : offset + limit], len(rows)

    async def list_all(self, *, rating=None, date_from=None, date_to=None, columns="*"):
        rows = list(reversed(self.rows))
        if rating:
            rows = [r for r in rows if (r.get("analysis_result") or {}).get("verdict", {}).get("rating") == rating]
        return rows


class FakeAssessor:
    def __init__(self, result: Optional[Dict[str, Any]] = None) -> None:
        self.result = result if result is not None else copy.deepcopy(ASSESSMENT)
        self.calls: List[tuple] = []
        self.error: Optional[Exception] = None

    def is_configured(self) -> bool:
        return True

    async def assess(self, channel_info, messages):
        self.calls.append((channel_info, messages))
        if self.error is not None:
            raise self.error
        return self.result


class FakeTelegram:
    def __init__(self) -> None:
        self.info_calls: List[str] = []
        self.message_calls: List[str] = []
        self.info_error: Optional[Exception] = None
        self.messages_error: Optional[Exception] = None

    async def fetch_info(self, channel_name: str) -> Dict[str, Any]:
        self.info_calls.append(channel_name)
        if self.info_error is not None:
            raise self.info_error
        return {"title": channel_name.title(), "description": "desc", "subscribers": 1000, "verified": False}

    async def fetch_messages(self, channel_name: str, limit: int = 5) -> List[Dict[str, Any]]:
        self.message_calls.append(channel_name)
        if self.messages_error is not None:
            raise self.messages_error
        return [
            {"id": i, "date": "2024-01-01T00:00:00+00:00", "text": f"post {i}", "views": 150,
             "video": {"url": None}, "photo": {"url": None}}
            for i in range(limit)
        ]

    async def aclose(self) -> None:
        return None


@pytest.fixture
def assessment() -> Dict[str, Any]:
    return copy.deepcopy(ASSESSMENT)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def fake_assessor() -> FakeAssessor:
    return FakeAssessor()


@pytest.fixture
def fake_telegram() -> FakeTelegram:
    return FakeTelegram()
