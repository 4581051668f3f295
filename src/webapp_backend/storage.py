# file: src/webapp_backend/storage.py
import asyncio
import logging
import os
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from supabase import Client, create_client

from .errors import PersistenceError

logger = logging.getLogger(__name__)

TABLE = "channel_analyses"
RATING_PATH = "analysis_result->verdict->>rating"

T = TypeVar("T")


def _rows(resp: Any) -> List[Dict[str, Any]]:
    data = getattr(resp, "data", None)
    if data is None:
        data = getattr(resp, "model", None)
    return list(data or [])


def create_supabase_from_env() -> Optional[Client]:
    url = os.getenv("SUPABASE_URL")
    key = (
        os.getenv("SUPABASE_KEY")
        or os.getenv("SUPABASE_ANON_KEY")
        or os.getenv("SUPABASE_SERVICE_KEY")
    )
    if not (url and key):
        logger.warning("Supabase URL/KEY are not set. Analyses will not be persisted.")
        return None
    try:
        client = create_client(url, key)
    except Exception:
        logger.exception("Failed to init Supabase client")
        return None
    logger.info("Supabase client initialized")
    return client


class AnalysisStore:
    """
    Таблица channel_analyses в Supabase.

    supabase-py синхронный, поэтому каждый вызов уходит в threadpool
    (asyncio.to_thread), event loop не блокируется.
    """

    def __init__(self, client: Optional[Client]) -> None:
        self._client = client

    @classmethod
    def from_env(cls) -> "AnalysisStore":
        return cls(create_supabase_from_env())

    @property
    def configured(self) -> bool:
        return self._client is not None

    async def _run(self, what: str, fn: Callable[[Client], T]) -> T:
        client = self._client
        if client is None:
            raise PersistenceError("Supabase is not configured")
        try:
            return await asyncio.to_thread(fn, client)
        except Exception as e:
            logger.exception("Supabase %s failed", what)
            raise PersistenceError(f"Supabase {what} failed: {e}") from e

    async def find_by_channel_name(self, channel_name: str) -> Optional[Dict[str, Any]]:
        def _q(client: Client) -> List[Dict[str, Any]]:
            resp = client.table(TABLE).select("*").eq("channel_name", channel_name).limit(1).execute()
            return _rows(resp)

        rows = await self._run("lookup", _q)
        return rows[0] if rows else None

    async def get_by_id(self, analysis_id: str) -> Optional[Dict[str, Any]]:
        def _q(client: Client) -> List[Dict[str, Any]]:
            resp = client.table(TABLE).select("*").eq("id", analysis_id).limit(1).execute()
            return _rows(resp)

        rows = await self._run("get", _q)
        return rows[0] if rows else None

    async def insert(self, record: Dict[str, Any]) -> Dict[str, Any]:
        def _q(client: Client) -> List[Dict[str, Any]]:
            return _rows(client.table(TABLE).insert(record).execute())

        rows = await self._run("insert", _q)
        if not rows:
            raise PersistenceError("Supabase insert returned no row")
        return rows[0]

    async def query_page(
        self,
        *,
        rating: Optional[str] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        offset: int = 0,
        limit: int = 10,
    ) -> Tuple[List[Dict[str, Any]], int]:
        def _q(client: Client) -> Tuple[List[Dict[str, Any]], int]:
            query = client.table(TABLE).select("*", count="exact")
            if rating:
                query = query.eq(RATING_PATH, rating)
            if date_from:
                query = query.gte("created_at", date_from)
            if date_to:
                query = query.lte("created_at", date_to)
            resp = query.order("created_at", desc=True).range(offset, offset + limit - 1).execute()
            rows = _rows(resp)
            count = getattr(resp, "count", None)
            return rows, int(count if count is not None else len(rows))

        return await self._run("page query", _q)

    async def list_all(
        self,
        *,
        rating: Optional[str] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        columns: str = "*",
    ) -> List[Dict[str, Any]]:
        def _q(client: Client) -> List[Dict[str, Any]]:
            query = client.table(TABLE).select(columns)
            if rating:
                query = query.eq(RATING_PATH, rating)
            if date_from:
                query = query.gte("created_at", date_from)
            if date_to:
                query = query.lte("created_at", date_to)
            return _rows(query.order("created_at", desc=True).execute())

        return await self._run("list", _q)
