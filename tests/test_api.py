"""HTTP-level tests: routes, status codes and error bodies via ``httpx.ASGITransport``."""

from __future__ import annotations

import httpx
import pytest
import pytest_asyncio

from webapp_backend.analysis_service import AnalysisService
from webapp_backend.errors import RateLimitedError, UpstreamUnavailableError
from webapp_backend.main import Services, create_app
from workers.batch_queue import BatchQueue


@pytest.fixture
def services(fake_telegram, fake_assessor, fake_store) -> Services:
    analysis = AnalysisService(fake_telegram, fake_assessor, fake_store)
    queue = BatchQueue(analysis.analyze, channel_delay=0)
    return Services(fake_telegram, fake_assessor, fake_store, analysis, queue)


@pytest_asyncio.fixture
async def client(services):
    app = create_app(services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    await services.queue.wait_idle()


@pytest.mark.asyncio
class TestHealth:
    async def test_ping(self, client) -> None:
        resp = await client.get("/ping")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    async def test_health(self, client) -> None:
        body = (await client.get("/api/health")).json()
        assert body["ok"] is True
        assert body["supabase_configured"] is True
        assert body["pending_jobs"] == 0


@pytest.mark.asyncio
class TestAnalysisRoutes:
    async def test_analyze(self, client, fake_store) -> None:
        resp = await client.post("/api/analysis/analyze", json={"channelLink": "https://t.me/foo"})

        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["cached"] is False
        assert body["data"]["channel_name"] == "foo"
        assert len(fake_store.rows) == 1

    async def test_invalid_link(self, client) -> None:
        resp = await client.post("/api/analysis/analyze", json={"channelLink": "https://example.com/x"})

        assert resp.status_code == 400
        assert resp.json()["error"] == "Invalid Channel Link"

    @pytest.mark.parametrize("payload", [{"channelLink": "ab"}, {}, {"channelLink": "x" * 201}])
    async def test_request_validation(self, client, payload) -> None:
        resp = await client.post("/api/analysis/analyze", json=payload)

        assert resp.status_code == 400
        assert resp.json()["error"] == "Validation Error"

    async def test_rate_limited(self, client, fake_telegram) -> None:
        fake_telegram.info_error = RateLimitedError("throttled", retry_after=42)

        resp = await client.post("/api/analysis/analyze", json={"channelLink": "foo"})

        assert resp.status_code == 429
        assert resp.json()["retryAfter"] == 42
        assert resp.headers["retry-after"] == "42"

    async def test_upstream_unavailable(self, client, fake_telegram) -> None:
        fake_telegram.info_error = UpstreamUnavailableError("No response from server")

        resp = await client.post("/api/analysis/analyze", json={"channelLink": "foo"})

        assert resp.status_code == 502

    async def test_list_pagination(self, client, fake_store) -> None:
        for i in range(3):
            fake_store.add({"channel_name": f"c{i}", "analysis_result": {"verdict": {"rating": "Legit"}}})

        body = (await client.get("/api/analysis", params={"page": 2, "limit": 2})).json()

        assert body["pagination"] == {"page": 2, "limit": 2, "total": 3, "pages": 2}
        assert [r["channel_name"] for r in body["data"]] == ["c0"]

    async def test_get_by_id(self, client, fake_store) -> None:
        row = fake_store.add({"channel_name": "foo"})

        ok = await client.get(f"/api/analysis/{row['id']}")
        missing = await client.get("/api/analysis/999")

        assert ok.json()["data"]["channel_name"] == "foo"
        assert missing.status_code == 404


@pytest.mark.asyncio
class TestBatchRoutes:
    async def test_batch_lifecycle(self, client, services) -> None:
        resp = await client.post("/api/batch/analyze", json={"channelLinks": ["t.me/a", "t.me/a", "t.me/b"]})

        assert resp.status_code == 200
        body = resp.json()
        assert body["totalChannels"] == 2
        job_id = body["jobId"]

        await services.queue.wait_idle()
        status = (await client.get(f"/api/batch/status/{job_id}")).json()

        assert status["job"]["status"] == "completed"
        assert status["job"]["completedCount"] == 2
        assert [c["status"] for c in status["job"]["channels"]] == ["completed", "completed"]

    async def test_too_many_channels(self, client, services) -> None:
        links = [f"t.me/ch{i}" for i in range(21)]

        resp = await client.post("/api/batch/analyze", json={"channelLinks": links})

        assert resp.status_code == 400
        assert resp.json()["error"] == "Validation Error"
        assert services.queue.snapshot()["pendingCount"] == 0
        assert services.queue.list_active() == []

    async def test_empty_batch(self, client) -> None:
        resp = await client.post("/api/batch/analyze", json={"channelLinks": []})
        assert resp.status_code == 400

    async def test_unknown_job(self, client) -> None:
        resp = await client.get("/api/batch/status/nope")
        assert resp.status_code == 404

    async def test_cancel_unknown(self, client) -> None:
        resp = await client.post("/api/batch/cancel/nope")

        assert resp.status_code == 400
        assert resp.json()["error"] == "Cannot cancel job"

    async def test_queue_status_and_active(self, client) -> None:
        status = (await client.get("/api/batch/queue-status")).json()
        active = (await client.get("/api/batch/active")).json()

        assert status == {"success": True, "pendingCount": 0, "activeJobs": [], "isProcessing": False}
        assert active["count"] == 0


@pytest.mark.asyncio
class TestTelegramRoutes:
    async def test_complete(self, client, fake_telegram) -> None:
        resp = await client.post("/api/telegram/complete", json={"channelLink": "telegram.me/foo"})

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["channelName"] == "foo"
        assert len(data["messages"]) == 5
        assert fake_telegram.info_calls == ["foo"]


@pytest.mark.asyncio
class TestReportsRoutes:
    async def test_csv(self, client, fake_store, assessment) -> None:
        fake_store.add({"channel_name": "foo", "channel_link": "https://t.me/foo", "analysis_result": assessment})

        resp = await client.get("/api/reports/csv")

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/csv")
        assert "telegram-analysis-" in resp.headers["content-disposition"]
        lines = resp.text.splitlines()
        assert lines[0].startswith("Channel Name,Channel Link")
        assert "https://t.me/foo" in lines[1]

    async def test_stats(self, client, fake_store, assessment) -> None:
        fake_store.add({"channel_name": "foo", "analysis_result": assessment, "created_at": "2024-01-01T00:00:00Z"})

        data = (await client.get("/api/reports/stats")).json()["data"]

        assert data["totalAnalyses"] == 1
        assert data["ratingDistribution"]["Legit"] == 1
        assert data["averageTrustScore"] == 74
