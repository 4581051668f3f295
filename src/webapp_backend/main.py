# file: src/webapp_backend/main.py
import logging
import math
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Optional, Tuple

from dotenv import load_dotenv
from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field, StringConstraints

from telegram_ingest.channel_links import extract_channel_name
from telegram_ingest.rapidapi_client import TelegramDataClient
from workers.batch_queue import BatchQueue

from .analysis_service import AnalysisService
from .errors import (
    ChannelAuditError,
    InvalidChannelLinkError,
    MalformedAssessmentError,
    NotFoundError,
    PersistenceError,
    RateLimitedError,
    UpstreamUnavailableError,
    ValidationError,
)
from .openai_client import ChannelAssessor
from .rate_limits import env_int
from .reports_service import build_csv, compute_stats, csv_filename
from .storage import AnalysisStore

load_dotenv()

logger = logging.getLogger("chanaudit.webapp_backend")
logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")


# ==========
# Services
# ==========
@dataclass
class Services:
    telegram_client: TelegramDataClient
    assessor: ChannelAssessor
    store: AnalysisStore
    analysis: AnalysisService
    queue: BatchQueue


def build_services_from_env() -> Services:
    telegram_client = TelegramDataClient.from_env()
    assessor = ChannelAssessor.from_env()
    store = AnalysisStore.from_env()
    analysis = AnalysisService(telegram_client, assessor, store)
    queue = BatchQueue(
        analysis.analyze,
        max_concurrent=env_int("BATCH_MAX_CONCURRENT", 2, 1, 8),
        channel_delay=env_int("BATCH_CHANNEL_DELAY_MS", 500, 0) / 1000.0,
    )
    return Services(telegram_client, assessor, store, analysis, queue)


def get_services(request: Request) -> Services:
    return request.app.state.services


# ==========
# Request models
# ==========
ChannelLink = Annotated[str, StringConstraints(strip_whitespace=True, min_length=3, max_length=200)]


class ChannelLinkRequest(BaseModel):
    channel_link: ChannelLink = Field(alias="channelLink")

    model_config = {"extra": "ignore", "populate_by_name": True}


class BatchAnalyzeRequest(BaseModel):
    channel_links: List[ChannelLink] = Field(alias="channelLinks")

    model_config = {"extra": "ignore", "populate_by_name": True}


# ==========
# Error mapping
# ==========
def _error_body(e: ChannelAuditError) -> Tuple[int, Dict[str, Any]]:
    if isinstance(e, InvalidChannelLinkError):
        return 400, {"error": "Invalid Channel Link", "message": "Please provide a valid Telegram channel link."}
    if isinstance(e, ValidationError):
        return 400, {"error": "Validation Error", "details": str(e)}
    if isinstance(e, RateLimitedError):
        return 429, {
            "error": "Rate Limited",
            "message": "Rate limit reached. Please try again in a few moments.",
            "retryAfter": e.retry_after,
        }
    if isinstance(e, UpstreamUnavailableError):
        return 502, {"error": "Service Unavailable", "message": str(e)}
    if isinstance(e, MalformedAssessmentError):
        return 500, {"error": "Analysis failed", "message": str(e)}
    if isinstance(e, PersistenceError):
        return 503, {"error": "Database Unavailable", "message": str(e)}
    if isinstance(e, NotFoundError):
        return 404, {"error": "Not Found", "message": str(e)}
    return 500, {"error": "Internal Error", "message": str(e)}


async def _channel_audit_error_handler(request: Request, exc: ChannelAuditError) -> JSONResponse:
    status, body = _error_body(exc)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    headers = {"Retry-After": str(exc.retry_after)} if isinstance(exc, RateLimitedError) else None
    return JSONResponse(status_code=status, content=body, headers=headers)


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    details = errors[0].get("msg") if errors else "Invalid request"
    return JSONResponse(status_code=400, content={"error": "Validation Error", "details": details})


# ==========
# Health
# ==========
health_router = APIRouter()


@health_router.get("/ping")
async def ping() -> Dict[str, Any]:
    return {"status": "ok", "service": "tg-channel-auditor"}


@health_router.get("/health")
@health_router.get("/api/health")
async def health(services: Services = Depends(get_services)) -> Dict[str, Any]:
    snapshot = services.queue.snapshot()
    return {
        "ok": True,
        "service": "tg-channel-auditor",
        "ts": datetime.now(timezone.utc).isoformat(),
        "supabase_configured": services.store.configured,
        "assessor_configured": services.assessor.is_configured(),
        "pending_jobs": snapshot["pendingCount"],
        "active_jobs": len(snapshot["activeJobs"]),
    }


# ==========
# /api/analysis
# ==========
analysis_router = APIRouter(prefix="/api/analysis")


@analysis_router.post("/analyze")
async def analyze_channel(body: ChannelLinkRequest, services: Services = Depends(get_services)) -> Dict[str, Any]:
    outcome = await services.analysis.analyze(body.channel_link)
    return outcome.to_dict()


@analysis_router.get("")
async def list_analyses(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    rating: Optional[str] = Query(None),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    rows, total = await services.store.query_page(rating=rating, offset=(page - 1) * limit, limit=limit)
    return {
        "success": True,
        "data": rows,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        },
    }


@analysis_router.get("/{analysis_id}")
async def get_analysis(analysis_id: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
    row = await services.store.get_by_id(analysis_id)
    if not row:
        raise NotFoundError("Analysis not found")
    return {"success": True, "data": row}


# ==========
# /api/batch
# ==========
batch_router = APIRouter(prefix="/api/batch")


@batch_router.post("/analyze")
async def start_batch(body: BatchAnalyzeRequest, services: Services = Depends(get_services)) -> Dict[str, Any]:
    job_id = services.queue.submit(body.channel_links)
    job = services.queue.get_job(job_id)
    total = job.total if job is not None else len(set(body.channel_links))
    return {
        "success": True,
        "jobId": job_id,
        "message": f"Batch analysis started for {total} channels",
        "totalChannels": total,
    }


@batch_router.get("/status/{job_id}")
async def batch_status(job_id: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
    job = services.queue.get_job(job_id)
    if job is None:
        raise NotFoundError("The specified job ID does not exist or has been cleaned up")
    return {"success": True, "job": job.to_dict()}


@batch_router.get("/queue-status")
async def queue_status(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return {"success": True, **services.queue.snapshot()}


@batch_router.post("/cancel/{job_id}")
async def cancel_batch(job_id: str, services: Services = Depends(get_services)) -> Any:
    if not services.queue.cancel(job_id):
        return JSONResponse(
            status_code=400,
            content={"error": "Cannot cancel job", "message": "Job is already processing or completed"},
        )
    return {"success": True, "message": "Job cancelled successfully"}


@batch_router.get("/active")
async def active_batches(services: Services = Depends(get_services)) -> Dict[str, Any]:
    jobs = [j.to_dict() for j in services.queue.list_active()]
    return {"success": True, "activeJobs": jobs, "count": len(jobs)}


# ==========
# /api/telegram (сырые данные канала, без оценки)
# ==========
telegram_router = APIRouter(prefix="/api/telegram")


@telegram_router.post("/info")
async def channel_info(body: ChannelLinkRequest, services: Services = Depends(get_services)) -> Dict[str, Any]:
    name = extract_channel_name(body.channel_link)
    info = await services.telegram_client.fetch_info(name)
    return {"success": True, "data": info, "channelName": name}


@telegram_router.post("/messages")
async def channel_messages(body: ChannelLinkRequest, services: Services = Depends(get_services)) -> Dict[str, Any]:
    name = extract_channel_name(body.channel_link)
    messages = await services.telegram_client.fetch_messages(name, 5)
    return {"success": True, "data": messages, "channelName": name}


@telegram_router.post("/complete")
async def channel_complete(body: ChannelLinkRequest, services: Services = Depends(get_services)) -> Dict[str, Any]:
    name = extract_channel_name(body.channel_link)
    info = await services.telegram_client.fetch_info(name)
    messages = await services.telegram_client.fetch_messages(name, 5)
    return {"success": True, "data": {"info": info, "messages": messages, "channelName": name}}


# ==========
# /api/reports
# ==========
reports_router = APIRouter(prefix="/api/reports")


@reports_router.get("/csv")
async def report_csv(
    rating: Optional[str] = Query(None),
    date_from: Optional[str] = Query(None, alias="dateFrom"),
    date_to: Optional[str] = Query(None, alias="dateTo"),
    services: Services = Depends(get_services),
) -> Response:
    rows = await services.store.list_all(rating=rating, date_from=date_from, date_to=date_to)
    return Response(
        content=build_csv(rows),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{csv_filename()}"'},
    )


@reports_router.get("/stats")
async def report_stats(services: Services = Depends(get_services)) -> Dict[str, Any]:
    rows = await services.store.list_all(columns="analysis_result, created_at")
    return {"success": True, "data": compute_stats(rows)}


# ==========
# App
# ==========
def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(title="Telegram Channel Auditor")
    app.state.services = services or build_services_from_env()

    origins = [o.strip() for o in os.getenv("CORS_ALLOW_ORIGINS", "*").split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ChannelAuditError, _channel_audit_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)

    for router in (health_router, analysis_router, batch_router, telegram_router, reports_router):
        app.include_router(router)

    @app.on_event("startup")
    async def _startup() -> None:
        s: Services = app.state.services
        s.queue.start_sweeper()
        logger.info(
            "FastAPI startup OK. supabase_configured=%s assessor_configured=%s max_concurrent=%s",
            s.store.configured,
            s.assessor.is_configured(),
            s.queue.max_concurrent,
        )

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        s: Services = app.state.services
        await s.queue.close()
        await s.telegram_client.aclose()

    return app


app = create_app()
