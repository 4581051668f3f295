# file: src/workers/batch_queue.py
import asyncio
import enum
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Set

from webapp_backend.analysis_service import AnalysisOutcome
from webapp_backend.errors import BatchValidationError

logger = logging.getLogger("chanaudit.batch_queue")

MAX_CONCURRENT_JOBS = 2
CHANNEL_DELAY_SECONDS = 0.5
MAX_BATCH_SIZE = 20
MIN_BATCH_SIZE = 1
MAX_JOB_AGE_SECONDS = 60 * 60
SWEEP_INTERVAL_SECONDS = 60 * 60

JobListener = Callable[[str, Dict[str, Any]], None]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class ChannelStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"


@dataclass
class ChannelTask:
    link: str
    status: ChannelStatus = ChannelStatus.PENDING
    result: Optional[AnalysisOutcome] = None
    error: Optional[str] = None

    @property
    def done(self) -> bool:
        return self.status in (ChannelStatus.COMPLETED, ChannelStatus.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "link": self.link,
            "status": self.status.value,
            "result": self.result.to_dict() if self.result is not None else None,
            "error": self.error,
        }


@dataclass
class Job:
    id: str
    channels: List[ChannelTask]
    created_at: datetime
    status: JobStatus = JobStatus.PENDING
    completed: int = 0
    total: int = field(init=False)

    def __post_init__(self) -> None:
        self.total = len(self.channels)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "channels": [c.to_dict() for c in self.channels],
            "completedCount": self.completed,
            "total": self.total,
            "createdAt": self.created_at.isoformat(),
        }


def normalize_batch(links: Iterable[str], *, min_size: int = MIN_BATCH_SIZE, max_size: int = MAX_BATCH_SIZE) -> List[str]:
    """
    Проверяем размер батча и убираем дубли (порядок сохраняем).
    Границы считаются по сырому списку, до дедупа.
    """
    raw = [str(x).strip() for x in (links or [])]
    if len(raw) < min_size:
        raise BatchValidationError("At least one channel link is required")
    if len(raw) > max_size:
        raise BatchValidationError(f"Maximum {max_size} channels allowed per batch")

    seen: Set[str] = set()
    unique: List[str] = []
    for link in raw:
        if not link:
            raise BatchValidationError("Channel link must not be empty")
        if link not in seen:
            seen.add(link)
            unique.append(link)
    return unique


class BatchQueue:
    """
    Очередь батч-анализов (в памяти процесса).

    - FIFO pending-очередь, одновременно крутится не больше max_concurrent джоб
    - внутри джобы каналы идут строго по порядку, по одному
    - падение канала пишется в ChannelTask и джобу не валит
    - отменить можно только ещё не стартовавшую джобу
    - sweep() чистит завершённые джобы старше max_job_age
    """

    def __init__(
        self,
        analyze: Callable[[str], Awaitable[AnalysisOutcome]],
        *,
        max_concurrent: int = MAX_CONCURRENT_JOBS,
        channel_delay: float = CHANNEL_DELAY_SECONDS,
        max_batch_size: int = MAX_BATCH_SIZE,
        min_batch_size: int = MIN_BATCH_SIZE,
        max_job_age: float = MAX_JOB_AGE_SECONDS,
        sweep_interval: float = SWEEP_INTERVAL_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._analyze = analyze
        self.max_concurrent = max(1, int(max_concurrent))
        self.channel_delay = max(0.0, float(channel_delay))
        self.max_batch_size = max_batch_size
        self.min_batch_size = min_batch_size
        self.max_job_age = float(max_job_age)
        self.sweep_interval = float(sweep_interval)
        self._sleep = sleep
        self._now = now

        self._jobs: Dict[str, Job] = {}
        self._pending: Deque[Job] = deque()
        self._active: Dict[str, Job] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._listeners: List[JobListener] = []
        self._sweeper: Optional[asyncio.Task] = None
        self._last_job_id = 0
        self._closed = False

    # ==========
    # notifications
    # ==========
    def subscribe(self, listener: JobListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self, event: str, payload: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, payload)
            except Exception:
                logger.exception("job listener failed (event=%s)", event)

    # ==========
    # registry
    # ==========
    def _new_job_id(self) -> str:
        candidate = int(time.time() * 1000)
        if candidate <= self._last_job_id:
            candidate = self._last_job_id + 1
        while str(candidate) in self._jobs:
            candidate += 1
        self._last_job_id = candidate
        return str(candidate)

    def submit(self, links: Iterable[str]) -> str:
        """Создаёт джобу и ставит в очередь. Нужен запущенный event loop."""
        unique = normalize_batch(links, min_size=self.min_batch_size, max_size=self.max_batch_size)

        job = Job(
            id=self._new_job_id(),
            channels=[ChannelTask(link=link) for link in unique],
            created_at=self._now(),
        )
        self._jobs[job.id] = job
        self._pending.append(job)
        logger.info("Batch job %s queued: %d channels (pending=%d)", job.id, job.total, len(self._pending))

        self._admit()
        return job.id

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def list_active(self) -> List[Job]:
        return list(self._active.values())

    def snapshot(self) -> Dict[str, Any]:
        return {
            "pendingCount": len(self._pending),
            "activeJobs": [j.to_dict() for j in self._active.values()],
            "isProcessing": bool(self._active),
        }

    def cancel(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if job is None or job.status is not JobStatus.PENDING:
            return False
        try:
            self._pending.remove(job)
        except ValueError:
            return False
        del self._jobs[job_id]
        logger.info("Batch job %s cancelled", job_id)
        return True

    def sweep(self) -> int:
        cutoff = self._now() - timedelta(seconds=self.max_job_age)
        stale = [
            job_id
            for job_id, job in self._jobs.items()
            if job.status is JobStatus.COMPLETED and job.created_at < cutoff
        ]
        for job_id in stale:
            del self._jobs[job_id]
        if stale:
            logger.info("Swept %d completed jobs older than %.0fs", len(stale), self.max_job_age)
        return len(stale)

    # ==========
    # scheduler
    # ==========
    def _admit(self) -> None:
        if self._closed:
            return
        while self._pending and len(self._active) < self.max_concurrent:
            job = self._pending.popleft()
            self._active[job.id] = job
            task = asyncio.create_task(self._run_job(job), name=f"batch-job-{job.id}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def _set_channel_status(self, job: Job, channel: ChannelTask, status: ChannelStatus) -> None:
        channel.status = status
        if channel.done:
            job.completed += 1
            if job.completed == job.total:
                job.status = JobStatus.COMPLETED

    async def _run_job(self, job: Job) -> None:
        job.status = JobStatus.PROCESSING
        logger.info("Batch job %s started (%d channels)", job.id, job.total)
        self._emit("job_update", {"job": job.to_dict()})

        try:
            for i, channel in enumerate(job.channels):
                if i > 0 and self.channel_delay > 0:
                    await self._sleep(self.channel_delay)

                channel.status = ChannelStatus.PROCESSING
                self._emit("job_update", {"job": job.to_dict()})

                try:
                    result = await self._analyze(channel.link)
                except Exception as e:
                    channel.error = str(e) or e.__class__.__name__
                    self._set_channel_status(job, channel, ChannelStatus.FAILED)
                    logger.warning("Batch job %s: channel %s failed: %s", job.id, channel.link, channel.error)
                    self._emit("job_update", {"job": job.to_dict()})
                    self._emit("channel_error", {"jobId": job.id, "channel": channel.link, "error": channel.error})
                    continue

                channel.result = result
                self._set_channel_status(job, channel, ChannelStatus.COMPLETED)
                self._emit("job_update", {"job": job.to_dict()})
                self._emit(
                    "channel_complete",
                    {"jobId": job.id, "channel": channel.link, "result": result.to_dict()},
                )
        finally:
            self._active.pop(job.id, None)

        logger.info("Batch job %s completed (%d/%d)", job.id, job.completed, job.total)
        self._emit("job_update", {"job": job.to_dict()})
        self._emit("job_complete", {"job": job.to_dict()})
        self._admit()

    async def wait_idle(self) -> None:
        """Ждём, пока доедут все запущенные и ожидающие джобы."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ==========
    # sweeper
    # ==========
    async def _sweep_loop(self) -> None:
        while True:
            await self._sleep(self.sweep_interval)
            try:
                self.sweep()
            except Exception:
                logger.exception("job sweep failed")

    def start_sweeper(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="batch-job-sweeper")

    async def close(self) -> None:
        """
        Шатдаун: гасим sweeper и недоделанные джобы.
        Ожидающие джобы не стартуют, прерванные остаются в registry как есть.
        """
        self._closed = True
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

        tasks = list(self._tasks)
        if tasks:
            logger.info("Cancelling %d running batch jobs (pending=%d)", len(tasks), len(self._pending))
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
