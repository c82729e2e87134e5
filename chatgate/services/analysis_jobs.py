"""Asynchronous AI-analysis jobs.

``submit()`` stores the message payload, emits ``job.queued`` and hands the
job straight to a background task; it never waits for the analysis.  The
background task walks the job through three stages

    preparation -> processing (analyzer call) -> extraction

emitting ``job.progress`` at each boundary and ``job.completed`` or
``job.failed`` at the end.  Only the owning task mutates a job, so events for
one job are always emitted in stage order.

Bookkeeping rules:

* completed and cancelled jobs are dropped together with their payload,
* failed jobs leave the active map but their payload stays parked so that
  ``retry()`` can resubmit it,
* every payload carries an unconditional TTL (one hour by default) so a stuck
  analyzer can never pin memory,
* a cancelled job's late result is discarded without emitting anything.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
from datetime import datetime
from enum import Enum
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Dict
from typing import List
from typing import Optional

from chatgate.config import Settings
from chatgate.config import get_settings
from chatgate.crud import crud
from chatgate.database import Database
from chatgate.errors import AuthenticationError
from chatgate.errors import DataFormatError
from chatgate.errors import ErrorCategory
from chatgate.errors import PreconditionError
from chatgate.errors import RateLimitError
from chatgate.errors import categorize_exception
from chatgate.errors import truncate
from chatgate.events.publisher import EventPublisher
from chatgate.metrics import analysis_job_seconds
from chatgate.metrics import analysis_job_total
from chatgate.services.suggestions import extract_project_update
from chatgate.services.suggestions import extract_task_suggestions
from chatgate.services.suggestions import extract_team_insights
from chatgate.utils.log import log
from chatgate.utils.time import Clock

# ``analyzer(text, analysis_type)`` – returns the raw analysis result.
Analyzer = Callable[[str, str], Awaitable[Any]]

RETRY_DELAY_SECONDS = 120
FAILURE_NOTIFICATION_MS = 8000
MAX_PARKED_FAILURES = 100

# Phrases in foreign analyzer errors that mean "waiting is the only fix".
_NON_RETRYABLE_PHRASES = ("rate limit", "quota exceeded", "invalid api key")


class AnalysisType(str, Enum):
    TASK_DISCOVERY = "task_discovery"
    PROJECT_UPDATE = "project_update"
    TEAM_INSIGHTS = "team_insights"


class JobStage(str, Enum):
    PREPARATION = "preparation"
    PROCESSING = "processing"
    EXTRACTION = "extraction"


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class AnalysisJob:
    id: str
    project_id: str
    analysis_type: AnalysisType
    message_count: int
    started_at: datetime
    started_monotonic: float
    channel_id: Optional[str] = None
    priority: str = "medium"
    stage: JobStage = JobStage.PREPARATION
    status: JobStatus = JobStatus.QUEUED
    # Resolved with the result (or the failure) for callers of analyze().
    waiter: Optional[asyncio.Future] = field(default=None, repr=False, compare=False)


@dataclass
class JobPayload:
    messages: List[Any]
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass
class FailedJob:
    job: AnalysisJob
    category: ErrorCategory
    error: str


def format_messages(messages: List[Any]) -> str:
    """Flatten Slack messages into the text handed to the analyzer."""

    lines = []
    for message in messages:
        if isinstance(message, dict):
            text = str(message.get("text") or "").strip()
            if not text:
                continue
            author = message.get("user_name") or message.get("user") or message.get("username") or "unknown"
            ts = message.get("ts")
            lines.append(f"[{ts}] {author}: {text}" if ts else f"{author}: {text}")
        elif message is not None:
            lines.append(str(message))
    return "\n".join(lines)


def is_retryable_failure(exc: BaseException) -> bool:
    """Rate-limit, quota, credential and malformed-data failures are not retryable."""

    if isinstance(exc, (RateLimitError, AuthenticationError, DataFormatError)):
        return False
    if getattr(exc, "status_code", None) in (401, 429):
        return False
    text = str(exc).lower()
    return not any(phrase in text for phrase in _NON_RETRYABLE_PHRASES)


class AnalysisJobOrchestrator:
    """Tracks analysis jobs and runs them on background tasks."""

    def __init__(
        self,
        analyzer: Analyzer,
        publisher: Optional[EventPublisher] = None,
        database: Optional[Database] = None,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
        payload_ttl_seconds: Optional[float] = None,
        worker_id: str = "analysis-worker",
    ):
        settings = settings or get_settings()
        self._analyzer = analyzer
        self._publisher = publisher
        self._db = database
        self._clock = clock or Clock()
        self._ttl = payload_ttl_seconds if payload_ttl_seconds is not None else settings.job_payload_ttl_seconds
        self._worker_id = worker_id

        self._jobs: Dict[str, AnalysisJob] = {}
        self._payloads: Dict[str, JobPayload] = {}
        self._failed: Dict[str, FailedJob] = {}
        self._ttl_handles: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(
        self,
        project_id: str,
        messages: List[Any],
        analysis_type: AnalysisType | str = AnalysisType.TASK_DISCOVERY,
        channel_id: Optional[str] = None,
        priority: str = "medium",
        options: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Queue *messages* for analysis and return the job id immediately."""

        return await self._submit(project_id, messages, AnalysisType(analysis_type), channel_id, priority, options)

    async def analyze(
        self,
        project_id: str,
        messages: List[Any],
        analysis_type: AnalysisType | str = AnalysisType.TASK_DISCOVERY,
        channel_id: Optional[str] = None,
        priority: str = "medium",
    ) -> Optional[Dict[str, Any]]:
        """Submit and wait for the result.  Returns ``None`` if the job was cancelled."""

        waiter: asyncio.Future = asyncio.get_running_loop().create_future()
        await self._submit(project_id, messages, AnalysisType(analysis_type), channel_id, priority, None, waiter)
        return await waiter

    async def _submit(
        self,
        project_id: str,
        messages: List[Any],
        analysis_type: AnalysisType,
        channel_id: Optional[str],
        priority: str,
        options: Optional[Dict[str, Any]],
        waiter: Optional[asyncio.Future] = None,
    ) -> str:
        if not project_id:
            raise ValueError("project_id is required")
        if not messages:
            raise ValueError("No messages to analyze")

        job_id = str(uuid.uuid4())
        job = AnalysisJob(
            id=job_id,
            project_id=project_id,
            analysis_type=analysis_type,
            message_count=len(messages),
            started_at=self._clock.utc_now(),
            started_monotonic=self._clock.monotonic(),
            channel_id=channel_id,
            priority=priority,
            waiter=waiter,
        )
        self._jobs[job_id] = job
        self._payloads[job_id] = JobPayload(
            messages=list(messages),
            options={"analysis_type": analysis_type.value, "channel_id": channel_id, "priority": priority, **(options or {})},
        )
        self._schedule_ttl(job_id)

        await self._emit("job_queued", job_id, project_id, analysis_type.value, len(messages), channel_id, priority)
        log.info("analysis", action="queued", job_id=job_id, project_id=project_id, messages=len(messages))

        # Cancelled while the queued event was being delivered.
        if job_id in self._jobs:
            self._tasks[job_id] = asyncio.create_task(self._process(job_id), name=f"analysis-{job_id}")
        return job_id

    # ------------------------------------------------------------------
    # Background processing
    # ------------------------------------------------------------------

    async def _process(self, job_id: str) -> None:
        job = self._jobs.get(job_id)
        try:
            if job is None:
                return
            job.status = JobStatus.RUNNING
            await self._emit("job_started", job_id, self._worker_id)

            payload = self._payloads.get(job_id)
            if payload is None:
                raise DataFormatError("message payload not found")
            total = len(payload.messages)

            # preparation
            await self._advance(job, JobStage.PREPARATION, 0, total, "Preparing messages...")
            text = format_messages(payload.messages)
            if not text:
                raise DataFormatError("Messages contain no text to analyze")
            if not self._is_tracked(job):
                return

            # processing
            await self._advance(job, JobStage.PROCESSING, 0, total, "Analyzing messages with AI...")
            if not self._is_tracked(job):
                return
            raw = await self._analyzer(text, job.analysis_type.value)
            if not self._is_tracked(job):
                log.info("analysis", action="late-result-discarded", job_id=job_id)
                return

            # extraction
            await self._advance(job, JobStage.EXTRACTION, total, total, "Extracting results...")
            result = self._extract(job, raw)
            if not self._is_tracked(job):
                return

            await self._complete(job, result)

        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if job is None or not self._is_tracked(job):
                log.info("analysis", action="late-failure-discarded", job_id=job_id, error=str(exc))
                return
            await self._fail(job, exc)
        finally:
            self._tasks.pop(job_id, None)

    def _is_tracked(self, job: AnalysisJob) -> bool:
        return self._jobs.get(job.id) is job

    async def _advance(self, job: AnalysisJob, stage: JobStage, processed: int, total: int, message: str) -> None:
        job.stage = stage
        await self._emit("job_progress", job.id, processed, total, stage.value, message)

    def _extract(self, job: AnalysisJob, raw: Any) -> Dict[str, Any]:
        if job.analysis_type == AnalysisType.TASK_DISCOVERY:
            suggestions = extract_task_suggestions(raw, conversation_id=job.channel_id)
            return {
                "analysis_type": job.analysis_type.value,
                "tasks": [s.model_dump() for s in suggestions],
            }
        if job.analysis_type == AnalysisType.PROJECT_UPDATE:
            return {"analysis_type": job.analysis_type.value, **extract_project_update(raw)}
        return {"analysis_type": job.analysis_type.value, **extract_team_insights(raw)}

    async def _complete(self, job: AnalysisJob, result: Dict[str, Any]) -> None:
        duration_ms = int((self._clock.monotonic() - job.started_monotonic) * 1000)
        job.status = JobStatus.COMPLETED
        self._forget(job.id)

        analysis_job_total.labels(JobStatus.COMPLETED.value).inc()
        analysis_job_seconds.observe(duration_ms / 1000)
        log.info("analysis", action="completed", job_id=job.id, duration_ms=duration_ms)

        await self._emit("job_completed", job.id, result, duration_ms)
        await self._record(job, JobStatus.COMPLETED, duration_ms=duration_ms)
        if job.waiter is not None and not job.waiter.done():
            job.waiter.set_result(result)

    async def _fail(self, job: AnalysisJob, exc: Exception) -> None:
        can_retry = is_retryable_failure(exc)
        category = categorize_exception(exc)
        error = str(exc) or type(exc).__name__
        retry_at = time.time() + RETRY_DELAY_SECONDS if can_retry else None

        job.status = JobStatus.FAILED
        # Leave the active map, keep the payload parked for retry() until its TTL.
        self._jobs.pop(job.id, None)
        self._failed[job.id] = FailedJob(job=job, category=category, error=error)
        self._trim_parked()

        analysis_job_total.labels(JobStatus.FAILED.value).inc()
        log.warning(
            "analysis",
            action="failed",
            job_id=job.id,
            stage=job.stage.value,
            can_retry=can_retry,
            category=category.value,
            error=truncate(error),
        )

        await self._emit("job_failed", job.id, error, job.stage.value, can_retry, retry_at)
        await self._emit(
            "notification",
            "error",
            "AI Analysis Failed",
            f"Analysis failed: {truncate(error)}",
            FAILURE_NOTIFICATION_MS,
        )
        await self._record(job, JobStatus.FAILED, error=error)
        if job.waiter is not None and not job.waiter.done():
            job.waiter.set_exception(exc)

    # ------------------------------------------------------------------
    # Cancel / retry
    # ------------------------------------------------------------------

    async def cancel(self, job_id: str, reason: str = "User cancelled") -> bool:
        """Drop a tracked job.  Returns False when there was nothing to cancel."""

        job = self._jobs.get(job_id)
        if job is None:
            return False

        job.status = JobStatus.CANCELLED
        self._forget(job_id)
        analysis_job_total.labels(JobStatus.CANCELLED.value).inc()
        log.info("analysis", action="cancelled", job_id=job_id, reason=reason)

        await self._emit("job_cancelled", job_id, reason)
        await self._record(job, JobStatus.CANCELLED, error=reason)
        if job.waiter is not None and not job.waiter.done():
            job.waiter.set_result(None)
        return True

    async def retry(self, job_id: str) -> str:
        """Resubmit the payload of a job that is still resident; returns the new id."""

        payload = self._payloads.get(job_id)
        failed = self._failed.get(job_id)
        job = failed.job if failed is not None else self._jobs.get(job_id)
        if payload is None or job is None:
            raise PreconditionError("Job data not found for retry")
        if failed is not None and failed.category == ErrorCategory.DATA_FORMAT:
            raise PreconditionError("Job failed on malformed data; fix the input and submit a new job")

        log.info("analysis", action="retry", job_id=job_id)
        extra = {k: v for k, v in payload.options.items() if k not in ("analysis_type", "channel_id", "priority")}
        new_job_id = await self.submit(
            job.project_id,
            payload.messages,
            analysis_type=job.analysis_type,
            channel_id=job.channel_id,
            priority=job.priority,
            options=extra,
        )
        if failed is not None:
            self._forget(job_id)
        return new_job_id

    # ------------------------------------------------------------------
    # Introspection / lifecycle
    # ------------------------------------------------------------------

    def get_active_jobs(self) -> List[Dict[str, Any]]:
        now = self._clock.monotonic()
        return [
            {
                "id": job.id,
                "project_id": job.project_id,
                "channel_id": job.channel_id,
                "analysis_type": job.analysis_type.value,
                "message_count": job.message_count,
                "stage": job.stage.value,
                "status": job.status.value,
                "started_at": job.started_at,
                "elapsed_ms": int((now - job.started_monotonic) * 1000),
            }
            for job in self._jobs.values()
        ]

    def get_job(self, job_id: str) -> Optional[AnalysisJob]:
        job = self._jobs.get(job_id)
        if job is None and job_id in self._failed:
            job = self._failed[job_id].job
        return replace(job, waiter=None) if job is not None else None

    def has_payload(self, job_id: str) -> bool:
        return job_id in self._payloads

    async def shutdown(self) -> None:
        """Cancel background tasks and TTL timers."""

        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for handle in self._ttl_handles.values():
            handle.cancel()
        for job in self._jobs.values():
            if job.waiter is not None and not job.waiter.done():
                job.waiter.cancel()
        self._ttl_handles.clear()
        self._tasks.clear()
        self._jobs.clear()
        self._payloads.clear()
        self._failed.clear()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _schedule_ttl(self, job_id: str) -> None:
        loop = asyncio.get_running_loop()
        self._ttl_handles[job_id] = loop.call_later(self._ttl, self._expire, job_id)

    def _expire(self, job_id: str) -> None:
        self._ttl_handles.pop(job_id, None)
        self._payloads.pop(job_id, None)
        self._failed.pop(job_id, None)
        job = self._jobs.pop(job_id, None)
        if job is not None:
            # Stuck job: the background task will find itself untracked.
            log.warning("analysis", action="ttl-expired", job_id=job_id, stage=job.stage.value)
            if job.waiter is not None and not job.waiter.done():
                job.waiter.set_exception(DataFormatError("Analysis job expired before completing"))

    def _forget(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)
        self._payloads.pop(job_id, None)
        self._failed.pop(job_id, None)
        handle = self._ttl_handles.pop(job_id, None)
        if handle is not None:
            handle.cancel()

    def _trim_parked(self) -> None:
        while len(self._failed) > MAX_PARKED_FAILURES:
            oldest = next(iter(self._failed))
            self._forget(oldest)

    async def _emit(self, method: str, *args: Any) -> None:
        if self._publisher is None:
            return
        await getattr(self._publisher, method)(*args)

    async def _record(self, job: AnalysisJob, status: JobStatus, duration_ms: Optional[int] = None,
                      error: Optional[str] = None) -> None:
        if self._db is None:
            return
        try:
            await self._db.write(
                lambda db: crud.record_job(
                    db,
                    job_id=job.id,
                    project_id=job.project_id,
                    channel_id=job.channel_id,
                    analysis_type=job.analysis_type.value,
                    status=status.value,
                    message_count=job.message_count,
                    duration_ms=duration_ms,
                    error=truncate(error, 500) if error else None,
                )
            )
        except Exception as exc:
            log.error("analysis", action="history-write-failed", job_id=job.id, error=str(exc))


__all__ = [
    "AnalysisJob",
    "AnalysisJobOrchestrator",
    "AnalysisType",
    "Analyzer",
    "JobStage",
    "JobStatus",
    "format_messages",
    "is_retryable_failure",
]
