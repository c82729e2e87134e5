"""Typed publishing helpers for the gateway events.

Producers call these instead of assembling payload dicts by hand so every
event of a given type carries the same keys.  Publishing never raises: a
failure to notify the UI must not break a scan or a job.
"""

import logging
import time
from typing import Any
from typing import Dict
from typing import Optional

from chatgate.events.event_bus import EventBus
from chatgate.events.event_bus import EventType

logger = logging.getLogger(__name__)


class EventPublisher:
    """Thin facade over :class:`EventBus` with one method per event."""

    def __init__(self, bus: EventBus, source: str = "chatgate"):
        self.bus = bus
        self.source = source

    async def publish(self, event_type: EventType, data: Dict[str, Any]) -> None:
        payload = {"timestamp": time.time(), "source": self.source, **data}
        try:
            await self.bus.publish(event_type, payload)
        except Exception as e:
            logger.error("Failed to publish event %s: %s", event_type.value, e)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def job_queued(self, job_id: str, project_id: str, analysis_type: str, message_count: int,
                         channel_id: Optional[str] = None, priority: str = "medium") -> None:
        await self.publish(
            EventType.JOB_QUEUED,
            {
                "job_id": job_id,
                "project_id": project_id,
                "channel_id": channel_id,
                "analysis_type": analysis_type,
                "message_count": message_count,
                "priority": priority,
            },
        )

    async def job_started(self, job_id: str, worker_id: str) -> None:
        await self.publish(EventType.JOB_STARTED, {"job_id": job_id, "worker_id": worker_id})

    async def job_progress(self, job_id: str, processed: int, total: int, stage: str, message: str = "") -> None:
        await self.publish(
            EventType.JOB_PROGRESS,
            {"job_id": job_id, "processed": processed, "total": total, "stage": stage, "message": message},
        )

    async def job_completed(self, job_id: str, result: Any, duration_ms: int) -> None:
        await self.publish(EventType.JOB_COMPLETED, {"job_id": job_id, "result": result, "duration": duration_ms})

    async def job_failed(self, job_id: str, error: str, stage: str, can_retry: bool,
                         retry_at: Optional[float] = None) -> None:
        await self.publish(
            EventType.JOB_FAILED,
            {"job_id": job_id, "error": error, "stage": stage, "canRetry": can_retry, "retry_at": retry_at},
        )

    async def job_cancelled(self, job_id: str, reason: str) -> None:
        await self.publish(EventType.JOB_CANCELLED, {"job_id": job_id, "reason": reason})

    # ------------------------------------------------------------------
    # Scans, rate limits, connection, notifications
    # ------------------------------------------------------------------

    async def scan_result(self, new_suggestion_count: int, trigger: str) -> None:
        await self.publish(EventType.SCAN_RESULT, {"newSuggestionCount": new_suggestion_count, "trigger": trigger})

    async def rate_limit_waiting(self, endpoint: str, workspace: str, wait_ms: int, tier: int) -> None:
        await self.publish(
            EventType.RATE_LIMIT_WAITING,
            {"endpoint": endpoint, "workspace": workspace, "waitMs": wait_ms, "tier": tier},
        )

    async def connection_state_changed(self, state: Dict[str, Any]) -> None:
        await self.publish(EventType.CONNECTION_STATE_CHANGED, {"state": state})

    async def notification(self, severity: str, title: str, message: str, duration_ms: Optional[int] = None) -> None:
        await self.publish(
            EventType.NOTIFICATION,
            {"severity": severity, "title": title, "message": message, "duration_ms": duration_ms},
        )
