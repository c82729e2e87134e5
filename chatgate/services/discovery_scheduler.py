"""Periodic and on-demand discovery scans.

The timer is an APScheduler interval job on an :class:`AsyncIOScheduler`.
The first run happens ``startup_delay_seconds`` after :meth:`start`, then
every ``interval_minutes`` (never less than five minutes).

Only one scan runs at a time per scheduler.  ``_is_scanning`` is checked and
set before the first ``await`` of a scan, so a timer tick racing a manual
trigger can never start a second scan; the loser is a no-op.
"""

import json
import logging
from datetime import timedelta
from datetime import timezone
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from chatgate.config import Settings
from chatgate.config import get_settings
from chatgate.crud import crud
from chatgate.database import Database
from chatgate.events.publisher import EventPublisher
from chatgate.metrics import scan_total
from chatgate.schemas.schemas import DiscoveryConfig
from chatgate.schemas.schemas import ScanResult
from chatgate.schemas.schemas import SchedulerConfig
from chatgate.schemas.schemas import SchedulerConfigOut
from chatgate.schemas.schemas import SchedulerStatus
from chatgate.services.discovery import DiscoveryService
from chatgate.services.error_categories import categorize_error
from chatgate.utils.time import Clock

logger = logging.getLogger(__name__)

SCAN_JOB_ID = "slack_discovery_scan"
CONFIG_SETTING_KEY = "slack.scheduler_config"
SCAN_IN_PROGRESS = "A scan is already in progress"


class DiscoveryScheduler:
    """Runs :class:`DiscoveryService` scans on a timer and on demand."""

    def __init__(
        self,
        discovery: DiscoveryService,
        publisher: Optional[EventPublisher] = None,
        database: Optional[Database] = None,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
        scheduler_config: Optional[SchedulerConfig] = None,
        discovery_config: Optional[DiscoveryConfig] = None,
    ):
        self._settings = settings or get_settings()
        self._discovery = discovery
        self._publisher = publisher
        self._db = database
        self._clock = clock or Clock()
        self._min_interval = self._settings.scan_min_interval_minutes

        self._config = scheduler_config or SchedulerConfig(
            enabled=self._settings.scan_enabled,
            interval_minutes=self._settings.scan_interval_minutes,
            startup_delay_seconds=self._settings.scan_startup_delay_seconds,
        )
        self._discovery_config = discovery_config or DiscoveryConfig(lookback_hours=self._settings.scan_lookback_hours)

        self.scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self._is_running = False
        self._is_scanning = False
        self._last_run_at = None
        self._last_error: Optional[str] = None

    # ------------------------------------------------------------------
    # Timer control
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def is_scanning(self) -> bool:
        return self._is_scanning

    def start(self, config: Optional[SchedulerConfig] = None) -> bool:
        """Start the timer.  Returns False when already running or disabled."""

        if config is not None:
            self._config = config.model_copy()

        if self._is_running or not self._config.enabled:
            logger.info("Discovery scheduler already running or disabled")
            return False

        if self._config.interval_minutes < self._min_interval:
            logger.warning(
                "Scan interval %s min is too short, using %s min",
                self._config.interval_minutes,
                self._min_interval,
            )
            self._config.interval_minutes = self._min_interval

        if not self.scheduler.running:
            self.scheduler.start()

        first_run = self._clock.utc_now() + timedelta(seconds=self._config.startup_delay_seconds)
        self.scheduler.add_job(
            self.run_scheduled_scan,
            IntervalTrigger(minutes=self._config.interval_minutes, start_date=first_run, timezone=timezone.utc),
            id=SCAN_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._is_running = True
        logger.info(
            "Discovery scheduler started (every %s min, first run in %ss)",
            self._config.interval_minutes,
            self._config.startup_delay_seconds,
        )
        return True

    def stop(self) -> None:
        """Cancel the timer.  Safe to call repeatedly.

        An in-flight scan is not aborted; it finishes on its own and releases
        the in-flight flag when it does.  Clearing the flag here would let a
        stop/start cycle launch a second scan next to the one still running,
        so keeping it is what preserves one-scan-at-a-time.  Do not reset it.
        """

        if self.scheduler.get_job(SCAN_JOB_ID):
            self.scheduler.remove_job(SCAN_JOB_ID)
        if self._is_running:
            logger.info("Discovery scheduler stopped")
        self._is_running = False

    def shutdown(self) -> None:
        self.stop()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    async def update_config(
        self,
        scheduler_config: Optional[dict] = None,
        discovery_config: Optional[DiscoveryConfig] = None,
    ) -> SchedulerConfigOut:
        """Apply new settings with a full stop/restart cycle."""

        was_running = self._is_running
        self.stop()

        if scheduler_config:
            self._config = self._config.model_copy(update=scheduler_config)
        if discovery_config is not None:
            self._discovery_config = discovery_config.model_copy()

        if was_running and self._config.enabled:
            self.start()

        await self._persist_config()
        return self.get_config()

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------

    async def run_manual_scan(self) -> ScanResult:
        """Scan now.  A no-op result is returned if a scan is already running."""

        if self._is_scanning:
            logger.info("Manual scan skipped: %s", SCAN_IN_PROGRESS)
            scan_total.labels("manual", "skipped").inc()
            return ScanResult(success=False, skipped=True, trigger="manual", error=SCAN_IN_PROGRESS)
        return await self._execute_scan("manual")

    async def run_scheduled_scan(self) -> Optional[ScanResult]:
        if not self._is_running or self._is_scanning:
            scan_total.labels("scheduled", "skipped").inc()
            return None
        return await self._execute_scan("scheduled")

    async def _execute_scan(self, trigger: str) -> ScanResult:
        # Must stay ahead of the first await.
        self._is_scanning = True
        started_at = self._clock.utc_now()
        try:
            outcome = await self._discovery.scan(self._discovery_config)
        except Exception as exc:
            categorized = categorize_error(exc)
            logger.error("Slack %s scan failed: %s", trigger, exc)
            self._last_error = categorized.message
            scan_total.labels(trigger, "failed").inc()
            result = ScanResult(success=False, trigger=trigger, error=categorized.message)
            if self._publisher is not None:
                await self._publisher.notification("error", "Slack Discovery Failed", categorized.message)
        else:
            self._last_error = None
            scan_total.labels(trigger, "succeeded").inc()
            result = ScanResult(
                success=True,
                trigger=trigger,
                conversations_scanned=outcome.conversations_scanned,
                messages_found=outcome.messages_found,
                new_suggestions=outcome.new_suggestions,
            )
            if self._publisher is not None:
                await self._publisher.scan_result(outcome.new_suggestions, trigger)
        finally:
            self._is_scanning = False
            self._last_run_at = self._clock.utc_now()

        await self._record(result, started_at)
        return result

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_status(self) -> SchedulerStatus:
        job = self.scheduler.get_job(SCAN_JOB_ID) if self._is_running else None
        return SchedulerStatus(
            is_running=self._is_running,
            is_scanning=self._is_scanning,
            interval_minutes=self._config.interval_minutes,
            next_run_at=getattr(job, "next_run_time", None) if job else None,
            last_run_at=self._last_run_at,
            last_error=self._last_error,
        )

    def get_config(self) -> SchedulerConfigOut:
        return SchedulerConfigOut(scheduler=self._config.model_copy(), discovery=self._discovery_config.model_copy())

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def load_config(self) -> SchedulerConfigOut:
        """Restore the persisted configuration, if any."""

        if self._db is None:
            return self.get_config()
        raw = await self._db.read(lambda db: crud.get_setting(db, CONFIG_SETTING_KEY))
        if raw:
            try:
                data = json.loads(raw)
                self._config = SchedulerConfig.model_validate(data.get("scheduler", {}))
                self._discovery_config = DiscoveryConfig.model_validate(data.get("discovery", {}))
            except ValueError as exc:
                logger.warning("Ignoring unreadable scheduler config: %s", exc)
        return self.get_config()

    async def _persist_config(self) -> None:
        if self._db is None:
            return
        payload = self.get_config().model_dump_json()
        try:
            await self._db.write(lambda db: crud.set_setting(db, CONFIG_SETTING_KEY, payload))
        except Exception as exc:
            logger.error("Failed to persist scheduler config: %s", exc)

    async def _record(self, result: ScanResult, started_at) -> None:
        if self._db is None or result.skipped:
            return
        finished_at = self._last_run_at
        try:
            await self._db.write(
                lambda db: crud.record_scan(
                    db,
                    trigger=result.trigger,
                    started_at=started_at.replace(tzinfo=None),
                    finished_at=finished_at.replace(tzinfo=None) if finished_at else None,
                    success=result.success,
                    conversations_scanned=result.conversations_scanned,
                    messages_found=result.messages_found,
                    new_suggestions=result.new_suggestions,
                    error=result.error,
                )
            )
        except Exception as exc:
            logger.error("Failed to record scan history: %s", exc)


__all__ = ["CONFIG_SETTING_KEY", "DiscoveryScheduler", "SCAN_IN_PROGRESS", "SCAN_JOB_ID"]
