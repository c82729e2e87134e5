"""Tests for the discovery scheduler: timer control and single-flight scans."""

import asyncio
import json
from unittest.mock import AsyncMock
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from apscheduler.triggers.interval import IntervalTrigger

from chatgate.crud import crud
from chatgate.errors import AccessError
from chatgate.events.event_bus import EventType
from chatgate.schemas.schemas import DiscoveryConfig
from chatgate.schemas.schemas import SchedulerConfig
from chatgate.services.discovery import ScanOutcome
from chatgate.services.discovery_scheduler import CONFIG_SETTING_KEY
from chatgate.services.discovery_scheduler import SCAN_IN_PROGRESS
from chatgate.services.discovery_scheduler import SCAN_JOB_ID
from chatgate.services.discovery_scheduler import DiscoveryScheduler


@pytest.fixture
def discovery():
    service = MagicMock()
    service.scan = AsyncMock(return_value=ScanOutcome(conversations_scanned=3, messages_found=12, new_suggestions=2))
    return service


@pytest_asyncio.fixture
async def make_scheduler(discovery, publisher, clock, settings):
    created = []

    def _make(**kwargs):
        kwargs.setdefault("scheduler_config", SchedulerConfig(enabled=True, interval_minutes=60, startup_delay_seconds=0))
        scheduler = DiscoveryScheduler(discovery, publisher=publisher, clock=clock, settings=settings, **kwargs)
        created.append(scheduler)
        return scheduler

    yield _make
    for scheduler in created:
        scheduler.shutdown()


@pytest.mark.asyncio
async def test_start_registers_interval_job(make_scheduler):
    scheduler = make_scheduler()

    assert scheduler.start() is True
    assert scheduler.is_running

    job = scheduler.scheduler.get_job(SCAN_JOB_ID)
    assert isinstance(job.trigger, IntervalTrigger)
    assert job.trigger.interval.total_seconds() == 3600
    assert scheduler.get_status().next_run_at is not None

    # Already running.
    assert scheduler.start() is False


@pytest.mark.asyncio
async def test_disabled_scheduler_does_not_start(make_scheduler):
    scheduler = make_scheduler(scheduler_config=SchedulerConfig(enabled=False))

    assert scheduler.start() is False
    assert scheduler.scheduler.get_job(SCAN_JOB_ID) is None


@pytest.mark.asyncio
async def test_interval_is_clamped_to_minimum(make_scheduler):
    scheduler = make_scheduler(scheduler_config=SchedulerConfig(enabled=True, interval_minutes=1))

    scheduler.start()

    assert scheduler.get_config().scheduler.interval_minutes == 5
    job = scheduler.scheduler.get_job(SCAN_JOB_ID)
    assert job.trigger.interval.total_seconds() == 300


@pytest.mark.asyncio
async def test_stop_is_idempotent(make_scheduler):
    scheduler = make_scheduler()
    scheduler.start()

    scheduler.stop()
    scheduler.stop()

    assert not scheduler.is_running
    assert scheduler.scheduler.get_job(SCAN_JOB_ID) is None
    assert scheduler.get_status().next_run_at is None


@pytest.mark.asyncio
async def test_manual_scan_reports_outcome(make_scheduler, discovery, recorder):
    scheduler = make_scheduler()

    result = await scheduler.run_manual_scan()

    assert result.success
    assert result.trigger == "manual"
    assert result.new_suggestions == 2
    assert recorder.of_type(EventType.SCAN_RESULT) == [{"newSuggestionCount": 2, "trigger": "manual"}]
    assert scheduler.get_status().last_run_at is not None
    assert not scheduler.is_scanning


@pytest.mark.asyncio
async def test_only_one_scan_runs_at_a_time(make_scheduler, discovery):
    release = asyncio.Event()
    entered = asyncio.Event()

    async def slow_scan(config):
        entered.set()
        await release.wait()
        return ScanOutcome()

    discovery.scan.side_effect = slow_scan
    scheduler = make_scheduler()
    scheduler.start()

    first = asyncio.create_task(scheduler.run_manual_scan())
    await asyncio.wait_for(entered.wait(), timeout=2)
    assert scheduler.is_scanning

    skipped = await scheduler.run_manual_scan()
    assert skipped.skipped
    assert skipped.error == SCAN_IN_PROGRESS
    assert await scheduler.run_scheduled_scan() is None

    release.set()
    assert (await first).success
    assert discovery.scan.await_count == 1


@pytest.mark.asyncio
async def test_stop_keeps_in_flight_flag_until_scan_finishes(make_scheduler, discovery):
    release = asyncio.Event()
    entered = asyncio.Event()

    async def slow_scan(config):
        entered.set()
        await release.wait()
        return ScanOutcome()

    discovery.scan.side_effect = slow_scan
    scheduler = make_scheduler()
    scheduler.start()

    running = asyncio.create_task(scheduler.run_scheduled_scan())
    await asyncio.wait_for(entered.wait(), timeout=2)

    scheduler.stop()
    scheduler.start()
    assert scheduler.is_scanning
    assert (await scheduler.run_manual_scan()).skipped

    release.set()
    await running
    assert not scheduler.is_scanning


@pytest.mark.asyncio
async def test_scheduled_scan_is_noop_when_stopped(make_scheduler, discovery):
    scheduler = make_scheduler()

    assert await scheduler.run_scheduled_scan() is None
    discovery.scan.assert_not_awaited()


@pytest.mark.asyncio
async def test_failed_scan_notifies_with_category_message(make_scheduler, discovery, recorder):
    discovery.scan.side_effect = AccessError("conversations.list failed: not_in_channel", code="not_in_channel")
    scheduler = make_scheduler()

    result = await scheduler.run_manual_scan()

    assert not result.success
    assert "/invite @app" in result.error
    [notification] = recorder.of_type(EventType.NOTIFICATION)
    assert notification["title"] == "Slack Discovery Failed"
    assert notification["message"] == result.error
    assert scheduler.get_status().last_error == result.error
    assert not scheduler.is_scanning


@pytest.mark.asyncio
async def test_update_config_restarts_and_persists(make_scheduler, database):
    scheduler = make_scheduler(database=database)
    scheduler.start()

    config = await scheduler.update_config({"interval_minutes": 15}, DiscoveryConfig(lookback_hours=6))

    assert config.scheduler.interval_minutes == 15
    assert config.discovery.lookback_hours == 6
    assert scheduler.is_running
    assert scheduler.scheduler.get_job(SCAN_JOB_ID).trigger.interval.total_seconds() == 900

    raw = await database.read(lambda db: crud.get_setting(db, CONFIG_SETTING_KEY))
    assert json.loads(raw)["scheduler"]["interval_minutes"] == 15

    restored = make_scheduler(database=database, scheduler_config=SchedulerConfig())
    loaded = await restored.load_config()
    assert loaded.scheduler.interval_minutes == 15
    assert loaded.discovery.lookback_hours == 6


@pytest.mark.asyncio
async def test_disabling_through_update_stops_timer(make_scheduler):
    scheduler = make_scheduler()
    scheduler.start()

    await scheduler.update_config({"enabled": False})

    assert not scheduler.is_running
    assert scheduler.scheduler.get_job(SCAN_JOB_ID) is None


@pytest.mark.asyncio
async def test_scans_are_recorded(make_scheduler, discovery, database):
    scheduler = make_scheduler(database=database)

    await scheduler.run_manual_scan()
    discovery.scan.side_effect = RuntimeError("network unreachable")
    await scheduler.run_manual_scan()

    rows = await database.read(lambda db: crud.list_scan_history(db))
    assert [row.success for row in rows] == [False, True]
    assert rows[1].new_suggestions == 2
    assert rows[0].trigger == "manual"
