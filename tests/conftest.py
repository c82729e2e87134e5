import os

# Set *before* any project imports so services pick up test settings
os.environ["TESTING"] = "1"

# Key generated via ``cryptography.fernet.Fernet.generate_key()`` once and
# hard-coded here.  The value is **public** and only used in tests –
# production deployments must provide their own.
os.environ.setdefault(
    "FERNET_SECRET",
    "Mj7MFJspDPjiFBGHZJ5hnx70XAFJ_En6ofIEhn3BoXw=",
)
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ["OPENAI_API_KEY"] = ""

import asyncio
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from typing import Any
from typing import Dict
from typing import List
from typing import Tuple

import pytest
import pytest_asyncio

from chatgate.config import get_settings
from chatgate.database import Database
from chatgate.events.event_bus import EventBus
from chatgate.events.event_bus import EventType
from chatgate.events.publisher import EventPublisher


class FakeClock:
    """Simulated clock: ``sleep()`` advances time instantly and yields once."""

    def __init__(self, start: float = 1000.0):
        self._start = start
        self.now = start
        self.wall_start = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
        self.sleeps: List[float] = []

    def monotonic(self) -> float:
        return self.now

    def utc_now(self) -> datetime:
        return self.wall_start + timedelta(seconds=self.now - self._start)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += max(0.0, seconds)
        await asyncio.sleep(0)

    def advance(self, seconds: float) -> None:
        self.now += seconds


class EventRecorder:
    """Collects every bus event in publish order."""

    def __init__(self, bus: EventBus):
        self.events: List[Tuple[str, Dict[str, Any]]] = []
        self._unsubscribe = bus.subscribe_all(self._record)

    async def _record(self, event_type: EventType, data: Dict[str, Any]) -> None:
        self.events.append((event_type.value, data))

    def types(self) -> List[str]:
        return [event_type for event_type, _ in self.events]

    def of_type(self, event_type: EventType) -> List[Dict[str, Any]]:
        return [data for value, data in self.events if value == event_type.value]

    def close(self) -> None:
        self._unsubscribe()


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def publisher(bus):
    return EventPublisher(bus, source="test")


@pytest.fixture
def recorder(bus):
    recorder = EventRecorder(bus)
    yield recorder
    recorder.close()


@pytest_asyncio.fixture
async def database(tmp_path):
    """File-backed SQLite store so the write queue threads share one database."""

    db = Database(f"sqlite:///{tmp_path / 'chatgate-test.db'}")
    db.create_all()
    yield db
    await db.close()


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Yield to the loop until *predicate()* holds (real time bound)."""

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def wait_for():
    return wait_until
