"""Clock helpers.

Services take a ``Clock`` so tests can drive simulated time: ``monotonic()``
feeds rate-limit windows and timeouts, ``sleep()`` is the only way services
wait, and ``utc_now()`` stamps records.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime
from datetime import timezone


def utc_now() -> datetime:  # noqa: D401 – simple utility
    """Return *aware* current time in UTC."""

    return datetime.now(timezone.utc)


def utc_now_naive() -> datetime:  # noqa: D401 – simple utility
    """Return *naive* current time in UTC for database compatibility."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


class Clock:
    """Real wall/monotonic clock backed by :mod:`time` and :mod:`asyncio`."""

    def monotonic(self) -> float:
        return time.monotonic()

    def utc_now(self) -> datetime:
        return utc_now()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


__all__ = ["Clock", "utc_now", "utc_now_naive"]
