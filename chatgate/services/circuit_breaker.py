"""Keyed circuit breakers.

One :class:`CircuitBreakerEntry` per resource (a channel id, or a logical
name such as ``"liveness"``).  While an entry is open and its ``reset_at``
lies in the future every operation on that resource short-circuits without a
network call.  Entries close themselves lazily the first time they are
queried after ``reset_at``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict
from typing import Optional

from chatgate.metrics import circuit_breaker_open_total
from chatgate.utils.log import log
from chatgate.utils.time import Clock


@dataclass
class CircuitBreakerEntry:
    is_open: bool
    reset_at: float
    reason: Optional[str] = None


class CircuitBreakerMap:
    """Resource-keyed breaker records sharing one clock."""

    def __init__(self, clock: Optional[Clock] = None, kind: str = "resource"):
        self._clock = clock or Clock()
        self._kind = kind
        self._entries: Dict[str, CircuitBreakerEntry] = {}

    def is_open(self, key: str) -> bool:
        entry = self._entries.get(key)
        if entry is None or not entry.is_open:
            return False
        if self._clock.monotonic() >= entry.reset_at:
            del self._entries[key]
            log.info("circuit-breaker", action="closed", kind=self._kind, key=key)
            return False
        return True

    def open(self, key: str, cooldown_seconds: float, reason: Optional[str] = None) -> CircuitBreakerEntry:
        entry = CircuitBreakerEntry(is_open=True, reset_at=self._clock.monotonic() + cooldown_seconds, reason=reason)
        self._entries[key] = entry
        circuit_breaker_open_total.labels(self._kind).inc()
        log.warning("circuit-breaker", action="opened", kind=self._kind, key=key, cooldown=cooldown_seconds)
        return entry

    def close(self, key: str) -> None:
        self._entries.pop(key, None)

    def remaining(self, key: str) -> float:
        """Seconds until *key* closes again (0 when closed)."""

        if not self.is_open(key):
            return 0.0
        return self._entries[key].reset_at - self._clock.monotonic()

    def open_keys(self) -> list[str]:
        return [key for key in list(self._entries) if self.is_open(key)]

    def clear(self) -> None:
        self._entries.clear()


__all__ = ["CircuitBreakerEntry", "CircuitBreakerMap"]
