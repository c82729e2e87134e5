"""Tier-aware rate limiter for outbound chat-platform calls.

Slack assigns every Web API method to one of four rate-limit tiers (requests
per minute).  :class:`RateLimiter` keeps one rolling 60 second window per
``(workspace, endpoint)`` key and guarantees that:

* no key dispatches more requests inside any 60 s window than its tier allows,
* an explicit ``Retry-After`` from the remote blocks the whole key until it
  expires, not only the caller that received it,
* 429 responses are retried with the remote's delay or exponential back-off
  (5 s – 120 s, jittered) up to ``max_retries`` attempts.

Admission is serialised per key with an :class:`asyncio.Lock` so concurrent
callers are dispatched in budget order.  The lock is held only while waiting
for budget, never while the remote call itself is in flight.
"""

from __future__ import annotations

import asyncio
import random
import re
from collections import deque
from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
from enum import IntEnum
from typing import Awaitable
from typing import Callable
from typing import Deque
from typing import Dict
from typing import Optional
from typing import TypeVar

import httpx

from chatgate.errors import RateLimitError
from chatgate.errors import RateLimitExhaustedError
from chatgate.errors import TransientError
from chatgate.events.publisher import EventPublisher
from chatgate.metrics import rate_limit_exhausted_total
from chatgate.metrics import rate_limit_retry_total
from chatgate.metrics import rate_limit_wait_total
from chatgate.utils.log import log
from chatgate.utils.time import Clock

T = TypeVar("T")

WINDOW_SECONDS = 60.0


class RateLimitTier(IntEnum):
    """Requests per 60 s window for each Slack tier."""

    TIER_1 = 1
    TIER_2 = 20
    TIER_3 = 50
    TIER_4 = 100


# Static endpoint -> tier table (Slack documentation).  Unknown methods fall
# back to Tier 3.
METHOD_TIERS: Dict[str, RateLimitTier] = {
    # Tier 1 – history style reads
    "conversations.history": RateLimitTier.TIER_1,
    "conversations.replies": RateLimitTier.TIER_1,
    "users.profile.set": RateLimitTier.TIER_1,
    # Tier 2 – listings
    "conversations.list": RateLimitTier.TIER_2,
    "users.list": RateLimitTier.TIER_2,
    "users.info": RateLimitTier.TIER_2,
    "oauth.v2.access": RateLimitTier.TIER_2,
    # Tier 3 – single-object info
    "conversations.info": RateLimitTier.TIER_3,
    "conversations.join": RateLimitTier.TIER_3,
    "team.info": RateLimitTier.TIER_3,
    "auth.test": RateLimitTier.TIER_3,
    # Tier 4 – writes
    "chat.postMessage": RateLimitTier.TIER_4,
    "chat.update": RateLimitTier.TIER_4,
    "chat.delete": RateLimitTier.TIER_4,
}

DEFAULT_TIER = RateLimitTier.TIER_3

_RETRY_AFTER_RE = re.compile(r"retry.?after[:\s]+(\d+(?:\.\d+)?)", re.IGNORECASE)


def get_method_tier(endpoint: str) -> RateLimitTier:
    return METHOD_TIERS.get(endpoint, DEFAULT_TIER)


@dataclass
class RateLimitOptions:
    """Per-call knobs for :meth:`RateLimiter.execute`."""

    enabled: bool = True
    respect_retry_after: bool = True
    # Inclusive – the first try counts.
    max_retries: int = 3
    retry_transient: bool = True
    base_delay: float = 1.0
    min_backoff: float = 5.0
    max_backoff: float = 120.0
    jitter: float = 0.3


@dataclass
class RateLimitWindow:
    """Dispatch log for one ``(workspace, endpoint)`` key."""

    timestamps: Deque[float] = field(default_factory=deque)
    retry_after_until: Optional[float] = None

    @property
    def request_count(self) -> int:
        return len(self.timestamps)

    @property
    def window_start(self) -> Optional[float]:
        return self.timestamps[0] if self.timestamps else None

    def prune(self, now: float) -> None:
        """Drop dispatches that fell out of the rolling window."""
        while self.timestamps and now - self.timestamps[0] >= WINDOW_SECONDS:
            self.timestamps.popleft()


class RateLimiter:
    """Admission control and 429 handling for remote API calls."""

    def __init__(
        self,
        publisher: Optional[EventPublisher] = None,
        clock: Optional[Clock] = None,
        default_options: Optional[RateLimitOptions] = None,
        rng: Callable[[], float] = random.random,
    ):
        self._publisher = publisher
        self._clock = clock or Clock()
        self._default_options = default_options or RateLimitOptions()
        self._rng = rng
        self._windows: Dict[str, RateLimitWindow] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def execute(
        self,
        endpoint: str,
        workspace: str,
        operation: Callable[[], Awaitable[T]],
        options: Optional[RateLimitOptions] = None,
    ) -> T:
        """Run *operation* within the budget of ``(workspace, endpoint)``.

        Raises whatever *operation* raises for non-retryable failures,
        :class:`RateLimitExhaustedError` once 429 retries are used up, and
        the last :class:`TransientError` once transient retries are used up.
        """

        opts = options or self._default_options
        if not opts.enabled:
            return await operation()

        tier = get_method_tier(endpoint)
        key = self._key(workspace, endpoint)

        attempt = 1
        while True:
            await self._acquire(key, endpoint, workspace, tier)

            try:
                return await operation()
            except Exception as exc:
                if self._is_rate_limit_error(exc):
                    if attempt >= opts.max_retries:
                        rate_limit_exhausted_total.labels(endpoint).inc()
                        log.warning("rate-limit", action="retries-exhausted", endpoint=endpoint, attempts=attempt)
                        raise RateLimitExhaustedError(endpoint, attempt) from exc

                    retry_after = self._extract_retry_after(exc)
                    rate_limit_retry_total.labels(endpoint, "rate_limited").inc()
                    if retry_after is not None and opts.respect_retry_after:
                        # Block the whole key; the next _acquire() waits it out.
                        self._set_retry_after(key, retry_after)
                        log.info("rate-limit", action="retry-after", endpoint=endpoint, seconds=retry_after)
                    else:
                        delay = self.compute_backoff(attempt, opts)
                        log.info("rate-limit", action="backoff", endpoint=endpoint, seconds=round(delay, 3))
                        await self._clock.sleep(delay)
                    attempt += 1
                    continue

                if opts.retry_transient and isinstance(exc, TransientError) and attempt < opts.max_retries:
                    delay = self.compute_backoff(attempt, opts)
                    rate_limit_retry_total.labels(endpoint, "transient").inc()
                    log.info("rate-limit", action="transient-retry", endpoint=endpoint, seconds=round(delay, 3))
                    await self._clock.sleep(delay)
                    attempt += 1
                    continue

                raise

    def compute_backoff(self, attempt: int, options: Optional[RateLimitOptions] = None) -> float:
        """Exponential back-off with jitter, clamped to ``[min_backoff, max_backoff]``."""

        opts = options or self._default_options
        delay = opts.base_delay * (2 ** (attempt - 1))
        delay *= 1 + self._rng() * opts.jitter
        return min(max(delay, opts.min_backoff), opts.max_backoff)

    def calculate_wait_time(self, workspace: str, endpoint: str) -> float:
        """Seconds until the next request for the key may be dispatched."""

        return self._wait_time(self._key(workspace, endpoint), get_method_tier(endpoint))

    def clear_state(self, workspace: Optional[str] = None) -> None:
        """Forget windows for one workspace (or all of them)."""

        if workspace is None:
            self._windows.clear()
            return
        prefix = f"{workspace}:"
        for key in [k for k in self._windows if k.startswith(prefix)]:
            del self._windows[key]

    def get_status(self, workspace: str, endpoint: str) -> Optional[dict]:
        window = self._windows.get(self._key(workspace, endpoint))
        if window is None:
            return None
        window.prune(self._clock.monotonic())
        return {
            "requests": window.request_count,
            "limit": int(get_method_tier(endpoint)),
            "window_start": window.window_start,
            "retry_after_until": window.retry_after_until,
        }

    def get_window(self, workspace: str, endpoint: str) -> Optional[RateLimitWindow]:
        window = self._windows.get(self._key(workspace, endpoint))
        return replace(window, timestamps=deque(window.timestamps)) if window else None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _key(workspace: str, endpoint: str) -> str:
        return f"{workspace}:{endpoint}"

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def _acquire(self, key: str, endpoint: str, workspace: str, tier: RateLimitTier) -> None:
        async with self._lock_for(key):
            while True:
                wait = self._wait_time(key, tier)
                if wait <= 0:
                    break
                rate_limit_wait_total.labels(endpoint).inc()
                log.info("rate-limit", action="waiting", endpoint=endpoint, workspace=workspace, wait_ms=int(wait * 1000))
                if self._publisher is not None:
                    await self._publisher.rate_limit_waiting(endpoint, workspace, int(wait * 1000), int(tier))
                await self._clock.sleep(wait)
            self._record(key)

    def _wait_time(self, key: str, tier: RateLimitTier) -> float:
        window = self._windows.get(key)
        if window is None:
            return 0.0

        now = self._clock.monotonic()

        if window.retry_after_until is not None:
            if now < window.retry_after_until:
                return window.retry_after_until - now
            window.retry_after_until = None

        window.prune(now)

        if window.request_count >= int(tier):
            # Full window: wait until the oldest dispatch rolls out.
            return max(0.0, window.timestamps[0] + WINDOW_SECONDS - now)

        if tier == RateLimitTier.TIER_1 and window.timestamps:
            # One request per rolling minute.
            return max(0.0, window.timestamps[-1] + WINDOW_SECONDS - now)

        return 0.0

    def _record(self, key: str) -> None:
        window = self._windows.setdefault(key, RateLimitWindow())
        now = self._clock.monotonic()
        window.prune(now)
        window.timestamps.append(now)

    def _set_retry_after(self, key: str, seconds: float) -> None:
        window = self._windows.setdefault(key, RateLimitWindow())
        window.retry_after_until = self._clock.monotonic() + seconds

    @staticmethod
    def _is_rate_limit_error(exc: Exception) -> bool:
        if isinstance(exc, RateLimitError):
            return not isinstance(exc, RateLimitExhaustedError)
        if isinstance(exc, httpx.HTTPStatusError):
            return exc.response.status_code == 429
        return getattr(exc, "status_code", None) == 429

    @staticmethod
    def _extract_retry_after(exc: Exception) -> Optional[float]:
        retry_after = getattr(exc, "retry_after", None)
        if retry_after is not None:
            return float(retry_after)

        if isinstance(exc, httpx.HTTPStatusError):
            header = exc.response.headers.get("Retry-After")
            if header:
                try:
                    return float(header)
                except ValueError:
                    return None

        match = _RETRY_AFTER_RE.search(str(exc))
        if match:
            return float(match.group(1))
        return None


__all__ = [
    "DEFAULT_TIER",
    "METHOD_TIERS",
    "RateLimitOptions",
    "RateLimitTier",
    "RateLimitWindow",
    "RateLimiter",
    "WINDOW_SECONDS",
    "get_method_tier",
]
