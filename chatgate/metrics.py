"""Prometheus metrics for the integration gateway.

The module bundles all counters in one place so importing side-effects
(metric registration) happen exactly once per process.  Services simply
``from chatgate.metrics import …`` and increment.
"""

from __future__ import annotations

from prometheus_client import Counter
from prometheus_client import Histogram

# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------

rate_limit_wait_total = Counter(
    "chatgate_rate_limit_wait_total",
    "Number of times a request waited for its rate-limit budget",
    labelnames=("endpoint",),
)

rate_limit_retry_total = Counter(
    "chatgate_rate_limit_retry_total",
    "Retries executed after a 429 / transient failure",
    labelnames=("endpoint", "reason"),
)

rate_limit_exhausted_total = Counter(
    "chatgate_rate_limit_exhausted_total",
    "Requests that failed after exhausting all retries",
    labelnames=("endpoint",),
)

circuit_breaker_open_total = Counter(
    "chatgate_circuit_breaker_open_total",
    "Circuit breakers opened, by resource kind",
    labelnames=("kind",),
)

# ---------------------------------------------------------------------------
# Connection health
# ---------------------------------------------------------------------------

health_check_total = Counter(
    "chatgate_health_check_total",
    "Connection liveness checks by outcome",
    labelnames=("outcome",),
)

# ---------------------------------------------------------------------------
# Scans and jobs
# ---------------------------------------------------------------------------

scan_total = Counter(
    "chatgate_scan_total",
    "Discovery scans by trigger and outcome",
    labelnames=("trigger", "outcome"),
)

analysis_job_total = Counter(
    "chatgate_analysis_job_total",
    "Analysis jobs by terminal status",
    labelnames=("status",),
)

analysis_job_seconds = Histogram(
    "chatgate_analysis_job_seconds",
    "Wall time of completed analysis jobs (seconds)",
    buckets=(0.5, 1, 2.5, 5, 10, 30, 60, 120, 300),
)
