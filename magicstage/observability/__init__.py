"""
Observability infrastructure for production monitoring.

Components:
- metrics.py: Prometheus metrics (counters, histograms, gauges)
- logging.py: Structured JSON logging with request context
- health.py: Liveness and readiness probes
"""

from magicstage.observability.metrics import (
    track_ledger_mutation,
    track_request,
    track_staging_job,
    track_webhook_event,
)

__all__ = [
    "track_request",
    "track_ledger_mutation",
    "track_staging_job",
    "track_webhook_event",
]
