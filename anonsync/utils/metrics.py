"""
Prometheus metrics for the sync engine.

Defined once here because the live, catch-up and reindex paths all report to
the same series.
"""

import logging
from typing import Optional

from prometheus_client import Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)

records_anonymized_total = Counter(
    'anonsync_records_anonymized_total',
    'Total customer records anonymized and written to the target collection',
    ['path']
)

flush_duration_seconds = Histogram(
    'anonsync_flush_seconds',
    'Time to anonymize, insert and checkpoint one live batch'
)

flush_failures_total = Counter(
    'anonsync_flush_failures_total',
    'Failed live batch flushes',
    ['error_type']
)

live_batch_size = Gauge(
    'anonsync_live_batch_size',
    'Records currently held in the live batch'
)

checkpoint_writes_total = Counter(
    'anonsync_checkpoint_writes_total',
    'Checkpoint write attempts',
    ['mode', 'status']
)

change_feed_reconnects_total = Counter(
    'anonsync_change_feed_reconnects_total',
    'Change stream reconnect attempts',
    ['error_type']
)


def start_metrics_server(port: Optional[int]) -> None:
    """Expose metrics over HTTP when a port is configured."""
    if not port:
        return
    start_http_server(port)
    logger.info(f"Prometheus metrics exposed on port {port}", extra={"metrics_port": port})
