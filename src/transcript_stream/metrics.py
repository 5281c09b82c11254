"""
Prometheus Metrics for streaming transcription ingestion
"""

import logging
from contextlib import contextmanager
import time

from prometheus_client import Counter, Histogram

logger = logging.getLogger(__name__)

# ==============================================================================
# Metrics Definitions
# ==============================================================================

# Segments persisted while the stream is open
transcript_stream_segments_persisted_total = Counter(
    'transcript_stream_segments_persisted_total',
    'Merged segments persisted during streaming'
)

# Segments whose persistence failed (ingestion continues)
transcript_stream_segment_persist_failures_total = Counter(
    'transcript_stream_segment_persist_failures_total',
    'Merged segments that could not be persisted'
)

# Soft parse failures
transcript_stream_parse_failures_total = Counter(
    'transcript_stream_parse_failures_total',
    'Provider lines or elements skipped because they failed to parse',
    ['reason']  # invalid_json, schema_error, validation_error
)

# Out-of-order records rejected by the merge buffer
transcript_stream_records_skipped_total = Counter(
    'transcript_stream_records_skipped_total',
    'Provider records rejected for arriving out of time order'
)

# Stalls
transcript_stream_stalls_total = Counter(
    'transcript_stream_stalls_total',
    'Stall warnings raised while waiting for provider chunks'
)

# Overload retries
transcript_stream_overload_retries_total = Counter(
    'transcript_stream_overload_retries_total',
    'Retries after a transient provider overload',
    ['attempt']
)

# Failures by reason
transcript_stream_failures_total = Counter(
    'transcript_stream_failures_total',
    'Ingestion attempts that ended in the failed state',
    ['reason']
)

# Success counter
transcript_stream_success_total = Counter(
    'transcript_stream_success_total',
    'Ingestion attempts that completed'
)

# Processing Duration (end-to-end, per attempt)
transcript_stream_processing_duration_seconds = Histogram(
    'transcript_stream_processing_duration_seconds',
    'Time from status=processing to the terminal write',
    buckets=[5, 10, 30, 60, 120, 300, 600, 1800]
)

# Segment count per meeting
transcript_stream_segments_per_meeting = Histogram(
    'transcript_stream_segments_per_meeting',
    'Number of merged segments per completed meeting',
    buckets=[0, 10, 50, 100, 200, 500, 1000, 2000]
)


# ==============================================================================
# Metrics Helper Class
# ==============================================================================

class IngestionMetrics:
    """Helper class for recording ingestion metrics"""

    @staticmethod
    def record_segment_persisted():
        transcript_stream_segments_persisted_total.inc()

    @staticmethod
    def record_persist_failure():
        transcript_stream_segment_persist_failures_total.inc()

    @staticmethod
    def record_parse_failure(reason: str):
        """
        Record a soft parse failure

        Args:
            reason: 'invalid_json', 'schema_error' or 'validation_error'
        """
        transcript_stream_parse_failures_total.labels(reason=reason).inc()

    @staticmethod
    def record_skipped_record():
        transcript_stream_records_skipped_total.inc()

    @staticmethod
    def record_stall():
        transcript_stream_stalls_total.inc()

    @staticmethod
    def record_overload_retry(attempt: int):
        transcript_stream_overload_retries_total.labels(attempt=str(attempt)).inc()

    @staticmethod
    def record_failure(reason: str):
        """
        Record ingestion failure

        Args:
            reason: Error code value (e.g. 'transient_overload', 'stream_timeout')
        """
        transcript_stream_failures_total.labels(reason=reason).inc()

    @staticmethod
    def record_success(num_segments: int):
        transcript_stream_success_total.inc()
        transcript_stream_segments_per_meeting.observe(num_segments)

    @staticmethod
    @contextmanager
    def time_processing():
        """Context manager for timing one ingestion attempt"""
        start = time.time()
        try:
            yield
        finally:
            transcript_stream_processing_duration_seconds.observe(time.time() - start)


def start_metrics_server(port: int = 9090):
    """
    Start Prometheus metrics HTTP server

    Args:
        port: HTTP port to expose metrics (default: 9090)
    """
    from prometheus_client import start_http_server

    try:
        start_http_server(port)
        logger.info(f"Prometheus metrics server started on port {port}")
    except Exception as e:
        logger.error(f"Failed to start Prometheus metrics server: {e}")
        raise
