"""
Progress/Status Tracker for one ingestion attempt
"""

import math
from datetime import datetime
from typing import Optional

from .models import IngestionState, IngestionStatus

DEFAULT_ESTIMATED_SEGMENTS = 100
STREAMING_PROGRESS_CAP = 95


class ProgressTracker:
    """
    Counts flushed segments against an estimated total.

    While streaming, the percentage is capped at ``max_progress`` so that only
    the terminal "completed" transition reports 100. Values returned by
    ``record_flush`` never decrease.
    """

    def __init__(self, estimated_total: int, max_progress: int = STREAMING_PROGRESS_CAP):
        if estimated_total <= 0:
            raise ValueError("estimated_total must be positive")

        self.estimated_total = estimated_total
        self.max_progress = max_progress
        self.processed_segments = 0
        self.progress_percent = 0
        self.status = IngestionStatus.PENDING
        self.started_at: Optional[datetime] = None
        self.last_chunk_at: Optional[datetime] = None
        self.completed_at: Optional[datetime] = None
        self.error_message: Optional[str] = None

    @staticmethod
    def estimate_total(
        duration_seconds: Optional[float],
        avg_segment_duration_ms: int,
        fallback: int = DEFAULT_ESTIMATED_SEGMENTS
    ) -> int:
        """
        Estimate how many segments a recording will produce

        Args:
            duration_seconds: Audio duration, None when unknown
            avg_segment_duration_ms: Expected average segment length
            fallback: Estimate used when the duration is unknown

        Returns:
            ceil(duration_ms / avg_segment_duration_ms), at least 1
        """
        if not duration_seconds or duration_seconds <= 0 or avg_segment_duration_ms <= 0:
            return fallback
        return max(1, math.ceil(duration_seconds * 1000 / avg_segment_duration_ms))

    def start(self, now: Optional[datetime] = None) -> IngestionState:
        self.status = IngestionStatus.PROCESSING
        self.started_at = now or datetime.utcnow()
        return self.snapshot()

    def mark_chunk(self, now: Optional[datetime] = None) -> datetime:
        self.last_chunk_at = now or datetime.utcnow()
        return self.last_chunk_at

    def record_flush(self, processed_count: int) -> int:
        """
        Record the number of segments persisted so far

        Returns:
            Progress percentage, in [previous value, max_progress]
        """
        self.processed_segments = max(self.processed_segments, processed_count)
        percent = math.floor(self.processed_segments / self.estimated_total * 100)
        self.progress_percent = max(self.progress_percent, min(self.max_progress, percent))
        return self.progress_percent

    def finalize(self, now: Optional[datetime] = None) -> int:
        """Mark completion; the only path to 100"""
        self.status = IngestionStatus.COMPLETED
        self.completed_at = now or datetime.utcnow()
        self.progress_percent = 100
        return self.progress_percent

    def fail(self, error_message: str) -> IngestionState:
        self.status = IngestionStatus.FAILED
        self.error_message = error_message
        self.progress_percent = 0
        return self.snapshot()

    def snapshot(self) -> IngestionState:
        return IngestionState(
            status=self.status,
            progress_percent=self.progress_percent,
            started_at=self.started_at,
            completed_at=self.completed_at,
            last_chunk_at=self.last_chunk_at,
            processed_segments=self.processed_segments,
            estimated_total_segments=self.estimated_total,
            error_message=self.error_message,
        )
