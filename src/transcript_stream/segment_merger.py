"""
Segment Merge Buffer

Accumulates consecutive same-speaker records into one segment until the
speaker changes or the segment would exceed the duration cap.
"""

import logging
from typing import Optional

from .metrics import IngestionMetrics
from .models import MergedSegment, RawRecord

logger = logging.getLogger(__name__)

MAX_SEGMENT_DURATION_MS = 30000


class SegmentMergeBuffer:
    """
    Stateful accumulator for one ingestion attempt.

    Records must arrive in non-decreasing start-time order. A record that
    starts before the previously accepted record is rejected and counted in
    ``skipped_records``; it never touches the accumulating segment, so segments
    already handed out stay as they were.

    A single record longer than the cap is emitted on its own, unchanged.
    """

    def __init__(self, max_segment_duration_ms: int = MAX_SEGMENT_DURATION_MS):
        if max_segment_duration_ms <= 0:
            raise ValueError("max_segment_duration_ms must be positive")

        self.max_segment_duration_ms = max_segment_duration_ms
        self.skipped_records = 0
        self._current: Optional[MergedSegment] = None
        self._confidences: list = []
        self._last_start_ms: Optional[int] = None

    @property
    def pending(self) -> Optional[MergedSegment]:
        """Segment currently accumulating (read-only view)"""
        return self._current

    def offer(self, record: RawRecord) -> Optional[MergedSegment]:
        """
        Feed one record

        Returns:
            The previous segment when it has to be flushed, otherwise None
        """
        if self._last_start_ms is not None and record.start_time_ms < self._last_start_ms:
            self.skipped_records += 1
            IngestionMetrics.record_skipped_record()
            logger.warning(
                f"Skipping out-of-order record: start={record.start_time_ms}ms "
                f"precedes previous start={self._last_start_ms}ms (speaker={record.speaker_label})"
            )
            return None

        self._last_start_ms = record.start_time_ms

        if self._current is None:
            self._start(record)
            return None

        if self._can_merge(record):
            self._merge(record)
            return None

        flushed = self._finish()
        self._start(record)
        return flushed

    def flush(self) -> Optional[MergedSegment]:
        """Drain the pending segment at end of stream"""
        if self._current is None:
            return None
        return self._finish()

    def _can_merge(self, record: RawRecord) -> bool:
        same_speaker = record.speaker_label == self._current.speaker_label
        within_cap = record.end_time_ms - self._current.start_time_ms <= self.max_segment_duration_ms
        return same_speaker and within_cap

    def _start(self, record: RawRecord):
        self._current = MergedSegment.from_record(record)
        self._confidences = [record.confidence] if record.confidence is not None else []

    def _merge(self, record: RawRecord):
        current = self._current
        current.end_time_ms = max(current.end_time_ms, record.end_time_ms)
        current.text = f"{current.text} {record.text}"
        current.record_count += 1
        if record.confidence is not None:
            self._confidences.append(record.confidence)

    def _finish(self) -> MergedSegment:
        segment = self._current
        if self._confidences:
            segment.confidence = round(sum(self._confidences) / len(self._confidences), 4)
        self._current = None
        self._confidences = []
        return segment
