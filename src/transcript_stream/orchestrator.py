"""
Streaming ingestion orchestrator

Drives one ingestion attempt for a meeting: provider chunks are parsed into
records, merged into segments, and every flushed segment is saved and
reflected in the meeting's progress before the next chunk is read.
"""

import asyncio
import logging
import traceback
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import StreamIngestionConfig
from .error_handler import ErrorHandler
from .interfaces import AudioStore, SegmentStore, StatusStore, StreamSource, SummaryGenerator
from .metrics import IngestionMetrics
from .models import IngestionResult, IngestionStatus, MergedSegment
from .progress import ProgressTracker
from .segment_merger import SegmentMergeBuffer
from .stall_monitor import StallMonitor
from .stream_parser import final_flush, parse_chunk
from .temp_resources import TemporaryAudioResource

logger = logging.getLogger(__name__)


@dataclass
class StreamLoopState:
    """Loop state owned by a single attempt"""
    buffer: str = ""
    flushed: int = 0
    persisted: List[MergedSegment] = field(default_factory=list)
    parse_failures: int = 0
    persist_failures: int = 0
    skipped_records: int = 0
    chunks: int = 0

    def count_parse_failure(self, reason: str, line: str):
        self.parse_failures += 1


class StreamIngestionOrchestrator:
    """
    Entry point of the pipeline: ``await ingest(entity_id, asset_uri, options)``.

    The meeting ends each attempt in exactly one terminal state: completed
    (progress 100) or failed (with the error message). The local audio copy
    is released after the terminal write on every path.
    """

    def __init__(
        self,
        stream_source: StreamSource,
        segment_store: SegmentStore,
        status_store: StatusStore,
        audio_store: AudioStore,
        config: Optional[StreamIngestionConfig] = None,
        summary_generator: Optional[SummaryGenerator] = None,
        temp_resources: Optional[TemporaryAudioResource] = None
    ):
        self.config = config or StreamIngestionConfig()
        self.stream_source = stream_source
        self.segment_store = segment_store
        self.status_store = status_store
        self.summary_generator = summary_generator
        self.resources = temp_resources or TemporaryAudioResource(audio_store, self.config.resolved_temp_dir)

    async def ingest(self, entity_id: str, asset_uri: str, options: Optional[Dict[str, Any]] = None) -> IngestionResult:
        """
        Run one ingestion attempt

        Args:
            entity_id: Meeting ID
            asset_uri: Audio URI (local://, minio://, s3:// or a filesystem path)
            options: Provider options; ``duration_seconds`` improves the
                progress estimate

        Returns:
            IngestionResult with the number of persisted segments

        Raises:
            Whatever ended the attempt, after the meeting is marked failed
        """
        options = dict(options or {})
        audio_path: Optional[Path] = None

        logger.info(f"[{entity_id}] Starting streaming ingestion of {asset_uri}")

        with IngestionMetrics.time_processing():
            try:
                await self.status_store.update_status(entity_id, IngestionStatus.PROCESSING, 0)
                await self._discard_partial_attempt(entity_id)

                tracker = await self._start_tracker(entity_id, options)

                audio_path = await self.resources.acquire(asset_uri)

                state = await self._consume_with_deadline(entity_id, audio_path, options, tracker)

                result = IngestionResult(
                    entity_id=entity_id,
                    segments_count=len(state.persisted),
                    skipped_records=state.skipped_records,
                    parse_failures=state.parse_failures,
                    persist_failures=state.persist_failures,
                )

                result.title = await self._finalize_summary(entity_id, state.persisted)

                tracker.finalize()
                await self.status_store.update_metadata(entity_id, tracker.snapshot().to_metadata())
                await self.status_store.update_status(entity_id, IngestionStatus.COMPLETED, 100)

            except Exception as e:
                await self._mark_failed(entity_id, e)
                raise

            finally:
                await self.resources.release(audio_path)

        IngestionMetrics.record_success(result.segments_count)
        logger.info(
            f"[{entity_id}] Streaming ingestion completed: {result.segments_count} segments "
            f"({result.parse_failures} unparseable lines, {result.skipped_records} out-of-order records, "
            f"{result.persist_failures} failed saves)"
        )
        return result

    async def _discard_partial_attempt(self, entity_id: str):
        """Segments left by an earlier failed attempt would be duplicated by this one"""
        existing = await self.segment_store.count_segments(entity_id)
        if existing:
            deleted = await self.segment_store.delete_segments(entity_id)
            logger.warning(f"[{entity_id}] Discarded {deleted} segments from a previous attempt")

    async def _start_tracker(self, entity_id: str, options: Dict[str, Any]) -> ProgressTracker:
        duration = options.get("duration_seconds")
        if duration is None:
            duration = await self.status_store.get_duration_seconds(entity_id)

        estimated_total = ProgressTracker.estimate_total(
            duration,
            self.config.average_segment_duration_ms,
            fallback=self.config.default_estimated_segments
        )
        tracker = ProgressTracker(estimated_total, max_progress=self.config.max_progress_before_completion)

        await self.status_store.update_metadata(entity_id, tracker.start().to_metadata())
        return tracker

    async def _consume_with_deadline(
        self,
        entity_id: str,
        audio_path: Path,
        options: Dict[str, Any],
        tracker: ProgressTracker
    ) -> StreamLoopState:
        timeout = self.config.stream_timeout_seconds
        try:
            return await asyncio.wait_for(
                self._consume_stream(entity_id, audio_path, options, tracker),
                timeout=timeout
            )
        except asyncio.TimeoutError as e:
            raise asyncio.TimeoutError(f"Transcription stream exceeded the {timeout:g}s deadline") from e

    async def _consume_stream(
        self,
        entity_id: str,
        audio_path: Path,
        options: Dict[str, Any],
        tracker: ProgressTracker
    ) -> StreamLoopState:
        state = StreamLoopState()
        merger = SegmentMergeBuffer(self.config.max_segment_duration_ms)
        monitor = StallMonitor(self.config.chunk_stall_timeout_ms, entity_id=entity_id)

        stream = self.stream_source.stream(audio_path, entity_id, options)

        async with monitor, aclosing(stream):
            async for chunk in stream:
                monitor.mark_chunk()
                tracker.mark_chunk()
                state.chunks += 1

                if chunk:
                    records, state.buffer = parse_chunk(state.buffer, chunk, state.count_parse_failure)
                    for record in records:
                        segment = merger.offer(record)
                        if segment is not None:
                            await self._persist_segment(entity_id, segment, state, tracker)

                await self._update_metadata_quietly(entity_id, {"lastChunkAt": tracker.last_chunk_at})

        # Provider finished: push the unterminated tail through the parser
        for record in final_flush(state.buffer, state.count_parse_failure):
            segment = merger.offer(record)
            if segment is not None:
                await self._persist_segment(entity_id, segment, state, tracker)
        state.buffer = ""

        segment = merger.flush()
        if segment is not None:
            await self._persist_segment(entity_id, segment, state, tracker)

        state.skipped_records = merger.skipped_records
        logger.debug(f"[{entity_id}] Stream ended after {state.chunks} chunks, {state.flushed} segments flushed")
        return state

    async def _persist_segment(
        self,
        entity_id: str,
        segment: MergedSegment,
        state: StreamLoopState,
        tracker: ProgressTracker
    ):
        state.flushed += 1
        segment_index = state.flushed

        try:
            await self.segment_store.save_segments(entity_id, [segment])
        except Exception as e:
            state.persist_failures += 1
            IngestionMetrics.record_persist_failure()
            logger.error(
                f"[{entity_id}] Error saving segment {segment_index} "
                f"({segment.start_time_ms}-{segment.end_time_ms}ms): {e}"
            )
            return

        state.persisted.append(segment)
        IngestionMetrics.record_segment_persisted()

        progress = tracker.record_flush(len(state.persisted))
        try:
            await self.status_store.update_status(entity_id, IngestionStatus.PROCESSING, progress)
            await self.status_store.update_metadata(entity_id, {"processedSegments": len(state.persisted)})
        except Exception as e:
            logger.error(f"[{entity_id}] Error updating progress to {progress}%: {e}")

        logger.debug(f"[{entity_id}] Segment {segment_index} saved, progress={progress}%")

    async def _update_metadata_quietly(self, entity_id: str, updates: Dict[str, Any]):
        try:
            await self.status_store.update_metadata(entity_id, updates)
        except Exception as e:
            logger.error(f"[{entity_id}] Error updating transcription metadata: {e}")

    async def _finalize_summary(self, entity_id: str, segments: List[MergedSegment]) -> Optional[str]:
        if self.summary_generator is None or not segments:
            return None

        logger.info(f"[{entity_id}] Generating meeting title and description")
        summary = await self.summary_generator.generate(entity_id, segments)
        await self.status_store.update_summary(entity_id, summary["title"], summary["description"])
        return summary["title"]

    async def _mark_failed(self, entity_id: str, error: Exception):
        error_code = ErrorHandler.classify_exception(error)
        message = str(error) or type(error).__name__

        IngestionMetrics.record_failure(error_code.value)
        logger.error(f"[{entity_id}] Streaming ingestion failed ({error_code.value}): {message}")
        logger.debug(traceback.format_exc())

        try:
            await self.status_store.update_status(entity_id, IngestionStatus.FAILED, 0, message)
            await self.status_store.update_metadata(entity_id, {
                "errorCode": error_code.value,
                "failedAt": datetime.utcnow(),
            })
        except Exception as status_error:
            logger.error(f"[{entity_id}] Error updating failed status: {status_error}")
