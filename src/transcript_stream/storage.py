"""
Storage module for streaming transcription ingestion
Handles PostgreSQL persistence (segments, meeting status) and audio retrieval
from MinIO or local storage

Session work runs in a worker thread so that concurrent ingestions sharing
the event loop keep streaming while a commit is in flight.
"""

import asyncio
import logging
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from .models import IngestionStatus, MergedSegment, Meeting, TranscriptSegment

logger = logging.getLogger(__name__)

LOCAL_URI_PREFIX = "local://"
REMOTE_SCHEMES = ("minio", "s3")


class SqlSegmentStore:
    """Segment persistence backed by the transcript_segments table"""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def save_segments(self, entity_id: str, segments: Sequence[MergedSegment]) -> List[TranscriptSegment]:
        """
        Append segments for a meeting

        Args:
            entity_id: Meeting ID
            segments: Merged segments, in time order

        Returns:
            Saved TranscriptSegment rows
        """
        rows = await asyncio.to_thread(self._save_segments, entity_id, list(segments))
        logger.debug(f"[{entity_id}] Saved {len(rows)} segments")
        return rows

    async def count_segments(self, entity_id: str) -> int:
        return await asyncio.to_thread(self._count_segments, entity_id)

    async def delete_segments(self, entity_id: str) -> int:
        """Remove all segments of a meeting; returns the number deleted"""
        return await asyncio.to_thread(self._delete_segments, entity_id)

    def _save_segments(self, entity_id: str, segments: List[MergedSegment]) -> List[TranscriptSegment]:
        with self.session_factory() as session:
            try:
                offset = session.query(TranscriptSegment).filter_by(meeting_id=entity_id).count()
                rows = [
                    TranscriptSegment(
                        meeting_id=entity_id,
                        segment_index=offset + idx,
                        start_time_ms=segment.start_time_ms,
                        end_time_ms=segment.end_time_ms,
                        speaker=segment.speaker_label,
                        text=segment.text,
                        confidence=segment.confidence,
                        is_edited=False
                    )
                    for idx, segment in enumerate(segments)
                ]
                session.add_all(rows)
                session.commit()
            except Exception as e:
                logger.error(f"[{entity_id}] Error saving {len(segments)} segments: {e}")
                session.rollback()
                raise
        return rows

    def _count_segments(self, entity_id: str) -> int:
        with self.session_factory() as session:
            return session.query(TranscriptSegment).filter_by(meeting_id=entity_id).count()

    def _delete_segments(self, entity_id: str) -> int:
        with self.session_factory() as session:
            try:
                deleted = session.query(TranscriptSegment).filter_by(meeting_id=entity_id).delete()
                session.commit()
            except Exception as e:
                logger.error(f"[{entity_id}] Error deleting segments: {e}")
                session.rollback()
                raise
        return deleted


class SqlStatusStore:
    """Meeting status/progress persistence backed by the meetings table"""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def update_status(
        self,
        entity_id: str,
        status: IngestionStatus,
        progress: int,
        error_message: Optional[str] = None
    ) -> None:
        """
        Write transcription status and progress as given

        The error message is stored in the transcription metadata; moving back
        to processing (a new attempt) clears it.
        """
        await asyncio.to_thread(self._update_status, entity_id, IngestionStatus(status), int(progress), error_message)

    async def update_metadata(self, entity_id: str, partial_metadata: Dict[str, Any]) -> None:
        """Merge keys into the meeting's transcription metadata"""
        updates = {key: _json_value(value) for key, value in partial_metadata.items()}
        await asyncio.to_thread(self._update_meeting, entity_id, partial(_merge_metadata, updates))

    async def update_summary(self, entity_id: str, title: str, description: str) -> None:
        await asyncio.to_thread(self._update_meeting, entity_id, partial(_set_summary, title, description))

    async def get_duration_seconds(self, entity_id: str) -> Optional[float]:
        return await asyncio.to_thread(self._get_duration_seconds, entity_id)

    def _update_status(
        self,
        entity_id: str,
        status: IngestionStatus,
        progress: int,
        error_message: Optional[str]
    ):
        def apply(meeting: Meeting):
            meeting.transcription_status = status.value
            meeting.transcription_progress = progress

            metadata = dict(meeting.transcription_metadata or {})
            if error_message:
                metadata["errorMessage"] = error_message
            elif status == IngestionStatus.PROCESSING:
                metadata.pop("errorMessage", None)
            meeting.transcription_metadata = metadata

        self._update_meeting(entity_id, apply)

    def _update_meeting(self, entity_id: str, apply: Callable[[Meeting], None]):
        with self.session_factory() as session:
            try:
                apply(self._get_meeting(session, entity_id))
                session.commit()
            except Exception:
                session.rollback()
                raise

    def _get_duration_seconds(self, entity_id: str) -> Optional[float]:
        with self.session_factory() as session:
            meeting = session.query(Meeting).filter_by(id=entity_id).first()
            return meeting.duration_seconds if meeting else None

    @staticmethod
    def _get_meeting(session, entity_id: str) -> Meeting:
        meeting = session.query(Meeting).filter_by(id=entity_id).first()
        if meeting is None:
            raise LookupError(f"Meeting not found: {entity_id}")
        return meeting


class ObjectAudioStore:
    """
    Audio retrieval for ingestion

    - local://relative/path and plain filesystem paths resolve under local storage
    - minio://bucket/key (or s3://bucket/key) is downloaded from MinIO
    """

    def __init__(self, minio_client=None, local_storage_path: str = "./storage"):
        self.minio = minio_client
        self.local_storage_path = Path(local_storage_path)

    def get_local_path(self, uri: str) -> Optional[Path]:
        if uri.startswith(LOCAL_URI_PREFIX):
            return (self.local_storage_path / uri[len(LOCAL_URI_PREFIX):]).resolve()

        parsed = urlparse(uri)
        if parsed.scheme == "file":
            return Path(parsed.path)
        if not parsed.scheme:
            return Path(uri)
        return None

    async def download(self, uri: str) -> bytes:
        bucket, object_key = self.parse_remote_uri(uri)
        if self.minio is None:
            raise RuntimeError(f"No MinIO client configured to download {uri}")

        logger.info(f"Downloading audio from MinIO: {bucket}/{object_key}")
        return await asyncio.to_thread(self._get_object, bucket, object_key)

    def _get_object(self, bucket: str, object_key: str) -> bytes:
        response = self.minio.get_object(bucket, object_key)
        try:
            return response.read()
        finally:
            response.close()
            response.release_conn()

    @staticmethod
    def parse_remote_uri(uri: str) -> Tuple[str, str]:
        """
        Parse minio://bucket/key into (bucket, key)

        Example:
            minio://audio-files/meetings/2025/rec-01.m4a
            → ("audio-files", "meetings/2025/rec-01.m4a")
        """
        parsed = urlparse(uri)
        if parsed.scheme not in REMOTE_SCHEMES:
            raise ValueError(f"Unsupported audio URI scheme: {uri}")
        if not parsed.netloc:
            raise ValueError(f"Audio URI must include bucket name: {uri}")
        object_key = parsed.path.lstrip('/')
        if not object_key:
            raise ValueError(f"Audio URI must include object path: {uri}")
        return parsed.netloc, object_key


def _json_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _merge_metadata(updates: Dict[str, Any], meeting: Meeting):
    metadata = dict(meeting.transcription_metadata or {})
    metadata.update(updates)
    meeting.transcription_metadata = metadata


def _set_summary(title: str, description: str, meeting: Meeting):
    meeting.title = title
    meeting.description = description
