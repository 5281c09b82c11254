"""
Shared fixtures: in-memory stores standing in for PostgreSQL and MinIO
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from src.transcript_stream.config import StreamIngestionConfig
from src.transcript_stream.models import IngestionStatus


class InMemorySegmentStore:
    """Records every saved segment; ``fail_on`` lists 1-based save calls that raise"""

    def __init__(self, fail_on=()):
        self.segments: Dict[str, List[Any]] = {}
        self.fail_on = set(fail_on)
        self.save_calls = 0
        self.deleted = 0

    async def save_segments(self, entity_id, segments):
        self.save_calls += 1
        if self.save_calls in self.fail_on:
            raise RuntimeError(f"database unavailable (save #{self.save_calls})")
        self.segments.setdefault(entity_id, []).extend(segments)
        return list(segments)

    async def count_segments(self, entity_id):
        return len(self.segments.get(entity_id, []))

    async def delete_segments(self, entity_id):
        removed = len(self.segments.pop(entity_id, []))
        self.deleted += removed
        return removed


class InMemoryStatusStore:
    """Keeps the full history of status writes for ordering assertions"""

    def __init__(self, duration_seconds: Optional[float] = None):
        self.duration_seconds = duration_seconds
        self.history: List[tuple] = []
        self.metadata: Dict[str, Dict[str, Any]] = {}
        self.summaries: Dict[str, Dict[str, str]] = {}
        self.errors: Dict[str, Optional[str]] = {}

    async def update_status(self, entity_id, status, progress, error_message=None):
        self.history.append((entity_id, IngestionStatus(status), progress))
        self.errors[entity_id] = error_message

    async def update_metadata(self, entity_id, partial_metadata):
        self.metadata.setdefault(entity_id, {}).update(partial_metadata)

    async def update_summary(self, entity_id, title, description):
        self.summaries[entity_id] = {"title": title, "description": description}

    async def get_duration_seconds(self, entity_id):
        return self.duration_seconds

    def statuses(self, entity_id):
        return [status for eid, status, _ in self.history if eid == entity_id]

    def progress_values(self, entity_id):
        return [progress for eid, _, progress in self.history if eid == entity_id]

    def terminal_writes(self, entity_id):
        return [status for status in self.statuses(entity_id) if status.is_terminal]


class FakeAudioStore:
    """Serves bytes for remote URIs and resolves local:// under ``root``"""

    def __init__(self, root: Path, blobs: Optional[Dict[str, bytes]] = None, error: Optional[Exception] = None):
        self.root = root
        self.blobs = blobs or {}
        self.error = error
        self.downloads: List[str] = []

    def get_local_path(self, uri):
        if uri.startswith("local://"):
            return self.root / uri[len("local://"):]
        return None

    async def download(self, uri):
        self.downloads.append(uri)
        if self.error is not None:
            raise self.error
        return self.blobs[uri]


@pytest.fixture
def config(tmp_path):
    return StreamIngestionConfig(
        _env_file=None,
        local_storage_path=str(tmp_path),
        temp_dir=str(tmp_path / "temp"),
        stream_timeout_seconds=5.0,
    )


@pytest.fixture
def segment_store():
    return InMemorySegmentStore()


@pytest.fixture
def status_store():
    return InMemoryStatusStore()


@pytest.fixture
def audio_store(tmp_path):
    return FakeAudioStore(tmp_path, blobs={"minio://audio/meetings/m-1.m4a": b"fake-audio"})
