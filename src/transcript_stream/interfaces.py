"""
Collaborator interfaces consumed by the ingestion pipeline

Concrete implementations live in storage.py (SQLAlchemy, MinIO) and
providers.py (Gemini, replay); tests use in-memory fakes.
"""

from pathlib import Path
from typing import Any, AsyncGenerator, Dict, List, Optional, Protocol, Sequence

from .models import IngestionStatus, MergedSegment


class StreamSource(Protocol):
    """Provider stream of transcription text"""

    def stream(self, audio_path: Path, entity_id: str, options: Dict[str, Any]) -> AsyncGenerator[str, None]:
        """Yield text chunks until the provider ends the stream; closed early on deadline"""
        ...


class SegmentStore(Protocol):
    async def save_segments(self, entity_id: str, segments: Sequence[MergedSegment]) -> List[Any]:
        ...

    async def count_segments(self, entity_id: str) -> int:
        ...

    async def delete_segments(self, entity_id: str) -> int:
        ...


class StatusStore(Protocol):
    async def update_status(
        self,
        entity_id: str,
        status: IngestionStatus,
        progress: int,
        error_message: Optional[str] = None
    ) -> None:
        ...

    async def update_metadata(self, entity_id: str, partial_metadata: Dict[str, Any]) -> None:
        ...

    async def update_summary(self, entity_id: str, title: str, description: str) -> None:
        ...

    async def get_duration_seconds(self, entity_id: str) -> Optional[float]:
        ...


class AudioStore(Protocol):
    async def download(self, uri: str) -> bytes:
        ...

    def get_local_path(self, uri: str) -> Optional[Path]:
        """Path for already-local URIs, None otherwise"""
        ...


class SummaryGenerator(Protocol):
    async def generate(self, entity_id: str, segments: Sequence[MergedSegment]) -> Dict[str, str]:
        """Return {"title": ..., "description": ...}"""
        ...
