"""
Data models for the streaming transcription ingestion pipeline
"""

import math
import re
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from sqlalchemy import Column, String, Integer, DateTime, JSON, Float, Boolean, Text, ForeignKey
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

UNKNOWN_SPEAKER = "Unknown Speaker"
SPEAKER_LABEL_PATTERN = re.compile(r"SPEAKER[_\s](\d+)", re.IGNORECASE)


class IngestionStatus(str, Enum):
    """Transcription status of a meeting"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (IngestionStatus.COMPLETED, IngestionStatus.FAILED)


# ==============================================================================
# Provider records and merged segments
# ==============================================================================

class RawRecord(BaseModel):
    """One transcription unit as reported by the provider"""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    start_time_ms: int = Field(alias="startTime", ge=0)
    end_time_ms: int = Field(alias="endTime", ge=0)
    speaker_label: str = Field(default=UNKNOWN_SPEAKER, alias="speaker", max_length=100)
    text: str
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)

    @field_validator("start_time_ms", "end_time_ms", mode="before")
    @classmethod
    def truncate_fractional_ms(cls, v):
        if isinstance(v, float):
            if not math.isfinite(v):
                raise ValueError(f"time must be a finite number, got {v}")
            return int(v)
        return v

    @field_validator("speaker_label", mode="before")
    @classmethod
    def normalize_speaker(cls, v):
        """SPEAKER_01 -> Speaker 1; missing -> Unknown Speaker"""
        if v is None or not str(v).strip():
            return UNKNOWN_SPEAKER

        label = str(v).strip()
        match = SPEAKER_LABEL_PATTERN.search(label)
        if match:
            return f"Speaker {int(match.group(1))}"
        return label

    @field_validator("text")
    @classmethod
    def strip_text(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("text must not be empty")
        return v

    @model_validator(mode="after")
    def check_time_order(self):
        if self.end_time_ms <= self.start_time_ms:
            raise ValueError(
                f"endTime ({self.end_time_ms}) must be greater than startTime ({self.start_time_ms})"
            )
        return self


@dataclass
class MergedSegment:
    """A flush-ready, single-speaker segment built from one or more raw records"""
    start_time_ms: int
    end_time_ms: int
    speaker_label: str
    text: str
    confidence: Optional[float] = None
    record_count: int = 1

    @property
    def duration_ms(self) -> int:
        return self.end_time_ms - self.start_time_ms

    @classmethod
    def from_record(cls, record: RawRecord) -> "MergedSegment":
        return cls(
            start_time_ms=record.start_time_ms,
            end_time_ms=record.end_time_ms,
            speaker_label=record.speaker_label,
            text=record.text,
            confidence=record.confidence,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Wire/storage representation"""
        return {
            "startTime": self.start_time_ms,
            "endTime": self.end_time_ms,
            "speaker": self.speaker_label,
            "text": self.text,
            "confidence": self.confidence,
        }


# ==============================================================================
# Ingestion bookkeeping
# ==============================================================================

@dataclass
class IngestionState:
    """Ingestion progress attached to a meeting"""
    status: IngestionStatus = IngestionStatus.PENDING
    progress_percent: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_chunk_at: Optional[datetime] = None
    processed_segments: int = 0
    estimated_total_segments: int = 0
    error_message: Optional[str] = None

    def to_metadata(self) -> Dict[str, Any]:
        """camelCase metadata document stored on the meeting"""
        data = asdict(self)
        metadata = {
            "startedAt": data["started_at"],
            "completedAt": data["completed_at"],
            "lastChunkAt": data["last_chunk_at"],
            "processedSegments": data["processed_segments"],
            "estimatedTotal": data["estimated_total_segments"],
        }
        if self.error_message:
            metadata["errorMessage"] = self.error_message
        return metadata


@dataclass
class RetryAttempt:
    """Backoff bookkeeping for one retry (in-memory only)"""
    attempt_number: int
    delay_ms: int


@dataclass
class IngestionResult:
    """Outcome of one successful ingestion"""
    entity_id: str
    segments_count: int
    skipped_records: int = 0
    parse_failures: int = 0
    persist_failures: int = 0
    title: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


# ==============================================================================
# Database tables
# ==============================================================================

class Meeting(Base):
    """Parent recording entity carrying the ingestion state"""
    __tablename__ = "meetings"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))

    title = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    duration_seconds = Column(Float, nullable=True)
    audio_uri = Column(String, nullable=True)

    # Status tracking
    transcription_status = Column(String, default=IngestionStatus.PENDING.value, index=True)
    transcription_progress = Column(Integer, default=0)
    transcription_metadata = Column(JSON, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    segments = relationship("TranscriptSegment", back_populates="meeting", cascade="all, delete-orphan")


class TranscriptSegment(Base):
    """Persisted merged segment"""
    __tablename__ = "transcript_segments"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    meeting_id = Column(String, ForeignKey('meetings.id'), nullable=False, index=True)

    segment_index = Column(Integer, nullable=False)
    start_time_ms = Column(Integer, nullable=False, index=True)
    end_time_ms = Column(Integer, nullable=False)
    speaker = Column(String(100), nullable=False)
    text = Column(Text, nullable=False)
    confidence = Column(Float, nullable=True)
    is_edited = Column(Boolean, default=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    meeting = relationship("Meeting", back_populates="segments")
