"""
Streaming transcription ingestion
Turns a provider's incremental transcription stream into persisted,
speaker-merged transcript segments while the stream is still open

Role: Parsing + Merging + Persistence + Progress tracking per meeting
"""

from .orchestrator import StreamIngestionOrchestrator
from .retry import run_with_retry
from .worker import IngestionWorkerPool, RedisJobConsumer, process_transcription_job

__all__ = [
    "StreamIngestionOrchestrator",
    "run_with_retry",
    "IngestionWorkerPool",
    "RedisJobConsumer",
    "process_transcription_job"
]
