"""
Configuration for the streaming transcription ingestion pipeline
"""

from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class StreamIngestionConfig(BaseSettings):
    """Streaming ingestion configuration, loaded from the environment / .env"""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Provider ("gemini" or "mock")
    transcription_provider: str = Field(default="gemini")

    # Gemini provider
    gemini_api_key: Optional[str] = Field(default=None)
    gemini_model: str = Field(default="gemini-2.5-pro")

    # Streaming
    stream_timeout_seconds: float = Field(default=300.0, gt=0)  # 5 min outer deadline
    chunk_stall_timeout_ms: int = Field(default=30000, gt=0)  # 30s
    average_segment_duration_ms: int = Field(default=5000, gt=0)  # 5s
    max_segment_duration_ms: int = Field(default=30000, gt=0)
    max_progress_before_completion: int = Field(default=95, ge=0, le=99)
    default_estimated_segments: int = Field(default=100, gt=0)

    # Provider overload retry
    overload_max_retries: int = Field(default=3, ge=0)
    overload_initial_delay_ms: int = Field(default=5000, ge=0)

    # Audio storage
    local_storage_path: str = Field(default="./storage")
    temp_dir: Optional[str] = Field(default=None)  # defaults to <local_storage_path>/temp
    minio_endpoint: str = Field(default="localhost:9000")
    minio_access_key: str = Field(default="minioadmin")
    minio_secret_key: str = Field(default="minioadmin")
    minio_secure: bool = Field(default=False)
    minio_region: str = Field(default="us-east-1")

    # PostgreSQL
    database_url: str = Field(default="sqlite:///./transcript_stream.db")

    # Redis job stream
    redis_url: str = Field(default="redis://localhost:6379/0")
    redis_stream_name: str = Field(default="transcription.jobs")
    redis_consumer_group: str = Field(default="transcription-workers")
    redis_consumer_name: str = Field(default="worker-1")
    redis_dlq_stream: str = Field(default="transcription.jobs.deadletter")
    redis_block_ms: int = Field(default=5000)
    redis_batch_size: int = Field(default=10)

    # Worker
    worker_concurrency: int = Field(default=2, gt=0)
    metrics_port: Optional[int] = Field(default=None)

    # Logging
    log_level: str = Field(default="INFO")

    @property
    def resolved_temp_dir(self) -> str:
        """Directory for downloaded audio copies"""
        if self.temp_dir:
            return self.temp_dir
        return f"{self.local_storage_path.rstrip('/')}/temp"


class ServiceClients:
    """
    Lazily built service clients for one worker process.

    Created once by the worker entry point and handed to the stores that need
    it; there is no module-level instance.
    """

    def __init__(self, config: Optional[StreamIngestionConfig] = None):
        self.config = config or StreamIngestionConfig()
        self._minio_client = None
        self._redis_client = None
        self._session_factory = None
        self._engine = None

    @property
    def minio(self):
        """Get MinIO client"""
        if self._minio_client is None:
            from minio import Minio
            self._minio_client = Minio(
                self.config.minio_endpoint,
                access_key=self.config.minio_access_key,
                secret_key=self.config.minio_secret_key,
                secure=self.config.minio_secure,
                region=self.config.minio_region
            )
        return self._minio_client

    @property
    def redis(self):
        """Get Redis client"""
        if self._redis_client is None:
            import redis
            self._redis_client = redis.from_url(self.config.redis_url)
        return self._redis_client

    @property
    def session_factory(self):
        """Get SQLAlchemy session factory"""
        if self._session_factory is None:
            from sqlalchemy import create_engine
            from sqlalchemy.orm import sessionmaker
            self._engine = create_engine(self.config.database_url)
            self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)
        return self._session_factory

    def close_all(self):
        """Close all connections"""
        if self._redis_client:
            self._redis_client.close()
            self._redis_client = None

        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._session_factory = None

        # MinIO client doesn't need explicit closing
        self._minio_client = None
