"""
Transcription worker

Consumes transcription jobs from a Redis Stream and runs them through the
streaming ingestion orchestrator with bounded concurrency. Provider overload
is retried with backoff around the whole attempt; anything else dead-letters
the job.

Usage:
    python -m src.transcript_stream.worker --concurrency 2 --metrics-port 9108
"""

import argparse
import asyncio
import json
import logging
import traceback
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import ServiceClients, StreamIngestionConfig
from .error_handler import ErrorCode, ErrorContext, ErrorHandler
from .metrics import start_metrics_server
from .orchestrator import StreamIngestionOrchestrator
from .providers import GeminiStreamSource, GeminiSummaryGenerator, ReplayStreamSource
from .retry import run_with_retry
from .storage import ObjectAudioStore, SqlSegmentStore, SqlStatusStore

logger = logging.getLogger(__name__)

# Canned transcript served by the "mock" provider
MOCK_RECORDS = [
    {"startTime": 0, "endTime": 4200, "speaker": "SPEAKER_01", "text": "Good morning everyone, let's get started.", "confidence": 0.96},
    {"startTime": 4200, "endTime": 9800, "speaker": "SPEAKER_02", "text": "Morning. I have the numbers from last week ready.", "confidence": 0.93},
    {"startTime": 9800, "endTime": 15100, "speaker": "SPEAKER_02", "text": "Sign-ups are up twelve percent.", "confidence": 0.91},
    {"startTime": 15100, "endTime": 21000, "speaker": "SPEAKER_01", "text": "Great, let's go through them one by one.", "confidence": 0.95},
]


class TranscriptionJob(BaseModel):
    """Job message on the transcription stream"""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    entity_id: str = Field(alias="entityId", min_length=1)
    asset_uri: str = Field(alias="assetUri", min_length=1)
    options: Dict[str, Any] = Field(default_factory=dict)
    job_id: Optional[str] = Field(default=None, alias="jobId")


def parse_job_message(message_data: Dict[Any, Any]) -> TranscriptionJob:
    """
    Parse a Redis Stream entry into a TranscriptionJob

    Keys and values may be bytes; ``options`` is a JSON object string.

    Raises:
        ValidationError: missing or empty entityId/assetUri
        ValueError: options is not a JSON object
    """
    data: Dict[str, Any] = {}
    for key, value in message_data.items():
        key_str = key.decode('utf-8') if isinstance(key, bytes) else str(key)
        data[key_str] = value.decode('utf-8') if isinstance(value, bytes) else value

    options = data.get('options')
    if isinstance(options, str):
        options = json.loads(options) if options.strip() else {}
        if not isinstance(options, dict):
            raise ValueError("options must be a JSON object")
        data['options'] = options

    return TranscriptionJob.model_validate(data)


@dataclass
class WorkerServices:
    """Everything a job needs, built once per worker process"""
    config: StreamIngestionConfig
    orchestrator: StreamIngestionOrchestrator
    error_handler: ErrorHandler


async def process_transcription_job(
    job: TranscriptionJob,
    services: WorkerServices,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
) -> Dict[str, Any]:
    """
    Run one job: the full ingestion attempt, repeated on provider overload

    Returns:
        {"success": True, "entityId": ..., "segmentsCount": ...}

    Raises:
        The last error once retries are exhausted or on a non-overload failure
    """
    config = services.config
    logger.info(f"[{job.entity_id}] Processing transcription job {job.job_id or ''}".rstrip())

    result = await run_with_retry(
        lambda: services.orchestrator.ingest(job.entity_id, job.asset_uri, job.options),
        max_retries=config.overload_max_retries,
        initial_delay_ms=config.overload_initial_delay_ms,
        sleep=sleep,
        context=job.entity_id
    )

    return {
        "success": True,
        "entityId": job.entity_id,
        "segmentsCount": result.segments_count,
    }


class IngestionWorkerPool:
    """
    Runs job handlers with at most ``concurrency`` in flight.

    A job submitted while another job for the same meeting is still pending
    or running is coalesced onto the existing task.
    """

    def __init__(
        self,
        handler: Callable[[TranscriptionJob], Awaitable[Dict[str, Any]]],
        concurrency: int = 2
    ):
        if concurrency <= 0:
            raise ValueError("concurrency must be positive")

        self.handler = handler
        self.concurrency = concurrency
        self._semaphore = asyncio.Semaphore(concurrency)
        self._tasks: Dict[str, asyncio.Task] = {}
        self._running = 0

    @property
    def pending(self) -> int:
        """Jobs submitted and not yet finished"""
        return len(self._tasks)

    @property
    def running(self) -> int:
        return self._running

    @property
    def available_slots(self) -> int:
        return max(self.concurrency - self.pending, 0)

    def in_flight(self, entity_id: str) -> bool:
        task = self._tasks.get(entity_id)
        return task is not None and not task.done()

    def submit(self, job: TranscriptionJob) -> asyncio.Task:
        if self.in_flight(job.entity_id):
            logger.info(f"[{job.entity_id}] Job already in progress, joining existing attempt")
            return self._tasks[job.entity_id]

        task = asyncio.create_task(self._run(job), name=f"transcription-{job.entity_id}")
        self._tasks[job.entity_id] = task
        task.add_done_callback(partial(self._forget, job.entity_id))
        return task

    async def _run(self, job: TranscriptionJob) -> Dict[str, Any]:
        async with self._semaphore:
            self._running += 1
            try:
                return await self.handler(job)
            finally:
                self._running -= 1

    def _forget(self, entity_id: str, task: asyncio.Task):
        if self._tasks.get(entity_id) is task:
            del self._tasks[entity_id]

    async def join(self):
        """Wait for every submitted job; failures are left to the task owners"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)


class RedisJobConsumer:
    """
    Consumer for the transcription job stream

    Reads only as many entries as the pool has free slots, acknowledges an
    entry once its job completes, and dead-letters it once the job fails.
    """

    def __init__(
        self,
        redis_client,
        pool: IngestionWorkerPool,
        config: StreamIngestionConfig,
        error_handler: Optional[ErrorHandler] = None
    ):
        self.redis = redis_client
        self.pool = pool
        self.config = config
        self.error_handler = error_handler or ErrorHandler(redis_client, config.redis_dlq_stream)
        self.running = False

        self.stream_name = config.redis_stream_name
        self.group_name = config.redis_consumer_group
        self.consumer_name = config.redis_consumer_name
        self.block_ms = config.redis_block_ms
        self.batch_size = config.redis_batch_size

    async def ensure_consumer_group(self):
        """Create consumer group if it doesn't exist"""
        try:
            self.redis.xgroup_create(
                name=self.stream_name,
                groupname=self.group_name,
                id='0',
                mkstream=True
            )
            logger.info(f"Created consumer group '{self.group_name}' for stream '{self.stream_name}'")
        except Exception as e:
            if 'BUSYGROUP' in str(e):
                logger.info(f"Consumer group '{self.group_name}' already exists")
            else:
                logger.error(f"Error creating consumer group: {e}")
                raise

    def handle_message(self, message_id, message_data: Dict[Any, Any]) -> Optional[asyncio.Task]:
        """
        Dispatch one stream entry to the pool

        Returns:
            The job task, or None when the entry was not a valid job
        """
        message_id_str = message_id.decode('utf-8') if isinstance(message_id, bytes) else message_id

        try:
            job = parse_job_message(message_data)
        except (ValidationError, ValueError) as e:
            logger.error(f"Invalid transcription job {message_id_str}: {e}")
            self.error_handler.publish_to_dlq(
                original_message=message_data,
                error_code=ErrorCode.INVALID_JOB,
                error_message=str(e),
                context=ErrorContext(job_id=message_id_str)
            )
            self._ack(message_id)
            return None

        if job.job_id is None:
            job.job_id = message_id_str

        joined = self.pool.in_flight(job.entity_id)
        task = self.pool.submit(job)
        if joined:
            # the first message of the attempt owns its outcome
            task.add_done_callback(partial(self._on_duplicate_done, message_id, job))
        else:
            task.add_done_callback(partial(self._on_job_done, message_id, message_data, job))
        return task

    def _on_job_done(self, message_id, message_data: Dict[Any, Any], job: TranscriptionJob, task: asyncio.Task):
        if task.cancelled():
            logger.warning(f"[{job.entity_id}] Job cancelled, leaving message pending")
            return

        error = task.exception()
        if error is None:
            result = task.result()
            logger.info(f"[{job.entity_id}] Job finished: {result['segmentsCount']} segments")
        else:
            logger.debug(''.join(traceback.format_exception(type(error), error, error.__traceback__)))
            self.error_handler.handle_error(
                error,
                message_data,
                ErrorContext(
                    entity_id=job.entity_id,
                    job_id=job.job_id,
                    asset_uri=job.asset_uri,
                    attempts=self.config.overload_max_retries + 1
                )
            )

        self._ack(message_id)

    def _on_duplicate_done(self, message_id, job: TranscriptionJob, task: asyncio.Task):
        if task.cancelled():
            logger.warning(f"[{job.entity_id}] Job cancelled, leaving duplicate message pending")
            return

        logger.info(f"[{job.entity_id}] Duplicate job message {job.job_id} settled with the running attempt")
        self._ack(message_id)

    def _ack(self, message_id):
        try:
            self.redis.xack(self.stream_name, self.group_name, message_id)
            logger.debug(f"Acknowledged message: {message_id}")
        except Exception as e:
            logger.error(f"Error acknowledging message {message_id}: {e}")

    async def run(self):
        """Run the consumer loop"""
        self.running = True
        await self.ensure_consumer_group()

        logger.info(f"Starting transcription worker: {self.consumer_name}")
        logger.info(f"Stream: {self.stream_name}, Group: {self.group_name}, concurrency: {self.pool.concurrency}")

        while self.running:
            try:
                capacity = min(self.batch_size, self.pool.available_slots)
                if capacity == 0:
                    await asyncio.sleep(0.1)
                    continue

                messages = await asyncio.to_thread(
                    self.redis.xreadgroup,
                    groupname=self.group_name,
                    consumername=self.consumer_name,
                    streams={self.stream_name: '>'},
                    count=capacity,
                    block=self.block_ms
                )

                if not messages:
                    await asyncio.sleep(0.1)
                    continue

                for _stream, stream_messages in messages:
                    for message_id, message_data in stream_messages:
                        self.handle_message(message_id, message_data)

            except asyncio.CancelledError:
                self.running = False
                raise
            except Exception as e:
                logger.error(f"Error in consumer loop: {e}")
                await asyncio.sleep(5)

        await self.pool.join()
        logger.info("Consumer stopped")

    def stop(self):
        """Stop the consumer"""
        self.running = False


def build_services(config: StreamIngestionConfig, clients: ServiceClients) -> WorkerServices:
    """Wire the production stores and provider for one worker process"""
    provider = config.transcription_provider.lower()
    summary_generator = None

    if provider == "gemini":
        stream_source = GeminiStreamSource(config.gemini_api_key, config.gemini_model)
        summary_generator = GeminiSummaryGenerator(config.gemini_api_key, config.gemini_model)
    elif provider == "mock":
        stream_source = ReplayStreamSource.from_records(MOCK_RECORDS)
    else:
        raise ValueError(f"Unknown transcription provider: {config.transcription_provider}")

    logger.info(f"Transcription provider: {provider}")

    orchestrator = StreamIngestionOrchestrator(
        stream_source=stream_source,
        segment_store=SqlSegmentStore(clients.session_factory),
        status_store=SqlStatusStore(clients.session_factory),
        audio_store=ObjectAudioStore(clients.minio, config.local_storage_path),
        config=config,
        summary_generator=summary_generator,
    )

    return WorkerServices(
        config=config,
        orchestrator=orchestrator,
        error_handler=ErrorHandler(clients.redis, config.redis_dlq_stream),
    )


async def run_worker(config: StreamIngestionConfig):
    clients = ServiceClients(config)
    try:
        services = build_services(config, clients)
        pool = IngestionWorkerPool(
            partial(process_transcription_job, services=services),
            concurrency=config.worker_concurrency
        )
        consumer = RedisJobConsumer(clients.redis, pool, config, services.error_handler)
        await consumer.run()
    finally:
        clients.close_all()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Streaming transcription ingestion worker")
    parser.add_argument("--concurrency", type=int, help="Jobs processed in parallel (default: WORKER_CONCURRENCY or 2)")
    parser.add_argument("--metrics-port", type=int, help="Expose Prometheus metrics on this port")
    parser.add_argument("--provider", choices=["gemini", "mock"], help="Transcription provider")
    args = parser.parse_args(argv)

    overrides: Dict[str, Any] = {}
    if args.concurrency is not None:
        overrides["worker_concurrency"] = args.concurrency
    if args.metrics_port is not None:
        overrides["metrics_port"] = args.metrics_port
    if args.provider is not None:
        overrides["transcription_provider"] = args.provider

    config = StreamIngestionConfig(**overrides)

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if config.metrics_port:
        start_metrics_server(config.metrics_port)

    try:
        asyncio.run(run_worker(config))
    except KeyboardInterrupt:
        logger.info("Received interrupt, stopping worker...")


if __name__ == "__main__":
    main()
