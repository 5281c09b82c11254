"""
Tests for worker module: job parsing, retry wrapper, bounded pool and the
Redis Streams consumer
"""

import asyncio
import json
from unittest.mock import AsyncMock, Mock

import pytest
from pydantic import ValidationError

from src.transcript_stream.error_handler import ErrorHandler, TransientOverloadError
from src.transcript_stream.models import IngestionResult
from src.transcript_stream.providers import ReplayStreamSource
from src.transcript_stream.worker import (
    IngestionWorkerPool,
    RedisJobConsumer,
    TranscriptionJob,
    WorkerServices,
    build_services,
    parse_job_message,
    process_transcription_job
)

JOB_MESSAGE = {
    b"entityId": b"meeting-1",
    b"assetUri": b"minio://audio/meetings/m-1.m4a",
    b"options": json.dumps({"duration_seconds": 120, "language": "en"}).encode(),
}


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


class TestParseJobMessage:
    """Test suite for parse_job_message"""

    def test_full_message(self):
        job = parse_job_message(JOB_MESSAGE)

        assert job.entity_id == "meeting-1"
        assert job.asset_uri == "minio://audio/meetings/m-1.m4a"
        assert job.options == {"duration_seconds": 120, "language": "en"}
        assert job.job_id is None

    def test_without_options(self):
        job = parse_job_message({"entityId": "meeting-1", "assetUri": "local://m.wav", "jobId": "job-7"})

        assert job.options == {}
        assert job.job_id == "job-7"

    def test_missing_asset_uri(self):
        with pytest.raises(ValidationError):
            parse_job_message({b"entityId": b"meeting-1"})

    def test_empty_entity_id(self):
        with pytest.raises(ValidationError):
            parse_job_message({b"entityId": b"", b"assetUri": b"local://m.wav"})

    @pytest.mark.parametrize("options", [b"[1, 2]", b"{not json"])
    def test_invalid_options(self, options):
        with pytest.raises(ValueError):
            parse_job_message({b"entityId": b"m", b"assetUri": b"local://m.wav", b"options": options})


class TestProcessTranscriptionJob:
    """Test suite for process_transcription_job"""

    @pytest.fixture(autouse=True)
    def setup(self, config):
        self.orchestrator = Mock()
        self.orchestrator.ingest = AsyncMock()
        self.services = WorkerServices(config=config, orchestrator=self.orchestrator, error_handler=ErrorHandler())
        self.job = TranscriptionJob(entityId="meeting-1", assetUri="local://m.wav", options={"language": "en"})
        self.sleep = RecordingSleep()

    @pytest.mark.asyncio
    async def test_success(self):
        self.orchestrator.ingest.return_value = IngestionResult(entity_id="meeting-1", segments_count=12)

        result = await process_transcription_job(self.job, self.services, sleep=self.sleep)

        assert result == {"success": True, "entityId": "meeting-1", "segmentsCount": 12}
        self.orchestrator.ingest.assert_awaited_once_with("meeting-1", "local://m.wav", {"language": "en"})

    @pytest.mark.asyncio
    async def test_overload_retried_with_backoff(self):
        self.orchestrator.ingest.side_effect = [
            TransientOverloadError("503 overloaded"),
            RuntimeError("503 Service Unavailable: model overloaded"),
            IngestionResult(entity_id="meeting-1", segments_count=3),
        ]

        result = await process_transcription_job(self.job, self.services, sleep=self.sleep)

        assert result["segmentsCount"] == 3
        assert self.orchestrator.ingest.await_count == 3
        assert self.sleep.delays == [5.0, 10.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(self):
        self.orchestrator.ingest.side_effect = TransientOverloadError("503 overloaded")

        with pytest.raises(TransientOverloadError):
            await process_transcription_job(self.job, self.services, sleep=self.sleep)

        assert self.orchestrator.ingest.await_count == 4
        assert self.sleep.delays == [5.0, 10.0, 20.0]

    @pytest.mark.asyncio
    async def test_other_failure_not_retried(self):
        self.orchestrator.ingest.side_effect = ValueError("corrupt audio")

        with pytest.raises(ValueError):
            await process_transcription_job(self.job, self.services, sleep=self.sleep)

        assert self.orchestrator.ingest.await_count == 1


class TestIngestionWorkerPool:
    """Test suite for IngestionWorkerPool"""

    def make_job(self, entity_id):
        return TranscriptionJob(entityId=entity_id, assetUri=f"local://{entity_id}.wav")

    def test_invalid_concurrency(self):
        with pytest.raises(ValueError):
            IngestionWorkerPool(AsyncMock(), concurrency=0)

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self):
        active = 0
        peak = 0

        async def handler(job):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return {"success": True, "entityId": job.entity_id, "segmentsCount": 0}

        pool = IngestionWorkerPool(handler, concurrency=2)
        tasks = [pool.submit(self.make_job(f"m-{i}")) for i in range(6)]

        results = await asyncio.gather(*tasks)

        assert peak == 2
        assert [r["entityId"] for r in results] == [f"m-{i}" for i in range(6)]
        assert pool.pending == 0

    @pytest.mark.asyncio
    async def test_same_entity_coalesced(self):
        release = asyncio.Event()
        calls = []

        async def handler(job):
            calls.append(job.entity_id)
            await release.wait()
            return {"success": True, "entityId": job.entity_id, "segmentsCount": 1}

        pool = IngestionWorkerPool(handler, concurrency=2)
        first = pool.submit(self.make_job("m-1"))
        second = pool.submit(self.make_job("m-1"))

        assert first is second
        assert pool.in_flight("m-1")
        release.set()
        await first
        assert calls == ["m-1"]
        assert not pool.in_flight("m-1")

    @pytest.mark.asyncio
    async def test_resubmit_after_completion(self):
        handler = AsyncMock(return_value={"success": True, "entityId": "m-1", "segmentsCount": 0})
        pool = IngestionWorkerPool(handler, concurrency=1)

        first = pool.submit(self.make_job("m-1"))
        await first
        second = pool.submit(self.make_job("m-1"))
        await second

        assert first is not second
        assert handler.await_count == 2

    @pytest.mark.asyncio
    async def test_available_slots(self):
        release = asyncio.Event()

        async def handler(job):
            await release.wait()
            return {}

        pool = IngestionWorkerPool(handler, concurrency=2)
        assert pool.available_slots == 2

        pool.submit(self.make_job("m-1"))
        assert pool.available_slots == 1

        release.set()
        await pool.join()
        assert pool.available_slots == 2


class TestRedisJobConsumer:
    """Test suite for RedisJobConsumer"""

    @pytest.fixture(autouse=True)
    def setup(self, config):
        self.config = config
        self.redis = Mock()
        self.handler = AsyncMock(return_value={"success": True, "entityId": "meeting-1", "segmentsCount": 5})
        self.pool = IngestionWorkerPool(self.handler, concurrency=2)
        self.consumer = RedisJobConsumer(self.redis, self.pool, config)

    def dlq_fields(self):
        stream, fields = self.redis.xadd.call_args[0]
        assert stream == self.config.redis_dlq_stream
        return fields

    @pytest.mark.asyncio
    async def test_ensure_consumer_group(self):
        await self.consumer.ensure_consumer_group()

        self.redis.xgroup_create.assert_called_once_with(
            name="transcription.jobs", groupname="transcription-workers", id="0", mkstream=True
        )

    @pytest.mark.asyncio
    async def test_existing_consumer_group(self):
        self.redis.xgroup_create.side_effect = Exception("BUSYGROUP Consumer Group name already exists")

        await self.consumer.ensure_consumer_group()

    @pytest.mark.asyncio
    async def test_consumer_group_error(self):
        self.redis.xgroup_create.side_effect = ConnectionError("redis down")

        with pytest.raises(ConnectionError):
            await self.consumer.ensure_consumer_group()

    @pytest.mark.asyncio
    async def test_successful_job_acknowledged(self):
        task = self.consumer.handle_message(b"1-0", JOB_MESSAGE)
        await task
        await asyncio.sleep(0)

        job = self.handler.await_args[0][0]
        assert job.entity_id == "meeting-1"
        assert job.job_id == "1-0"
        self.redis.xack.assert_called_once_with("transcription.jobs", "transcription-workers", b"1-0")
        self.redis.xadd.assert_not_called()

    @pytest.mark.asyncio
    async def test_failed_job_dead_lettered(self):
        self.handler.side_effect = TransientOverloadError("503 overloaded")

        task = self.consumer.handle_message(b"2-0", JOB_MESSAGE)
        with pytest.raises(TransientOverloadError):
            await task
        await asyncio.sleep(0)

        fields = self.dlq_fields()
        assert fields["error_code"] == "transient_overload"
        assert fields["entity_id"] == "meeting-1"
        assert json.loads(fields["payload"])["context"]["attempts"] == 4
        self.redis.xack.assert_called_once_with("transcription.jobs", "transcription-workers", b"2-0")

    @pytest.mark.asyncio
    async def test_duplicate_message_dead_lettered_once(self):
        release = asyncio.Event()

        async def failing_handler(job):
            await release.wait()
            raise TransientOverloadError("503 overloaded")

        self.pool.handler = failing_handler

        first = self.consumer.handle_message(b"4-0", JOB_MESSAGE)
        second = self.consumer.handle_message(b"5-0", JOB_MESSAGE)
        assert first is second

        release.set()
        with pytest.raises(TransientOverloadError):
            await first
        await asyncio.sleep(0)

        assert self.redis.xadd.call_count == 1
        assert self.dlq_fields()["entity_id"] == "meeting-1"
        acked = [c[0][2] for c in self.redis.xack.call_args_list]
        assert sorted(acked) == [b"4-0", b"5-0"]

    @pytest.mark.asyncio
    async def test_duplicate_message_acknowledged_on_success(self):
        release = asyncio.Event()

        async def slow_handler(job):
            await release.wait()
            return {"success": True, "entityId": job.entity_id, "segmentsCount": 2}

        self.pool.handler = slow_handler

        task = self.consumer.handle_message(b"6-0", JOB_MESSAGE)
        self.consumer.handle_message(b"7-0", JOB_MESSAGE)
        release.set()
        await task
        await asyncio.sleep(0)

        assert self.redis.xack.call_count == 2
        self.redis.xadd.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_job_dead_lettered(self):
        task = self.consumer.handle_message(b"3-0", {b"entityId": b"meeting-1"})

        assert task is None
        assert self.dlq_fields()["error_code"] == "invalid_job"
        self.redis.xack.assert_called_once()
        self.handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_run_reads_within_capacity_and_stops(self):
        calls = []

        def xreadgroup(**kwargs):
            calls.append(kwargs)
            if len(calls) == 1:
                return [(b"transcription.jobs", [(b"1-0", JOB_MESSAGE)])]
            self.consumer.stop()
            return []

        self.redis.xreadgroup.side_effect = xreadgroup

        await asyncio.wait_for(self.consumer.run(), timeout=5)

        assert calls[0]["count"] == 2
        assert calls[0]["streams"] == {"transcription.jobs": ">"}
        self.handler.assert_awaited_once()
        self.redis.xack.assert_called_once()


class TestBuildServices:
    """Test suite for build_services"""

    def test_mock_provider(self, config):
        config = config.model_copy(update={"transcription_provider": "mock"})

        services = build_services(config, Mock())

        assert isinstance(services.orchestrator.stream_source, ReplayStreamSource)
        assert services.orchestrator.summary_generator is None
        assert services.config is config

    def test_unknown_provider(self, config):
        config = config.model_copy(update={"transcription_provider": "whisper"})

        with pytest.raises(ValueError):
            build_services(config, Mock())
