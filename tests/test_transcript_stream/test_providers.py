"""
Tests for providers module

The Gemini model is replaced by a mock; only request shaping, chunk handling
and error mapping are exercised
"""

import json
import logging
from unittest.mock import AsyncMock, Mock

import pytest
from google.api_core import exceptions as google_exceptions

from src.transcript_stream.error_handler import TransientOverloadError
from src.transcript_stream.models import MergedSegment
from src.transcript_stream.providers import (
    FALLBACK_SUMMARY,
    GeminiStreamSource,
    GeminiSummaryGenerator,
    ReplayStreamSource,
    detect_mime_type,
    estimate_transcription_time,
    strip_code_fences
)


async def collect(stream):
    return [chunk async for chunk in stream]


class TextChunk:
    def __init__(self, text):
        self.text = text


class FinishOnlyChunk:
    @property
    def text(self):
        raise ValueError("no text parts")


def streamed(*chunks):
    async def response():
        for chunk in chunks:
            yield chunk
    return response()


class TestHelpers:
    """Test module-level helpers"""

    @pytest.mark.parametrize("path,expected", [
        ("meeting.mp3", "audio/mpeg"),
        ("meeting.WAV", "audio/wav"),
        ("meeting.wave", "audio/wav"),
        ("meeting.m4a", "audio/mp4"),
        ("meeting.aac", "audio/aac"),
        ("meeting.webm", "audio/webm"),
        ("meeting.ogg", "audio/ogg"),
        ("meeting.flac", "audio/flac"),
        ("meeting.xyz", "audio/mpeg"),
        ("meeting", "audio/mpeg"),
    ])
    def test_detect_mime_type(self, path, expected):
        assert detect_mime_type(path) == expected

    def test_estimate_transcription_time(self):
        # 1h of audio takes about 5 minutes
        assert estimate_transcription_time(3600) == 288

    def test_strip_code_fences(self):
        assert strip_code_fences('```json\n{"title": "T"}\n```') == '{"title": "T"}'


class TestReplayStreamSource:
    """Test suite for ReplayStreamSource"""

    @pytest.mark.asyncio
    async def test_replays_chunks(self):
        source = ReplayStreamSource(["a", "b"])

        assert await collect(source.stream("x.wav", "m-1", {})) == ["a", "b"]
        assert source.calls == 1

    @pytest.mark.asyncio
    async def test_from_records(self):
        records = [{"startTime": 0, "endTime": 1000, "text": "hi"}, {"startTime": 1000, "endTime": 2000, "text": "yo"}]

        source = ReplayStreamSource.from_records(records, chunk_size=10)
        chunks = await collect(source.stream("x.wav", "m-1", {}))

        assert all(len(chunk) <= 10 for chunk in chunks)
        lines = "".join(chunks).splitlines()
        assert [json.loads(line) for line in lines] == records

    @pytest.mark.asyncio
    async def test_error_after_chunks(self):
        source = ReplayStreamSource(["a"], error=TransientOverloadError("503 overloaded"))
        seen = []

        with pytest.raises(TransientOverloadError):
            async for chunk in source.stream("x.wav", "m-1", {}):
                seen.append(chunk)

        assert seen == ["a"]


class TestGeminiStreamSource:
    """Test suite for GeminiStreamSource"""

    def setup_method(self):
        self.model = Mock()
        self.model.generate_content_async = AsyncMock()
        self.source = GeminiStreamSource(None, "gemini-2.5-pro", model=self.model)

    def test_requires_api_key_without_model(self):
        with pytest.raises(ValueError):
            GeminiStreamSource(None)

    @pytest.mark.asyncio
    async def test_streams_chunk_text(self, tmp_path):
        audio = tmp_path / "meeting.m4a"
        audio.write_bytes(b"audio")
        self.model.generate_content_async.return_value = streamed(
            TextChunk('{"startTime": 0, '), FinishOnlyChunk(), TextChunk('"endTime": 10, "text": "hi"}\n'), TextChunk("")
        )

        chunks = await collect(self.source.stream(audio, "m-1", {"language": "fr"}))

        assert chunks == ['{"startTime": 0, ', '"endTime": 10, "text": "hi"}\n']
        parts = self.model.generate_content_async.call_args[0][0]
        assert "The audio language is fr." in parts[0]
        assert parts[1] == {"mime_type": "audio/mp4", "data": b"audio"}
        assert self.model.generate_content_async.call_args[1] == {"stream": True}

    @pytest.mark.asyncio
    async def test_logs_expected_transcription_time(self, tmp_path, caplog):
        audio = tmp_path / "meeting.wav"
        audio.write_bytes(b"audio")
        self.model.generate_content_async.return_value = streamed()

        with caplog.at_level(logging.INFO, logger="src.transcript_stream.providers"):
            await collect(self.source.stream(audio, "m-1", {"duration_seconds": 3600}))

        assert "[m-1] Expected transcription time: ~288s" in caplog.text

    @pytest.mark.asyncio
    async def test_overload_mapped_to_transient_error(self, tmp_path):
        audio = tmp_path / "meeting.mp3"
        audio.write_bytes(b"audio")
        self.model.generate_content_async.side_effect = google_exceptions.ServiceUnavailable("model overloaded")

        with pytest.raises(TransientOverloadError, match="503"):
            await collect(self.source.stream(audio, "m-1", {}))

    @pytest.mark.asyncio
    async def test_quota_mapped_to_transient_error(self, tmp_path):
        audio = tmp_path / "meeting.mp3"
        audio.write_bytes(b"audio")
        self.model.generate_content_async.side_effect = google_exceptions.ResourceExhausted("quota")

        with pytest.raises(TransientOverloadError):
            await collect(self.source.stream(audio, "m-1", {}))

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self, tmp_path):
        audio = tmp_path / "meeting.mp3"
        audio.write_bytes(b"audio")
        self.model.generate_content_async.side_effect = google_exceptions.InvalidArgument("bad audio")

        with pytest.raises(google_exceptions.InvalidArgument):
            await collect(self.source.stream(audio, "m-1", {}))


class TestGeminiSummaryGenerator:
    """Test suite for GeminiSummaryGenerator"""

    def setup_method(self):
        self.model = Mock()
        self.model.generate_content_async = AsyncMock()
        self.generator = GeminiSummaryGenerator(None, model=self.model)
        self.segments = [
            MergedSegment(0, 4000, "Speaker 1", "Let's review the quarter."),
            MergedSegment(4000, 9000, "Speaker 2", "Revenue is up."),
        ]

    @pytest.mark.asyncio
    async def test_summary(self):
        self.model.generate_content_async.return_value = Mock(
            text='```json\n{"title": "Quarterly review", "description": "Revenue discussion"}\n```'
        )

        summary = await self.generator.generate("m-1", self.segments)

        assert summary == {"title": "Quarterly review", "description": "Revenue discussion"}
        prompt = self.model.generate_content_async.call_args[0][0]
        assert "Speaker 1: Let's review the quarter." in prompt

    @pytest.mark.asyncio
    async def test_long_fields_truncated(self):
        self.model.generate_content_async.return_value = Mock(
            text=json.dumps({"title": "t" * 150, "description": "d" * 600})
        )

        summary = await self.generator.generate("m-1", self.segments)

        assert len(summary["title"]) == 100
        assert len(summary["description"]) == 500

    @pytest.mark.asyncio
    async def test_transcript_excerpt_limited(self):
        long_segments = [MergedSegment(i, i + 1, "Speaker 1", "word " * 100) for i in range(100)]
        self.model.generate_content_async.return_value = Mock(text='{"title": "T", "description": "D"}')

        await self.generator.generate("m-1", long_segments)

        prompt = self.model.generate_content_async.call_args[0][0]
        assert "...(truncated)" in prompt

    @pytest.mark.asyncio
    async def test_invalid_response_falls_back(self):
        self.model.generate_content_async.return_value = Mock(text="Here is your summary!")

        assert await self.generator.generate("m-1", self.segments) == FALLBACK_SUMMARY

    @pytest.mark.asyncio
    async def test_provider_error_falls_back(self):
        self.model.generate_content_async.side_effect = RuntimeError("quota exceeded")

        assert await self.generator.generate("m-1", self.segments) == {"title": "Meeting", "description": ""}

    @pytest.mark.asyncio
    async def test_empty_transcript_falls_back(self):
        assert await self.generator.generate("m-1", []) == FALLBACK_SUMMARY
        self.model.generate_content_async.assert_not_called()
