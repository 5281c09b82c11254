"""
Transcription stream providers

- GeminiStreamSource: Google Gemini streaming generation over the audio file
- ReplayStreamSource: replays recorded text chunks (mock provider for
  development and tests)
- GeminiSummaryGenerator: meeting title/description from the transcript
"""

import asyncio
import json
import logging
import math
from pathlib import Path
from typing import Any, AsyncGenerator, Dict, Iterable, List, Optional, Sequence

from .error_handler import TransientOverloadError
from .models import MergedSegment
from .schemas import summary_payload_fields

logger = logging.getLogger(__name__)

MIME_TYPES = {
    'mp3': 'audio/mpeg',
    'wav': 'audio/wav',
    'wave': 'audio/wav',
    'm4a': 'audio/mp4',
    'aac': 'audio/aac',
    'webm': 'audio/webm',
    'ogg': 'audio/ogg',
    'flac': 'audio/flac',
}
DEFAULT_MIME_TYPE = 'audio/mpeg'

SUMMARY_TRANSCRIPT_LIMIT = 10000
FALLBACK_SUMMARY = {"title": "Meeting", "description": ""}

TRANSCRIPTION_PROMPT = """Transcribe this audio file with speaker diarization and timestamps.
Write one JSON object per line, in chronological order, each with:
- startTime: start timestamp in milliseconds
- endTime: end timestamp in milliseconds
- speaker: speaker identifier (e.g., "SPEAKER_01", "SPEAKER_02")
- text: the transcribed text
- confidence: confidence score between 0 and 1

Return ONLY the JSON lines, no additional text."""

SUMMARY_PROMPT = """Based on this meeting transcript, generate a concise title and description.

IMPORTANT: Generate the title and description in the SAME LANGUAGE as the transcript text.

Transcript:
{transcript}

Return ONLY a JSON object with this exact structure:
{{
  "title": "A short, descriptive title (max 100 characters)",
  "description": "A brief summary of the key topics and outcomes (max 500 characters)"
}}

Do not include any markdown formatting or code blocks, just the JSON object."""


def detect_mime_type(file_path: str) -> str:
    """MIME type from the file extension (audio/mpeg when unknown)"""
    ext = str(file_path).rsplit('.', 1)[-1].lower() if '.' in str(file_path) else ''
    return MIME_TYPES.get(ext, DEFAULT_MIME_TYPE)


def estimate_transcription_time(audio_duration_seconds: float) -> int:
    """Gemini processes at roughly 0.08x real time (1h audio ~ 5 min)"""
    return math.ceil(audio_duration_seconds * 0.08)


class GeminiStreamSource:
    """Streams diarized JSON lines for an audio file from Gemini"""

    def __init__(self, api_key: Optional[str], model_name: str = "gemini-2.5-pro", model=None):
        if model is None:
            if not api_key:
                raise ValueError("GEMINI_API_KEY is required for the Gemini provider")

            import google.generativeai as genai

            genai.configure(api_key=api_key)
            model = genai.GenerativeModel(model_name)

        self.model = model
        self.model_name = model_name

    async def stream(self, audio_path: Path, entity_id: str, options: Dict[str, Any]) -> AsyncGenerator[str, None]:
        from google.api_core import exceptions as google_exceptions

        audio_bytes = await asyncio.to_thread(Path(audio_path).read_bytes)
        mime_type = detect_mime_type(str(audio_path))

        prompt = TRANSCRIPTION_PROMPT
        if options.get("language"):
            prompt += f"\nThe audio language is {options['language']}."

        parts = [prompt, {"mime_type": mime_type, "data": audio_bytes}]

        logger.info(
            f"[{entity_id}] Starting Gemini stream: model={self.model_name}, "
            f"mime={mime_type}, bytes={len(audio_bytes)}"
        )
        if options.get("duration_seconds"):
            logger.info(
                f"[{entity_id}] Expected transcription time: "
                f"~{estimate_transcription_time(options['duration_seconds'])}s"
            )

        try:
            response = await self.model.generate_content_async(parts, stream=True)
            async for chunk in response:
                text = _chunk_text(chunk)
                if text:
                    yield text
        except (google_exceptions.ServiceUnavailable, google_exceptions.ResourceExhausted) as e:
            raise TransientOverloadError(f"503 Gemini model overloaded: {e}") from e


class ReplayStreamSource:
    """Yields pre-recorded chunks, optionally failing after them"""

    def __init__(
        self,
        chunks: Iterable[str],
        delay_seconds: float = 0.0,
        error: Optional[BaseException] = None
    ):
        self.chunks = list(chunks)
        self.delay_seconds = delay_seconds
        self.error = error
        self.calls = 0

    @classmethod
    def from_records(cls, records: Sequence[Dict[str, Any]], chunk_size: int = 64, **kwargs) -> "ReplayStreamSource":
        """Serialize records as JSON lines and cut the text every chunk_size characters"""
        text = "".join(json.dumps(record) + "\n" for record in records)
        chunks = [text[i:i + chunk_size] for i in range(0, len(text), chunk_size)]
        return cls(chunks, **kwargs)

    async def stream(self, audio_path: Path, entity_id: str, options: Dict[str, Any]) -> AsyncGenerator[str, None]:
        self.calls += 1
        for chunk in self.chunks:
            if self.delay_seconds:
                await asyncio.sleep(self.delay_seconds)
            yield chunk

        if self.error is not None:
            raise self.error


class GeminiSummaryGenerator:
    """Generates a meeting title and description; falls back on any error"""

    def __init__(self, api_key: Optional[str], model_name: str = "gemini-2.5-pro", model=None):
        if model is None:
            if not api_key:
                raise ValueError("GEMINI_API_KEY is required for summary generation")

            import google.generativeai as genai

            genai.configure(api_key=api_key)
            model = genai.GenerativeModel(model_name)

        self.model = model

    async def generate(self, entity_id: str, segments: Sequence[MergedSegment]) -> Dict[str, str]:
        try:
            if not segments:
                raise ValueError("No transcriptions found for meeting")

            transcript = build_transcript_text(segments)
            excerpt = transcript[:SUMMARY_TRANSCRIPT_LIMIT]
            if len(transcript) > SUMMARY_TRANSCRIPT_LIMIT:
                excerpt += " ...(truncated)"

            response = await self.model.generate_content_async(SUMMARY_PROMPT.format(transcript=excerpt))
            payload = json.loads(strip_code_fences(response.text))
            if not isinstance(payload, dict):
                raise ValueError("Summary response is not a JSON object")

            summary = summary_payload_fields(payload)
            logger.info(f"[{entity_id}] Meeting summary generated: {summary['title']}")
            return summary

        except Exception as e:
            logger.error(f"[{entity_id}] Error generating meeting summary: {e}")
            return dict(FALLBACK_SUMMARY)


def build_transcript_text(segments: Sequence[MergedSegment]) -> str:
    """'speaker: text' lines"""
    return "\n".join(f"{segment.speaker_label}: {segment.text}" for segment in segments)


def strip_code_fences(text: str) -> str:
    cleaned = text.strip()
    lines: List[str] = [line for line in cleaned.splitlines() if not line.strip().startswith("```")]
    return "\n".join(lines).strip()


def _chunk_text(chunk) -> str:
    try:
        return chunk.text or ""
    except ValueError:
        # chunk without text parts (e.g. finish_reason only)
        return ""
