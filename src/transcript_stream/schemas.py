"""
JSON Schema for provider transcription records

Checked before the pydantic model so that structurally wrong payloads
(booleans for numbers, nested objects for text, ...) are rejected up front.
"""

import logging
from typing import Any, Dict

from jsonschema import Draft7Validator

logger = logging.getLogger(__name__)

RAW_RECORD_SCHEMA = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "description": "One diarized transcription unit streamed by the provider",
    "required": ["startTime", "endTime", "text"],
    "properties": {
        "startTime": {
            "type": "number",
            "minimum": 0
        },
        "endTime": {
            "type": "number",
            "minimum": 0
        },
        "speaker": {
            "type": ["string", "null"],
            "maxLength": 100
        },
        "text": {
            "type": "string"
        },
        "confidence": {
            "type": ["number", "null"],
            "minimum": 0.0,
            "maximum": 1.0
        }
    },
    "additionalProperties": True
}

_RAW_RECORD_VALIDATOR = Draft7Validator(RAW_RECORD_SCHEMA)


def raw_record_errors(payload: Any) -> list:
    """
    Validate a decoded payload against RAW_RECORD_SCHEMA

    Args:
        payload: Decoded JSON value

    Returns:
        List of human-readable error messages (empty when valid)
    """
    return [error.message for error in _RAW_RECORD_VALIDATOR.iter_errors(payload)]


def summary_payload_fields(payload: Dict[str, Any]) -> Dict[str, str]:
    """Extract title/description from a generated summary payload"""
    title = payload.get("title") if isinstance(payload.get("title"), str) else None
    description = payload.get("description") if isinstance(payload.get("description"), str) else None
    return {
        "title": (title or "Untitled Meeting")[:100],
        "description": (description or "")[:500],
    }
