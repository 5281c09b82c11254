"""
Stream Record Parser

Turns provider text, delivered in arbitrary network chunks, into validated
RawRecords. The provider writes one JSON record per line (possibly wrapped in
markdown fences or laid out as a pretty-printed JSON array); a record may be
split across any number of chunks, so the unterminated tail of every call is
handed back to the caller and prepended to the next chunk.

The functions here keep no state between calls: the same (buffer, new_text)
pair always yields the same records and the same new buffer.
"""

import json
import logging
import re
from typing import Any, Callable, List, Optional, Tuple

from pydantic import ValidationError

from .metrics import IngestionMetrics
from .models import RawRecord
from .schemas import raw_record_errors

logger = logging.getLogger(__name__)

LINE_TERMINATOR = "\n"
FENCE_OPEN = re.compile(r"^```[A-Za-z0-9_-]*")
FENCE_CLOSE = re.compile(r"```$")
STRUCTURAL_LINES = {"[", "]", "],", "{", "}"}

ParseFailureCallback = Callable[[str, str], None]


def parse_chunk(
    buffer: str,
    new_text: str,
    on_failure: Optional[ParseFailureCallback] = None
) -> Tuple[List[RawRecord], str]:
    """
    Parse all complete lines of buffer + new_text

    Args:
        buffer: Partial line carried over from the previous call
        new_text: Newly received chunk text
        on_failure: Optional callback(reason, line) for soft parse failures

    Returns:
        (records, new_buffer) where new_buffer is the unterminated tail,
        left unparsed for the next call
    """
    lines = (buffer + new_text).split(LINE_TERMINATOR)
    new_buffer = lines.pop()

    records: List[RawRecord] = []
    for line in lines:
        records.extend(parse_line(line, on_failure))

    return records, new_buffer


def final_flush(
    buffer: str,
    on_failure: Optional[ParseFailureCallback] = None
) -> List[RawRecord]:
    """Push whatever is left in the buffer through the same line logic"""
    records, _ = parse_chunk(buffer, LINE_TERMINATOR, on_failure)
    return records


def parse_line(line: str, on_failure: Optional[ParseFailureCallback] = None) -> List[RawRecord]:
    """
    Parse one complete line into zero or more records

    Empty lines, bare fence markers and bare array brackets produce nothing.
    A JSON array line is flattened. Anything that fails to decode or validate
    is reported and skipped.
    """
    cleaned = _strip_fences(line.strip())
    if not cleaned or cleaned in STRUCTURAL_LINES:
        return []

    try:
        payload = _decode(cleaned)
    except json.JSONDecodeError as e:
        _report(on_failure, "invalid_json", line, e.msg)
        return []

    items = payload if isinstance(payload, list) else [payload]

    records = []
    for item in items:
        record = _to_record(item, line, on_failure)
        if record is not None:
            records.append(record)
    return records


def _strip_fences(text: str) -> str:
    text = FENCE_OPEN.sub("", text, count=1)
    text = FENCE_CLOSE.sub("", text, count=1)
    return text.strip()


def _decode(text: str) -> Any:
    """
    Decode a line, tolerating the array punctuation of a pretty-printed
    JSON array (leading '[', trailing ',' or ']').
    """
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        trimmed = text
        if trimmed.startswith("["):
            trimmed = trimmed[1:]
        trimmed = trimmed.rstrip().rstrip(",").rstrip()
        if trimmed.endswith("]"):
            trimmed = trimmed[:-1].rstrip().rstrip(",")
        if trimmed == text:
            raise
        return json.loads(trimmed)


def _to_record(item: Any, line: str, on_failure: Optional[ParseFailureCallback]) -> Optional[RawRecord]:
    errors = raw_record_errors(item)
    if errors:
        _report(on_failure, "schema_error", line, "; ".join(errors))
        return None

    try:
        return RawRecord.model_validate(item)
    except ValidationError as e:
        _report(on_failure, "validation_error", line, str(e.errors()[0].get("msg", e)))
        return None


def _report(on_failure: Optional[ParseFailureCallback], reason: str, line: str, detail: str):
    preview = line.strip()
    if len(preview) > 120:
        preview = preview[:117] + "..."

    logger.warning(f"Skipping stream line ({reason}): {detail} | {preview}")
    IngestionMetrics.record_parse_failure(reason)

    if on_failure is not None:
        on_failure(reason, line)
