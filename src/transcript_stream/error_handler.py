"""
Error taxonomy and dead-letter handling for streaming transcription ingestion

Soft failures (a malformed line, one segment that could not be saved) are
logged and counted where they happen and never reach this module. Everything
that ends an ingestion attempt is classified here into an ErrorCode, which is
stored on the meeting, used as the failure metric label, and attached to the
dead-letter entry once the job gives up.
"""

import asyncio
import json
import logging
import traceback
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

OVERLOAD_SIGNATURE = ("503", "overloaded")


class StreamIngestionError(Exception):
    """Base class for ingestion errors"""


class TransientOverloadError(StreamIngestionError):
    """Provider is temporarily unable to serve the request"""


class ResourceAcquisitionError(StreamIngestionError):
    """Audio could not be made available locally"""


def is_transient_overload(exception: BaseException) -> bool:
    """
    True for errors worth retrying with backoff: TransientOverloadError, or
    any error whose message carries both '503' and 'overloaded'.
    """
    if isinstance(exception, TransientOverloadError):
        return True

    message = str(exception).lower()
    return all(token in message for token in OVERLOAD_SIGNATURE)


class ErrorCode(str, Enum):
    """Standardized error codes for ingestion failures"""
    # Soft failures (logged, never terminal)
    PARSE_FAILURE = "parse_failure"
    PERSISTENCE_FAILURE = "persistence_failure"

    # Provider
    TRANSIENT_OVERLOAD = "transient_overload"
    STREAM_TIMEOUT = "stream_timeout"

    # Infrastructure
    RESOURCE_ACQUISITION_FAILED = "resource_acquisition_failed"
    STORAGE_ERROR = "storage_error"
    DATABASE_ERROR = "database_error"

    # Job
    INVALID_JOB = "invalid_job"

    # Unknown
    PROCESSING_FAILURE = "processing_failure"


class RemediationHint(str, Enum):
    """Remediation hints for common error scenarios"""
    RETRY_LATER = "Provider overloaded; job can be re-queued later"
    FIX_JOB_PAYLOAD = "Fix the job message (entityId, assetUri) and re-queue"
    CHECK_AUDIO = "Verify the audio URI exists and is readable by the worker"
    CHECK_INFRASTRUCTURE = "Platform team investigating infrastructure issue"
    CHECK_PROVIDER = "Provider stream exceeded the deadline; check provider health and audio length"
    CONTACT_SUPPORT = "Contact platform team with entity_id for investigation"


class ErrorContext:
    """Context information for error handling"""

    def __init__(
        self,
        entity_id: Optional[str] = None,
        job_id: Optional[str] = None,
        asset_uri: Optional[str] = None,
        attempts: int = 0
    ):
        self.entity_id = entity_id
        self.job_id = job_id
        self.asset_uri = asset_uri
        self.attempts = attempts
        self.timestamp = datetime.utcnow()


class ErrorHandler:
    """Classifies terminal failures and routes them to the dead-letter stream"""

    def __init__(self, redis_client=None, dlq_stream: Optional[str] = None):
        """
        Initialize error handler

        Args:
            redis_client: Redis client for DLQ publishing (None disables publishing)
            dlq_stream: DLQ stream name (e.g., "transcription.jobs.deadletter")
        """
        self.redis = redis_client
        self.dlq_stream = dlq_stream

    def get_remediation_hint(self, error_code: ErrorCode) -> str:
        remediation_map = {
            ErrorCode.TRANSIENT_OVERLOAD: RemediationHint.RETRY_LATER,
            ErrorCode.STREAM_TIMEOUT: RemediationHint.CHECK_PROVIDER,
            ErrorCode.RESOURCE_ACQUISITION_FAILED: RemediationHint.CHECK_AUDIO,
            ErrorCode.STORAGE_ERROR: RemediationHint.CHECK_INFRASTRUCTURE,
            ErrorCode.DATABASE_ERROR: RemediationHint.CHECK_INFRASTRUCTURE,
            ErrorCode.INVALID_JOB: RemediationHint.FIX_JOB_PAYLOAD,
        }

        return remediation_map.get(error_code, RemediationHint.CONTACT_SUPPORT).value

    def is_retryable(self, error_code: ErrorCode) -> bool:
        """Whether re-queueing the job could succeed without changing anything"""
        retryable_errors = {
            ErrorCode.TRANSIENT_OVERLOAD,
            ErrorCode.STREAM_TIMEOUT,
            ErrorCode.STORAGE_ERROR,
            ErrorCode.DATABASE_ERROR,
        }

        return error_code in retryable_errors

    @staticmethod
    def classify_exception(exception: BaseException) -> ErrorCode:
        """
        Classify exception to standardized error code

        Args:
            exception: Python exception

        Returns:
            Standardized ErrorCode
        """
        if is_transient_overload(exception):
            return ErrorCode.TRANSIENT_OVERLOAD

        if isinstance(exception, ResourceAcquisitionError):
            return ErrorCode.RESOURCE_ACQUISITION_FAILED

        if isinstance(exception, (asyncio.TimeoutError, TimeoutError)):
            return ErrorCode.STREAM_TIMEOUT

        exception_str = str(exception).lower()
        exception_type = type(exception).__name__

        if exception_type in ('IntegrityError', 'OperationalError', 'SQLAlchemyError') or 'database' in exception_str:
            return ErrorCode.DATABASE_ERROR

        if exception_type == 'S3Error' or 'minio' in exception_str or 's3' in exception_str:
            return ErrorCode.STORAGE_ERROR

        if 'timeout' in exception_str or 'timed out' in exception_str:
            return ErrorCode.STREAM_TIMEOUT

        return ErrorCode.PROCESSING_FAILURE

    def publish_to_dlq(
        self,
        original_message: Dict[str, Any],
        error_code: ErrorCode,
        error_message: str,
        context: Optional[ErrorContext] = None
    ) -> bool:
        """
        Publish a failed job to the dead-letter stream

        Returns:
            True if successfully published
        """
        if self.redis is None or not self.dlq_stream:
            return False

        try:
            dlq_payload = {
                "original_message": _jsonable(original_message),
                "error": {
                    "code": error_code.value,
                    "message": error_message,
                    "timestamp": datetime.utcnow().isoformat(),
                },
                "remediation": {
                    "hint": self.get_remediation_hint(error_code),
                    "retryable": self.is_retryable(error_code),
                },
                "context": {
                    "entity_id": context.entity_id if context else None,
                    "job_id": context.job_id if context else None,
                    "asset_uri": context.asset_uri if context else None,
                    "attempts": context.attempts if context else 0,
                },
            }

            self.redis.xadd(
                self.dlq_stream,
                {
                    "payload": json.dumps(dlq_payload),
                    "error_code": error_code.value,
                    "entity_id": (context.entity_id if context else None) or "unknown",
                }
            )

            logger.warning(
                f"Published to DLQ: {error_code.value} - "
                f"entity_id={context.entity_id if context else 'unknown'}"
            )
            return True

        except Exception as e:
            logger.error(f"Failed to publish to DLQ: {e}")
            logger.debug(traceback.format_exc())
            return False

    def handle_error(
        self,
        exception: BaseException,
        original_message: Dict[str, Any],
        context: Optional[ErrorContext] = None
    ) -> ErrorCode:
        """Classify, log, and publish to the DLQ"""
        error_code = self.classify_exception(exception)

        log_msg = f"Transcription job failed: {error_code.value} - {exception}"
        if context and context.entity_id:
            log_msg = f"[{context.entity_id}] {log_msg}"
        logger.error(log_msg)

        self.publish_to_dlq(
            original_message=original_message,
            error_code=error_code,
            error_message=str(exception),
            context=context
        )

        return error_code


def _jsonable(message: Dict[Any, Any]) -> Dict[str, Any]:
    """Decode Redis bytes keys/values so the message survives json.dumps"""
    result = {}
    for key, value in message.items():
        key_str = key.decode('utf-8') if isinstance(key, bytes) else str(key)
        result[key_str] = value.decode('utf-8') if isinstance(value, bytes) else value
    return result
