"""
Error handling for the generation orchestration layer.

Provides structured error handling with:
- Categorized error codes for every failure path of a prediction
- User-friendly error messages
- Retry logic determination
- Detailed error context for debugging

The taxonomy separates requests that never started (submission errors)
from predictions that started and then failed, timed out, or finished
without a usable result.
"""

from enum import Enum
from typing import Optional, Dict, Any
import logging

logger = logging.getLogger(__name__)


class ErrorCode(Enum):
    """
    Enumeration of all possible error codes in the pipeline.

    Organized by category:
    - Input Errors: caller supplied something unusable
    - Prediction Errors: outcomes of a submitted provider job
    - Collaborator Errors: vision and text model calls
    - System Errors: persistence and job bookkeeping
    """

    # Input Errors (4xx)
    INVALID_INPUT = "INVALID_INPUT"
    UNKNOWN_MODEL = "UNKNOWN_MODEL"

    # Prediction Errors
    SUBMISSION_REJECTED = "SUBMISSION_REJECTED"
    PROVIDER_FAILED = "PROVIDER_FAILED"
    PREDICTION_TIMEOUT = "PREDICTION_TIMEOUT"
    SUCCEEDED_WITHOUT_RESULT = "SUCCEEDED_WITHOUT_RESULT"
    PREDICTION_CANCELED = "PREDICTION_CANCELED"
    STATUS_CHECK_FAILED = "STATUS_CHECK_FAILED"
    POLLING_CANCELLED = "POLLING_CANCELLED"
    INVALID_TRANSITION = "INVALID_TRANSITION"

    # Collaborator Errors
    VISION_CHECK_FAILED = "VISION_CHECK_FAILED"
    STORYBOARD_PLANNING_FAILED = "STORYBOARD_PLANNING_FAILED"

    # System Errors
    PERSISTENCE_ERROR = "PERSISTENCE_ERROR"

    # Job Management Errors
    JOB_NOT_FOUND = "JOB_NOT_FOUND"
    SEGMENT_NOT_FOUND = "SEGMENT_NOT_FOUND"
    JOB_ALREADY_PROCESSING = "JOB_ALREADY_PROCESSING"


CLIENT_ERROR_CODES = (
    ErrorCode.INVALID_INPUT,
    ErrorCode.UNKNOWN_MODEL,
    ErrorCode.JOB_NOT_FOUND,
    ErrorCode.SEGMENT_NOT_FOUND,
    ErrorCode.JOB_ALREADY_PROCESSING,
)


class PipelineError(Exception):
    """
    Base exception for pipeline errors.

    Provides structured error information including:
    - Error code for categorization
    - Detailed message for logging
    - Context dictionary for debugging
    - User-friendly message for API responses

    Example:
        >>> raise PipelineError(
        ...     ErrorCode.PROVIDER_FAILED,
        ...     "NSFW content detected",
        ...     {"prediction_id": "abc123"}
        ... )
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        user_message: Optional[str] = None
    ):
        """
        Initialize pipeline error.

        Args:
            code: Error code from ErrorCode enum
            message: Detailed error message for logging
            details: Additional context (prediction id, model, etc.)
            user_message: Optional override for user-friendly message
        """
        self.code = code
        self.message = message
        self.details = details or {}
        self._user_message = user_message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert error to dictionary for API responses.

        Example:
            >>> error = PipelineError(ErrorCode.JOB_NOT_FOUND, "No job abc")
            >>> error.to_dict()["error_code"]
            'JOB_NOT_FOUND'
        """
        return {
            "error_code": self.code.value,
            "message": self.message,
            "details": self.details,
            "user_message": self.get_user_friendly_message()
        }

    def get_user_friendly_message(self) -> str:
        """
        Returns user-friendly error message.

        If a custom user message was provided, returns that.
        Otherwise, returns a predefined friendly message based on error code.
        """
        if self._user_message:
            return self._user_message

        friendly_messages = {
            ErrorCode.INVALID_INPUT: "Please check your input and try again.",
            ErrorCode.UNKNOWN_MODEL: "The requested model is not available.",
            ErrorCode.SUBMISSION_REJECTED: "The generation service rejected the request.",
            ErrorCode.PROVIDER_FAILED: "Generation failed. You can retry this segment.",
            ErrorCode.PREDICTION_TIMEOUT: "Generation took too long. You can retry this segment.",
            ErrorCode.SUCCEEDED_WITHOUT_RESULT: "Generation finished without producing output. You can retry this segment.",
            ErrorCode.PREDICTION_CANCELED: "Generation was canceled.",
            ErrorCode.STATUS_CHECK_FAILED: "Could not reach the generation service. Please try again.",
            ErrorCode.POLLING_CANCELLED: "Stopped waiting for generation.",
            ErrorCode.INVALID_TRANSITION: "Internal state error. Please contact support.",
            ErrorCode.VISION_CHECK_FAILED: "Image analysis temporarily unavailable.",
            ErrorCode.STORYBOARD_PLANNING_FAILED: "Failed to plan a new storyboard. Please try again.",
            ErrorCode.PERSISTENCE_ERROR: "Job state could not be saved.",
            ErrorCode.JOB_NOT_FOUND: "Job not found.",
            ErrorCode.SEGMENT_NOT_FOUND: "Segment not found in this job.",
            ErrorCode.JOB_ALREADY_PROCESSING: "Job is already being processed.",
        }

        return friendly_messages.get(
            self.code,
            "An error occurred. Please try again or contact support."
        )

    def log_error(self) -> None:
        """
        Log error with appropriate level and context.

        Client errors and retryable errors log at WARNING, everything
        else at ERROR.
        """
        log_data = {
            "error_code": self.code.value,
            "message": self.message,
            "details": self.details
        }

        if self.code in CLIENT_ERROR_CODES:
            logger.warning(f"Client error: {log_data}")
        elif should_retry(self):
            logger.warning(f"Retryable error: {log_data}")
        else:
            logger.error(f"Pipeline error: {log_data}")

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


def should_retry(error: Exception) -> bool:
    """
    Determines if an error is transient and worth an explicit retry.

    Provider failures, timeouts and empty results are retryable through
    the caller-triggered segment retry. Submission rejections are not:
    the same request would be rejected again.

    Example:
        >>> should_retry(PipelineError(ErrorCode.PREDICTION_TIMEOUT, "gave up"))
        True
        >>> should_retry(PipelineError(ErrorCode.SUBMISSION_REJECTED, "bad model"))
        False
    """
    transient_error_codes = [
        ErrorCode.PROVIDER_FAILED,
        ErrorCode.PREDICTION_TIMEOUT,
        ErrorCode.SUCCEEDED_WITHOUT_RESULT,
        ErrorCode.STATUS_CHECK_FAILED,
        ErrorCode.VISION_CHECK_FAILED,
        ErrorCode.STORYBOARD_PLANNING_FAILED,
        ErrorCode.PERSISTENCE_ERROR,
    ]

    if isinstance(error, PipelineError):
        return error.code in transient_error_codes

    if isinstance(error, (TimeoutError, ConnectionError)):
        return True

    return False


class ValidationError(PipelineError):
    """Error for input validation failures."""

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[Dict] = None):
        error_details = details or {}
        if field:
            error_details["field"] = field

        super().__init__(
            ErrorCode.INVALID_INPUT,
            message,
            error_details
        )


class SubmissionError(PipelineError):
    """
    The provider never started the prediction.

    Raised by the gateway for unknown models, empty prompts and outright
    provider rejections. There is no handle to poll.
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.SUBMISSION_REJECTED,
        status_code: Optional[int] = None,
        details: Optional[Dict] = None
    ):
        error_details = details or {}
        if status_code is not None:
            error_details["status_code"] = status_code
        super().__init__(code, message, error_details)


class PredictionError(PipelineError):
    """A submitted prediction reached a terminal state without a usable result."""

    code_for_kind: ErrorCode = ErrorCode.PROVIDER_FAILED

    def __init__(self, prediction_id: str, message: str, details: Optional[Dict] = None):
        error_details = details or {}
        error_details["prediction_id"] = prediction_id
        self.prediction_id = prediction_id
        super().__init__(self.code_for_kind, message, error_details)


class ProviderFailureError(PredictionError):
    """The provider reported the prediction as failed."""

    code_for_kind = ErrorCode.PROVIDER_FAILED


class PredictionTimeoutError(PredictionError):
    """Polling exhausted its tick budget before a terminal status."""

    code_for_kind = ErrorCode.PREDICTION_TIMEOUT


class SucceededWithoutResultError(PredictionError):
    """The provider reported success but returned no output URI."""

    code_for_kind = ErrorCode.SUCCEEDED_WITHOUT_RESULT


class PredictionCanceledError(PredictionError):
    """The prediction was canceled on the provider side."""

    code_for_kind = ErrorCode.PREDICTION_CANCELED


class StatusCheckError(PredictionError):
    """Status checks kept failing after retries."""

    code_for_kind = ErrorCode.STATUS_CHECK_FAILED


class PollingCancelledError(PipelineError):
    """The local wait was abandoned. The remote prediction keeps running."""

    def __init__(self, prediction_id: str):
        self.prediction_id = prediction_id
        super().__init__(
            ErrorCode.POLLING_CANCELLED,
            f"Stopped polling prediction {prediction_id}",
            {"prediction_id": prediction_id}
        )


class InvalidTransitionError(PipelineError):
    """A prediction handle was asked to move backward or leave a terminal state."""

    def __init__(self, prediction_id: str, current: str, requested: str):
        super().__init__(
            ErrorCode.INVALID_TRANSITION,
            f"Prediction {prediction_id} cannot move from {current} to {requested}",
            {"prediction_id": prediction_id, "current": current, "requested": requested}
        )


class PersistenceError(PipelineError):
    """Durable store read/write failure."""

    def __init__(self, key: str, message: str):
        super().__init__(ErrorCode.PERSISTENCE_ERROR, message, {"key": key})


class JobNotFoundError(PipelineError):
    """No job with this id in memory or on disk."""

    def __init__(self, job_id: str):
        super().__init__(ErrorCode.JOB_NOT_FOUND, f"Job {job_id} not found", {"job_id": job_id})


class SegmentNotFoundError(PipelineError):
    """Segment index outside a job's storyboard."""

    def __init__(self, job_id: str, index: int):
        super().__init__(
            ErrorCode.SEGMENT_NOT_FOUND,
            f"Job {job_id} has no segment {index}",
            {"job_id": job_id, "segment_index": index}
        )


class JobBusyError(PipelineError):
    """A job is still being advanced by its own flow."""

    def __init__(self, job_id: str):
        super().__init__(
            ErrorCode.JOB_ALREADY_PROCESSING,
            f"Job {job_id} is still processing",
            {"job_id": job_id}
        )


class APIError(PipelineError):
    """
    Error for collaborator model failures (vision, text).

    Convenience subclass mapping a service name to its error code.
    """

    def __init__(
        self,
        service: str,
        message: str,
        details: Optional[Dict] = None
    ):
        service_codes = {
            "vision": ErrorCode.VISION_CHECK_FAILED,
            "planner": ErrorCode.STORYBOARD_PLANNING_FAILED,
        }

        error_details = details or {}
        error_details["service"] = service

        super().__init__(
            service_codes.get(service, ErrorCode.VISION_CHECK_FAILED),
            message,
            error_details
        )
