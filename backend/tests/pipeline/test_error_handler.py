"""
Test suite for the pipeline error taxonomy.

Tests:
- Error construction and serialization
- User-friendly messages
- Retry determination
- Typed prediction errors
"""

from pipeline.error_handler import (
    APIError,
    ErrorCode,
    JobNotFoundError,
    PipelineError,
    PredictionTimeoutError,
    ProviderFailureError,
    SegmentNotFoundError,
    SubmissionError,
    ValidationError,
    should_retry,
)


def test_pipeline_error_creation():
    """Test creating pipeline errors."""
    error = PipelineError(
        ErrorCode.INVALID_INPUT,
        "Test error message",
        {"field": "storyboard"}
    )

    assert error.code == ErrorCode.INVALID_INPUT
    assert error.message == "Test error message"
    assert error.details["field"] == "storyboard"
    assert str(error) == "INVALID_INPUT: Test error message"


def test_pipeline_error_to_dict():
    """Test error serialization."""
    error = JobNotFoundError("abc")

    error_dict = error.to_dict()

    assert error_dict["error_code"] == "JOB_NOT_FOUND"
    assert error_dict["message"] == "Job abc not found"
    assert error_dict["details"] == {"job_id": "abc"}
    assert error_dict["user_message"] == "Job not found."


def test_user_message_override():
    """Test custom user-facing message."""
    error = PipelineError(ErrorCode.PROVIDER_FAILED, "nsfw", user_message="Try a different prompt.")

    assert error.get_user_friendly_message() == "Try a different prompt."


def test_should_retry_logic():
    """Test retry logic determination."""
    # Outcomes of a started prediction are worth an explicit retry
    assert should_retry(ProviderFailureError("p1", "crashed")) == True
    assert should_retry(PredictionTimeoutError("p1", "too slow")) == True
    assert should_retry(APIError("vision", "unavailable")) == True

    # Rejections and client errors are not
    assert should_retry(SubmissionError("bad request")) == False
    assert should_retry(ValidationError("Bad input")) == False
    assert should_retry(SegmentNotFoundError("job", 3)) == False

    # Built-in exceptions
    assert should_retry(TimeoutError()) == True
    assert should_retry(ConnectionError()) == True
    assert should_retry(ValueError()) == False


def test_prediction_errors_are_distinct():
    """Timeouts and provider failures carry different codes."""
    timeout = PredictionTimeoutError("p1", "gave up")
    failure = ProviderFailureError("p1", "crashed")

    assert timeout.code == ErrorCode.PREDICTION_TIMEOUT
    assert failure.code == ErrorCode.PROVIDER_FAILED
    assert timeout.details["prediction_id"] == "p1"
    assert timeout.prediction_id == "p1"


def test_api_error_service_codes():
    """Test collaborator service mapping."""
    assert APIError("vision", "x").code == ErrorCode.VISION_CHECK_FAILED
    assert APIError("planner", "x").code == ErrorCode.STORYBOARD_PLANNING_FAILED
    assert APIError("planner", "x").details["service"] == "planner"


def test_validation_error_field():
    """Test field recorded on validation errors."""
    error = ValidationError("Item to exclude must not be empty", field="item")

    assert error.code == ErrorCode.INVALID_INPUT
    assert error.details == {"field": "item"}
