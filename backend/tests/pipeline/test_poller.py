"""
Tests for PredictionPoller

Tests cover:
- Handle state transitions
- Poll-to-terminal outcomes (success, failure, timeout, empty result)
- Status check retries on transport errors
- Cancellation
"""

import asyncio

import httpx
import pytest
from replicate.exceptions import ReplicateError

from models import FailureKind, GenerationRequest, PredictionHandle, PredictionStatus
from pipeline.error_handler import (
    ErrorCode,
    InvalidTransitionError,
    PollingCancelledError,
    PredictionCanceledError,
    PredictionTimeoutError,
    ProviderFailureError,
    StatusCheckError,
    SubmissionError,
    SucceededWithoutResultError,
)
from pipeline.poller import CancellationToken, PollBudget
from tests.fakes import FAST_BUDGET, canceled, failed, labelled, running, succeeded


def _request(**labels):
    return GenerationRequest(model="nano-banana", prompt="a red umbrella", labels=labels)


class TestHandleTransitions:
    """Test PredictionHandle status rules"""

    def test_forward_transitions(self):
        handle = PredictionHandle(prediction_id="p1", model="nano-banana")
        handle.mark_running()
        handle.mark_running()
        handle.succeed("https://cdn.test/p1.png")

        assert handle.status == PredictionStatus.SUCCEEDED
        assert handle.is_terminal
        assert handle.completed_at is not None

    def test_terminal_status_is_permanent(self):
        handle = PredictionHandle(prediction_id="p1", model="nano-banana")
        handle.succeed("https://cdn.test/p1.png")

        with pytest.raises(InvalidTransitionError):
            handle.fail("late failure")
        with pytest.raises(InvalidTransitionError):
            handle.mark_running()
        assert handle.status == PredictionStatus.SUCCEEDED
        assert handle.result_uri == "https://cdn.test/p1.png"

    def test_failed_handle_cannot_succeed(self):
        handle = PredictionHandle(prediction_id="p1", model="nano-banana")
        handle.fail("boom", FailureKind.PROVIDER)

        with pytest.raises(InvalidTransitionError) as exc_info:
            handle.succeed("https://cdn.test/p1.png")
        assert exc_info.value.code == ErrorCode.INVALID_TRANSITION

    def test_success_requires_uri(self):
        handle = PredictionHandle(prediction_id="p1", model="nano-banana")

        with pytest.raises(ValueError):
            handle.succeed("")
        assert handle.status == PredictionStatus.SUBMITTED


class TestPollOutcomes:
    """Test terminal outcomes of wait() and resolve()"""

    @pytest.mark.asyncio
    async def test_success_after_running(self, gateway, poller):
        gateway.on(labelled(), [running(), running(), succeeded("https://cdn.test/out.png")])

        handle, uri = await poller.run(_request(), PollBudget(max_ticks=5, interval=0))

        assert uri == "https://cdn.test/out.png"
        assert handle.status == PredictionStatus.SUCCEEDED
        assert handle.ticks == 3

    @pytest.mark.asyncio
    async def test_timeout_is_tagged_distinctly(self, gateway, poller):
        gateway.on(labelled(), [running()])

        handle = await gateway.submit(_request())
        await poller.wait(handle, FAST_BUDGET)

        assert handle.status == PredictionStatus.FAILED
        assert handle.failure_kind == FailureKind.TIMEOUT
        assert handle.ticks == FAST_BUDGET.max_ticks
        with pytest.raises(PredictionTimeoutError) as exc_info:
            poller.resolve(handle)
        assert exc_info.value.code == ErrorCode.PREDICTION_TIMEOUT
        assert exc_info.value.prediction_id == handle.prediction_id

    @pytest.mark.asyncio
    async def test_provider_failure_carries_reason(self, gateway, poller):
        gateway.on(labelled(), [running(), failed("NSFW content detected")])

        handle = await gateway.submit(_request())
        await poller.wait(handle, FAST_BUDGET)

        assert handle.failure_kind == FailureKind.PROVIDER
        with pytest.raises(ProviderFailureError, match="NSFW content detected") as exc_info:
            poller.resolve(handle)
        assert exc_info.value.code == ErrorCode.PROVIDER_FAILED

    @pytest.mark.asyncio
    async def test_success_without_result(self, gateway, poller):
        gateway.on(labelled(), [succeeded(None)])

        handle = await gateway.submit(_request())
        await poller.wait(handle, FAST_BUDGET)

        assert handle.status == PredictionStatus.FAILED
        assert handle.failure_kind == FailureKind.NO_RESULT
        with pytest.raises(SucceededWithoutResultError):
            poller.resolve(handle)

    @pytest.mark.asyncio
    async def test_provider_cancel(self, gateway, poller):
        gateway.on(labelled(), [canceled()])

        handle = await gateway.submit(_request())
        await poller.wait(handle, FAST_BUDGET)

        assert handle.status == PredictionStatus.CANCELED
        with pytest.raises(PredictionCanceledError):
            poller.resolve(handle)

    @pytest.mark.asyncio
    async def test_submission_rejection_never_polls(self, gateway, poller):
        gateway.on(labelled(), reject=SubmissionError("quota exceeded", status_code=429))

        with pytest.raises(SubmissionError) as exc_info:
            await poller.run(_request(), FAST_BUDGET)

        assert exc_info.value.code == ErrorCode.SUBMISSION_REJECTED
        assert exc_info.value.details["status_code"] == 429
        assert gateway.poll_count == 0

    @pytest.mark.asyncio
    async def test_unknown_model_rejected(self, poller):
        request = GenerationRequest(model="no-such-model", prompt="x")

        with pytest.raises(SubmissionError) as exc_info:
            await poller.run(request, FAST_BUDGET)
        assert exc_info.value.code == ErrorCode.UNKNOWN_MODEL


class TestStatusCheckRetries:
    """Test tenacity retries around a single status check"""

    @pytest.mark.asyncio
    async def test_transient_transport_error_is_retried(self, gateway, poller):
        gateway.on(labelled(), [httpx.ConnectError("connection reset"), succeeded("https://cdn.test/ok.png")])

        handle, uri = await poller.run(_request(), FAST_BUDGET)

        assert uri == "https://cdn.test/ok.png"
        assert handle.ticks == 1
        assert gateway.poll_count == 2

    @pytest.mark.asyncio
    async def test_persistent_transport_error_fails_handle(self, gateway, poller):
        gateway.on(labelled(), [httpx.ConnectError("network down")])

        handle = await gateway.submit(_request())
        await poller.wait(handle, FAST_BUDGET)

        assert handle.failure_kind == FailureKind.STATUS_CHECK
        assert gateway.poll_count == 3
        with pytest.raises(StatusCheckError):
            poller.resolve(handle)

    @pytest.mark.asyncio
    async def test_provider_api_error_is_not_retried(self, gateway, poller):
        gateway.on(labelled(), [ReplicateError("prediction not found")])

        handle = await gateway.submit(_request())
        await poller.wait(handle, FAST_BUDGET)

        assert handle.failure_kind == FailureKind.STATUS_CHECK
        assert gateway.poll_count == 1


class TestCancellation:
    """Test CancellationToken behaviour"""

    @pytest.mark.asyncio
    async def test_cancelled_token_stops_wait(self, gateway, poller):
        gateway.on(labelled(), [running()])
        token = CancellationToken()
        token.cancel()

        handle = await gateway.submit(_request())
        with pytest.raises(PollingCancelledError):
            await poller.wait(handle, FAST_BUDGET, token)

        assert not handle.is_terminal
        assert gateway.poll_count == 0

    @pytest.mark.asyncio
    async def test_cancel_while_polling(self, gateway, poller):
        gateway.on(labelled(), [running()])
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.05, token.cancel)

        handle = await gateway.submit(_request())
        with pytest.raises(PollingCancelledError) as exc_info:
            await poller.wait(handle, PollBudget(max_ticks=10_000, interval=0.01), token)

        assert exc_info.value.prediction_id == handle.prediction_id
        assert handle.status == PredictionStatus.RUNNING

    @pytest.mark.asyncio
    async def test_token_wait_times_out_without_cancel(self):
        token = CancellationToken()

        assert await token.wait(0.01) is False
        assert token.cancelled is False

    def test_budget_seconds(self):
        assert PollBudget(max_ticks=150, interval=2.0).max_seconds == 300.0
