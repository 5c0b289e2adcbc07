"""
Prediction Poller

Drives a submitted prediction from submitted to a terminal state.

Each tick waits one interval (interruptible by a CancellationToken),
asks the gateway for the current status and advances the handle. A
handle that runs out of ticks is failed locally with a timeout tag; the
provider job itself is left alone.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import httpx
from replicate.exceptions import ReplicateError
import structlog
from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config import settings
from models import (
    FailureKind,
    GenerationRequest,
    PredictionHandle,
    PredictionStatus,
    ProviderStatus,
)
from pipeline.error_handler import (
    PollingCancelledError,
    PredictionCanceledError,
    PredictionTimeoutError,
    ProviderFailureError,
    StatusCheckError,
    SucceededWithoutResultError,
)
from services.provider_gateway import ProviderGateway


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PollBudget:
    """Maximum ticks and seconds between ticks for one stage"""
    max_ticks: int
    interval: float = 2.0

    @property
    def max_seconds(self) -> float:
        return self.max_ticks * self.interval


class StageBudgets:
    """Per-stage budgets built from settings"""

    @staticmethod
    def keyframe() -> PollBudget:
        return PollBudget(settings.KEYFRAME_MAX_TICKS, settings.POLL_INTERVAL)

    @staticmethod
    def enhancement() -> PollBudget:
        return PollBudget(settings.ENHANCEMENT_MAX_TICKS, settings.POLL_INTERVAL)

    @staticmethod
    def video() -> PollBudget:
        return PollBudget(settings.VIDEO_MAX_TICKS, settings.POLL_INTERVAL)

    @staticmethod
    def voice() -> PollBudget:
        return PollBudget(settings.VOICE_MAX_TICKS, settings.POLL_INTERVAL)


class CancellationToken:
    """
    Lets a caller stop waiting on one or more polls.

    Cancelling only ends the local wait; submitted predictions keep
    running on the provider and can still be fetched by id.
    """

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self, timeout: float) -> bool:
        """Sleep up to timeout seconds. Returns True if cancelled meanwhile."""
        if self._event.is_set():
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True


class PredictionPoller:
    """
    Poll-to-terminal state machine for prediction handles.

    The gateway does not retry; here a single tick's status check is
    retried on transport errors before the handle is given up on.
    """

    def __init__(self, gateway: ProviderGateway, status_check_attempts: int = None, retry_wait=None):
        self.gateway = gateway
        self.status_check_attempts = status_check_attempts or settings.STATUS_CHECK_ATTEMPTS
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, min=2, max=10)
        self.logger = logger.bind(service="prediction_poller")

    async def _check_status(self, prediction_id: str) -> ProviderStatus:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.status_check_attempts),
            wait=self.retry_wait,
            retry=retry_if_exception_type(httpx.TransportError),
            before_sleep=before_sleep_log(logging.getLogger(__name__), logging.INFO),
            reraise=False,
        ):
            with attempt:
                return await self.gateway.poll(prediction_id)

    async def wait(
        self,
        handle: PredictionHandle,
        budget: PollBudget,
        token: Optional[CancellationToken] = None,
    ) -> PredictionHandle:
        """
        Poll a handle until it is terminal or the budget runs out.

        Args:
            handle: Handle in submitted or running state
            budget: Tick budget for this stage
            token: Optional cancellation token

        Returns:
            The same handle, now terminal

        Raises:
            PollingCancelledError: If the token was cancelled; the handle
                keeps its last non-terminal status
        """
        while not handle.is_terminal:
            if handle.ticks >= budget.max_ticks:
                handle.fail(
                    f"Timed out after {handle.ticks} status checks ({budget.max_seconds:.0f}s)",
                    FailureKind.TIMEOUT,
                )
                self.logger.warning(
                    "prediction_timed_out",
                    prediction_id=handle.prediction_id,
                    model=handle.model,
                    ticks=handle.ticks,
                )
                break

            if token is not None:
                if await token.wait(budget.interval):
                    self.logger.info(
                        "polling_cancelled",
                        prediction_id=handle.prediction_id,
                        status=handle.status,
                    )
                    raise PollingCancelledError(handle.prediction_id)
            else:
                await asyncio.sleep(budget.interval)

            handle.ticks += 1

            try:
                status = await self._check_status(handle.prediction_id)
            except (RetryError, ReplicateError, httpx.HTTPError) as e:
                cause = e.last_attempt.exception() if isinstance(e, RetryError) else e
                handle.fail(f"Status check failed: {cause}", FailureKind.STATUS_CHECK)
                self.logger.error(
                    "status_check_failed",
                    prediction_id=handle.prediction_id,
                    error=str(cause),
                )
                break

            self._apply(handle, status)

        return handle

    def _apply(self, handle: PredictionHandle, status: ProviderStatus) -> None:
        if status.status == PredictionStatus.SUBMITTED:
            return
        if status.status == PredictionStatus.RUNNING:
            handle.mark_running()
            return
        if status.status == PredictionStatus.SUCCEEDED:
            if status.result_uri:
                handle.succeed(status.result_uri)
                self.logger.info(
                    "prediction_succeeded",
                    prediction_id=handle.prediction_id,
                    ticks=handle.ticks,
                )
            else:
                handle.fail("Provider reported success without a result", FailureKind.NO_RESULT)
                self.logger.warning(
                    "prediction_succeeded_without_result",
                    prediction_id=handle.prediction_id,
                )
            return
        if status.status == PredictionStatus.FAILED:
            handle.fail(status.error or "Prediction failed", FailureKind.PROVIDER)
            self.logger.warning(
                "prediction_failed",
                prediction_id=handle.prediction_id,
                error=handle.error,
            )
            return
        if status.status == PredictionStatus.CANCELED:
            handle.cancel(status.error or "Prediction canceled by provider")
            self.logger.warning("prediction_canceled", prediction_id=handle.prediction_id)

    @staticmethod
    def resolve(handle: PredictionHandle) -> str:
        """
        Return the result URI of a terminal handle or raise its typed error.

        Raises:
            ProviderFailureError, PredictionTimeoutError,
            SucceededWithoutResultError, StatusCheckError,
            PredictionCanceledError
        """
        if handle.status == PredictionStatus.SUCCEEDED:
            return handle.result_uri

        if handle.status == PredictionStatus.CANCELED:
            raise PredictionCanceledError(handle.prediction_id, handle.error or "Prediction canceled")

        error_types = {
            FailureKind.TIMEOUT: PredictionTimeoutError,
            FailureKind.NO_RESULT: SucceededWithoutResultError,
            FailureKind.STATUS_CHECK: StatusCheckError,
        }
        error_cls = error_types.get(handle.failure_kind, ProviderFailureError)
        raise error_cls(handle.prediction_id, handle.error or "Prediction failed", {"model": handle.model})

    async def run(
        self,
        request: GenerationRequest,
        budget: PollBudget,
        token: Optional[CancellationToken] = None,
    ) -> Tuple[PredictionHandle, str]:
        """
        Submit, poll to terminal and resolve in one call.

        Returns:
            (handle, result_uri)
        """
        handle = await self.gateway.submit(request)
        await self.wait(handle, budget, token)
        return handle, self.resolve(handle)
