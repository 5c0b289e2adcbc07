"""
Two-tier enhancement chain

Runs a base image generation and then an optional enhancement pass over
its output. The base stage has no fallback: if it fails, the attempt
fails. The enhancement stage falls back to the base image on any
failure or timeout and reports that through the attempt's source tag.
"""

from typing import Optional

import structlog

from config import settings
from models import AssetSource, EnhancementAttempt, GenerationRequest
from pipeline.error_handler import PipelineError, PollingCancelledError
from pipeline.poller import CancellationToken, PollBudget, PredictionPoller, StageBudgets
from pipeline.prompt_composer import PromptComposer


logger = structlog.get_logger(__name__)


class EnhancementChain:
    """Base generation followed by a best-effort quality pass"""

    def __init__(
        self,
        poller: PredictionPoller,
        composer: Optional[PromptComposer] = None,
        enhancement_model: Optional[str] = None,
        base_budget: Optional[PollBudget] = None,
        enhancement_budget: Optional[PollBudget] = None,
    ):
        self.poller = poller
        self.composer = composer or PromptComposer()
        self.enhancement_model = enhancement_model
        self.base_budget = base_budget or StageBudgets.keyframe()
        self.enhancement_budget = enhancement_budget or StageBudgets.enhancement()
        self.logger = logger.bind(service="enhancement_chain")

    def build_enhancement_request(self, base_request: GenerationRequest, base_uri: str) -> GenerationRequest:
        labels = dict(base_request.labels)
        labels["stage"] = "enhancement"
        return GenerationRequest(
            model=self.enhancement_model,
            prompt=self.composer.enhancement_prompt(base_request.prompt),
            references=[base_uri],
            aspect_ratio=base_request.aspect_ratio,
            width=base_request.width,
            height=base_request.height,
            labels=labels,
        )

    async def run(
        self,
        base_request: GenerationRequest,
        enhance: bool = True,
        token: Optional[CancellationToken] = None,
    ) -> EnhancementAttempt:
        """
        Produce one asset, enhanced when possible.

        Args:
            base_request: Request for the base image
            enhance: Whether to attempt the enhancement pass
            token: Optional cancellation token shared by both stages

        Returns:
            EnhancementAttempt with source=enhanced or source=base

        Raises:
            PipelineError: If the base stage fails (submission, provider
                failure, timeout or empty result)
            PollingCancelledError: If the caller stopped waiting
        """
        base_handle, base_uri = await self.poller.run(base_request, self.base_budget, token)

        if not enhance or not self.enhancement_model:
            return EnhancementAttempt(base=base_handle, resolved_uri=base_uri, source=AssetSource.BASE)

        enhancement_request = self.build_enhancement_request(base_request, base_uri)
        enhancement_handle = None
        try:
            enhancement_handle = await self.poller.gateway.submit(enhancement_request)
            await self.poller.wait(enhancement_handle, self.enhancement_budget, token)
            enhanced_uri = self.poller.resolve(enhancement_handle)
        except PollingCancelledError:
            raise
        except PipelineError as e:
            self.logger.warning(
                "enhancement_fallback_to_base",
                base_prediction_id=base_handle.prediction_id,
                error_code=e.code.value,
                error=e.message,
                **base_request.labels,
            )
            return EnhancementAttempt(
                base=base_handle,
                enhancement=enhancement_handle,
                resolved_uri=base_uri,
                source=AssetSource.BASE,
                enhancement_error=str(e),
            )

        self.logger.info(
            "enhancement_succeeded",
            base_prediction_id=base_handle.prediction_id,
            enhancement_prediction_id=enhancement_handle.prediction_id,
        )
        return EnhancementAttempt(
            base=base_handle,
            enhancement=enhancement_handle,
            resolved_uri=enhanced_uri,
            source=AssetSource.ENHANCED,
        )


def create_enhancement_chain(poller: PredictionPoller, composer: Optional[PromptComposer] = None) -> EnhancementChain:
    """Build a chain using the configured enhancement model (None disables it)."""
    model = settings.ENHANCEMENT_MODEL if settings.ENABLE_ENHANCEMENT else None
    return EnhancementChain(poller, composer=composer, enhancement_model=model)
