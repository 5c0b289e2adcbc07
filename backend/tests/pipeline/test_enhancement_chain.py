"""
Tests for EnhancementChain

The base stage must succeed; the enhancement stage may fail in any way
and the attempt falls back to the base image.
"""

import pytest

from models import AssetSource, GenerationRequest, PredictionStatus
from pipeline.enhancement_chain import EnhancementChain
from pipeline.error_handler import PollingCancelledError, PredictionTimeoutError, ProviderFailureError, SubmissionError
from pipeline.poller import CancellationToken
from tests.fakes import FAST_BUDGET, failed, labelled, running, succeeded


def _base_request():
    return GenerationRequest(
        model="nano-banana",
        prompt="woman at a rainy bus stop",
        references=["https://cdn.test/product.png"],
        aspect_ratio="9:16",
        labels={"stage": "keyframe", "segment_index": 0, "frame": "first"},
    )


class TestEnhancementSuccess:

    @pytest.mark.asyncio
    async def test_enhanced_result_wins(self, gateway, enhancement_chain):
        gateway.on(labelled(stage="keyframe"), [succeeded("https://cdn.test/base.png")])
        gateway.on(labelled(stage="enhancement"), [running(), succeeded("https://cdn.test/enhanced.png")])

        attempt = await enhancement_chain.run(_base_request())

        assert attempt.source == AssetSource.ENHANCED
        assert attempt.resolved_uri == "https://cdn.test/enhanced.png"
        assert attempt.base.result_uri == "https://cdn.test/base.png"
        assert attempt.enhancement_error is None

    @pytest.mark.asyncio
    async def test_enhancement_request_references_base_output(self, gateway, enhancement_chain):
        gateway.on(labelled(stage="keyframe"), [succeeded("https://cdn.test/base.png")])

        await enhancement_chain.run(_base_request())

        [enhancement] = gateway.submitted(stage="enhancement")
        assert enhancement.model == "seedream-4"
        assert enhancement.references == ["https://cdn.test/base.png"]
        assert enhancement.aspect_ratio == "9:16"
        assert enhancement.labels["segment_index"] == 0
        assert "woman at a rainy bus stop" in enhancement.prompt

    @pytest.mark.asyncio
    async def test_enhance_disabled_skips_second_stage(self, gateway, enhancement_chain):
        attempt = await enhancement_chain.run(_base_request(), enhance=False)

        assert attempt.source == AssetSource.BASE
        assert attempt.enhancement is None
        assert gateway.submitted(stage="enhancement") == []

    @pytest.mark.asyncio
    async def test_no_enhancement_model_configured(self, gateway, poller):
        chain = EnhancementChain(poller, enhancement_model=None, base_budget=FAST_BUDGET)

        attempt = await chain.run(_base_request())

        assert attempt.source == AssetSource.BASE
        assert len(gateway.requests) == 1


class TestEnhancementFallback:
    """Any enhancement failure resolves to the base image"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("statuses", [
        [running()],
        [failed("enhancer crashed")],
        [succeeded(None)],
    ], ids=["timeout", "provider_failure", "no_result"])
    async def test_fallback_to_base(self, gateway, enhancement_chain, statuses):
        gateway.on(labelled(stage="keyframe"), [succeeded("https://cdn.test/base.png")])
        gateway.on(labelled(stage="enhancement"), statuses)

        attempt = await enhancement_chain.run(_base_request())

        assert attempt.source == AssetSource.BASE
        assert attempt.resolved_uri == "https://cdn.test/base.png"
        assert attempt.enhancement.status == PredictionStatus.FAILED
        assert attempt.enhancement_error

    @pytest.mark.asyncio
    async def test_fallback_on_enhancement_submission_rejection(self, gateway, enhancement_chain):
        gateway.on(labelled(stage="keyframe"), [succeeded("https://cdn.test/base.png")])
        gateway.on(labelled(stage="enhancement"), reject=SubmissionError("enhancer unavailable"))

        attempt = await enhancement_chain.run(_base_request())

        assert attempt.source == AssetSource.BASE
        assert attempt.enhancement is None
        assert "enhancer unavailable" in attempt.enhancement_error


class TestBaseFailure:
    """The base stage has no fallback"""

    @pytest.mark.asyncio
    async def test_base_failure_propagates(self, gateway, enhancement_chain):
        gateway.on(labelled(stage="keyframe"), [failed("bad prompt")])

        with pytest.raises(ProviderFailureError):
            await enhancement_chain.run(_base_request())
        assert gateway.submitted(stage="enhancement") == []

    @pytest.mark.asyncio
    async def test_base_timeout_propagates(self, gateway, enhancement_chain):
        gateway.on(labelled(stage="keyframe"), [running()])

        with pytest.raises(PredictionTimeoutError):
            await enhancement_chain.run(_base_request())

    @pytest.mark.asyncio
    async def test_cancellation_is_not_swallowed(self, gateway, enhancement_chain):
        token = CancellationToken()
        token.cancel()

        with pytest.raises(PollingCancelledError):
            await enhancement_chain.run(_base_request(), token=token)
