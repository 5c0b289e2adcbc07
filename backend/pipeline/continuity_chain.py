"""
Segment continuity chain

Sequences keyframe generation across a storyboard so each segment opens
where the previous one ended, then renders video and voice for every
segment whose keyframes resolved.

Ordering:
- hook -> body segments run strictly in order; segment i+1's first frame
  request is only built once segment i's last frame has resolved
- CTA segments are not anchored to a previous frame and run alongside
  the chain
- video and voice rendering for different segments run concurrently
"""

import asyncio
from typing import Awaitable, Callable, List, Optional

import structlog

from config import settings
from models import (
    AssetSource,
    GenerationMode,
    GenerationRequest,
    Keyframe,
    KeyframeContext,
    Segment,
    SegmentKeyframes,
    SegmentResult,
    SegmentStatus,
    SegmentType,
    Storyboard,
)
from pipeline.enhancement_chain import EnhancementChain
from pipeline.error_handler import PipelineError, PollingCancelledError
from pipeline.poller import CancellationToken, PollBudget, StageBudgets
from pipeline.prompt_composer import PromptComposer
from services.cost_tracker import CostTracker
from services.model_registry import ModelTask


logger = structlog.get_logger(__name__)

SegmentCallback = Callable[[SegmentResult], Awaitable[None]]


class SegmentContinuityChain:
    """
    Keyframe chaining and per-segment rendering.

    Usage:
        chain = SegmentContinuityChain(enhancement_chain)
        results = await chain.generate_keyframes(storyboard)
        results = await chain.render_segments(storyboard, results)
    """

    def __init__(
        self,
        enhancement_chain: EnhancementChain,
        composer: Optional[PromptComposer] = None,
        cost_tracker: Optional[CostTracker] = None,
        keyframe_model: Optional[str] = None,
        video_model: Optional[str] = None,
        voice_model: Optional[str] = None,
        video_budget: Optional[PollBudget] = None,
        voice_budget: Optional[PollBudget] = None,
        max_references: Optional[int] = None,
    ):
        self.enhancement_chain = enhancement_chain
        self.poller = enhancement_chain.poller
        self.composer = composer or enhancement_chain.composer
        self.cost_tracker = cost_tracker
        self.keyframe_model = keyframe_model or settings.KEYFRAME_MODEL
        self.video_model = video_model or settings.VIDEO_MODEL
        self.voice_model = voice_model or settings.VOICE_MODEL
        self.video_budget = video_budget or StageBudgets.video()
        self.voice_budget = voice_budget or StageBudgets.voice()
        self.max_references = max_references or settings.MAX_REFERENCE_IMAGES
        self.logger = logger.bind(service="continuity_chain")

    # ------------------------------------------------------------------
    # Request construction
    # ------------------------------------------------------------------

    def _references(self, context: KeyframeContext, anchor: Optional[str]) -> List[str]:
        if anchor:
            return list(context.product_images[: self.max_references - 1]) + [anchor]
        return list(context.product_images[: self.max_references])

    def build_first_frame_request(self, segment: Segment, context: KeyframeContext) -> GenerationRequest:
        anchor = None
        if segment.type != SegmentType.CTA:
            anchor = context.previous_last_frame
        return GenerationRequest(
            model=self.keyframe_model,
            prompt=self.composer.first_frame_prompt(segment, context),
            references=self._references(context, anchor),
            aspect_ratio=context.aspect_ratio,
            labels={"stage": "keyframe", "segment_index": context.segment_index, "frame": "first"},
        )

    def build_last_frame_request(
        self, segment: Segment, context: KeyframeContext, first_frame_uri: str
    ) -> GenerationRequest:
        return GenerationRequest(
            model=self.keyframe_model,
            prompt=self.composer.last_frame_prompt(segment, context),
            references=self._references(context, first_frame_uri),
            aspect_ratio=context.aspect_ratio,
            labels={"stage": "keyframe", "segment_index": context.segment_index, "frame": "last"},
        )

    # ------------------------------------------------------------------
    # Keyframes
    # ------------------------------------------------------------------

    async def _generate_frame(
        self, frame: str, request: GenerationRequest, enhance: bool, token: Optional[CancellationToken]
    ) -> Keyframe:
        attempt = await self.enhancement_chain.run(request, enhance=enhance, token=token)
        if self.cost_tracker:
            await self.cost_tracker.track_model_run(
                ModelTask.KEYFRAME, request.model, {"prediction_id": attempt.base.prediction_id, **request.labels}
            )
            if attempt.source == AssetSource.ENHANCED:
                await self.cost_tracker.track_model_run(
                    ModelTask.ENHANCEMENT, attempt.enhancement.model,
                    {"prediction_id": attempt.enhancement.prediction_id, **request.labels},
                )
        return Keyframe(
            frame=frame,
            prediction_id=attempt.base.prediction_id,
            image_uri=attempt.resolved_uri,
            prompt=request.prompt,
            source=attempt.source,
            attempt=attempt,
        )

    async def generate_segment_keyframes(
        self,
        segment: Segment,
        context: KeyframeContext,
        token: Optional[CancellationToken] = None,
    ) -> SegmentKeyframes:
        """
        Generate the first and last keyframes of one segment.

        Frames already set on the segment are used as-is.

        Raises:
            PipelineError: If a base keyframe cannot be produced
        """
        if segment.first_frame_image:
            first = Keyframe(frame="first", image_uri=segment.first_frame_image, source=AssetSource.SUPPLIED)
        else:
            request = self.build_first_frame_request(segment, context)
            first = await self._generate_frame("first", request, context.enhance, token)

        if segment.last_frame_image:
            last = Keyframe(frame="last", image_uri=segment.last_frame_image, source=AssetSource.SUPPLIED)
        else:
            request = self.build_last_frame_request(segment, context, first.image_uri)
            last = await self._generate_frame("last", request, context.enhance, token)

        self.logger.info(
            "segment_keyframes_generated",
            segment_index=context.segment_index,
            segment_type=segment.type,
            first_source=first.source,
            last_source=last.source,
        )
        return SegmentKeyframes(first=first, last=last)

    def build_context(
        self,
        storyboard: Storyboard,
        index: int,
        previous_index: Optional[int],
        previous_last_frame: Optional[str],
        enhance: bool = True,
    ) -> KeyframeContext:
        segments = storyboard.segments
        return KeyframeContext(
            segment_index=index,
            product_name=storyboard.meta.product_name,
            product_images=storyboard.meta.product_images,
            aspect_ratio=storyboard.meta.aspect_ratio,
            mood=storyboard.meta.mood,
            previous_segment=segments[previous_index] if previous_index is not None else None,
            previous_last_frame=previous_last_frame,
            next_segment=segments[index + 1] if index + 1 < len(segments) else None,
            enhance=enhance,
        )

    async def fill_segment_keyframes(
        self,
        result: SegmentResult,
        segment: Segment,
        context: KeyframeContext,
        token: Optional[CancellationToken],
        on_segment: Optional[SegmentCallback],
    ) -> None:
        result.status = SegmentStatus.GENERATING
        result.error = None
        try:
            frames = await self.generate_segment_keyframes(segment, context, token)
        except PollingCancelledError:
            raise
        except PipelineError as e:
            result.status = SegmentStatus.FAILED
            result.error = f"Keyframe generation failed: {e.message}"
            self.logger.warning(
                "segment_keyframes_failed",
                segment_index=result.index,
                error_code=e.code.value,
                error=e.message,
            )
        else:
            result.first_frame = frames.first
            result.last_frame = frames.last

        if on_segment is not None:
            await on_segment(result)

    async def generate_keyframes(
        self,
        storyboard: Storyboard,
        results: Optional[List[SegmentResult]] = None,
        on_segment: Optional[SegmentCallback] = None,
        enhance: bool = True,
        token: Optional[CancellationToken] = None,
    ) -> List[SegmentResult]:
        """
        Generate keyframes for a whole storyboard.

        A segment whose keyframes fail is marked failed and the chain
        carries on without a continuity anchor. In preview mode only the
        hook segment is generated.

        Args:
            storyboard: Storyboard to generate
            results: Existing per-segment results to fill (optional)
            on_segment: Awaited after each segment resolves or fails
            enhance: Whether to run the enhancement pass
            token: Optional cancellation token

        Returns:
            One SegmentResult per storyboard segment
        """
        segments = storyboard.segments
        if results is None:
            results = [SegmentResult(index=i, type=s.type) for i, s in enumerate(segments)]

        if storyboard.meta.mode == GenerationMode.PREVIEW:
            hook_index = next((i for i, s in enumerate(segments) if s.type == SegmentType.HOOK), 0)
            context = self.build_context(storyboard, hook_index, None, None, enhance)
            await self.fill_segment_keyframes(results[hook_index], segments[hook_index], context, token, on_segment)
            self.logger.info("preview_keyframes_generated", storyboard_id=storyboard.id)
            return results

        # CTA segments have no continuity dependency
        cta_tasks = [
            asyncio.create_task(
                self.fill_segment_keyframes(
                    results[i], segment, self.build_context(storyboard, i, None, None, enhance), token, on_segment
                )
            )
            for i, segment in enumerate(segments)
            if segment.type == SegmentType.CTA
        ]

        try:
            previous_index = None
            previous_last_frame = None
            for i, segment in enumerate(segments):
                if segment.type == SegmentType.CTA:
                    continue
                context = self.build_context(storyboard, i, previous_index, previous_last_frame, enhance)
                await self.fill_segment_keyframes(results[i], segment, context, token, on_segment)
                previous_index = i
                previous_last_frame = results[i].last_frame.image_uri if results[i].last_frame else None
        finally:
            if cta_tasks:
                await asyncio.gather(*cta_tasks, return_exceptions=True)

        for task in cta_tasks:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()

        return results

    # ------------------------------------------------------------------
    # Video and voice
    # ------------------------------------------------------------------

    async def _render_video(
        self, segment: Segment, result: SegmentResult, aspect_ratio: str,
        prompt: Optional[str], token: Optional[CancellationToken],
    ) -> str:
        request = GenerationRequest(
            model=self.video_model,
            prompt=self.composer.video_prompt(segment, prompt),
            references=[result.first_frame.image_uri, result.last_frame.image_uri],
            aspect_ratio=aspect_ratio,
            labels={"stage": "video", "segment_index": result.index},
        )
        handle = await self.poller.gateway.submit(request)
        result.video_prediction_id = handle.prediction_id
        await self.poller.wait(handle, self.video_budget, token)
        uri = self.poller.resolve(handle)
        if self.cost_tracker:
            await self.cost_tracker.track_model_run(
                ModelTask.VIDEO_SEGMENT, request.model, {"prediction_id": handle.prediction_id}
            )
        return uri

    async def _render_voice(
        self, segment: Segment, result: SegmentResult, token: Optional[CancellationToken]
    ) -> Optional[str]:
        text = self.composer.voice_text(segment)
        if not text:
            return None
        request = GenerationRequest(
            model=self.voice_model,
            prompt=text,
            labels={"stage": "voice", "segment_index": result.index},
        )
        handle = await self.poller.gateway.submit(request)
        result.voice_prediction_id = handle.prediction_id
        await self.poller.wait(handle, self.voice_budget, token)
        uri = self.poller.resolve(handle)
        if self.cost_tracker:
            await self.cost_tracker.track_model_run(
                ModelTask.VOICEOVER, request.model, {"prediction_id": handle.prediction_id}
            )
        return uri

    async def render_segment(
        self,
        segment: Segment,
        result: SegmentResult,
        aspect_ratio: str = "9:16",
        prompt: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> SegmentResult:
        """
        Render video (and voice when the segment has audio notes) for a
        segment whose keyframes are resolved. Each call submits fresh
        predictions.
        """
        result.status = SegmentStatus.GENERATING
        result.error = None
        result.attempts += 1

        video, voice = await asyncio.gather(
            self._render_video(segment, result, aspect_ratio, prompt, token),
            self._render_voice(segment, result, token),
            return_exceptions=True,
        )

        errors = []
        for stage, outcome in (("video", video), ("voice", voice)):
            if isinstance(outcome, PollingCancelledError):
                raise outcome
            if isinstance(outcome, PipelineError):
                errors.append(f"{stage}: {outcome.message}")
            elif isinstance(outcome, BaseException):
                raise outcome

        if not isinstance(video, BaseException):
            result.video_url = video
        if not isinstance(voice, BaseException):
            result.voice_url = voice

        if errors:
            result.status = SegmentStatus.FAILED
            result.error = "; ".join(errors)
            self.logger.warning("segment_render_failed", segment_index=result.index, error=result.error)
        else:
            result.status = SegmentStatus.COMPLETED
            self.logger.info("segment_rendered", segment_index=result.index, video_url=result.video_url)

        return result

    async def render_segments(
        self,
        storyboard: Storyboard,
        results: List[SegmentResult],
        on_segment: Optional[SegmentCallback] = None,
        token: Optional[CancellationToken] = None,
    ) -> List[SegmentResult]:
        """Render every segment with resolved keyframes, concurrently."""

        async def render(index: int) -> None:
            await self.render_segment(
                storyboard.segments[index], results[index], storyboard.meta.aspect_ratio, token=token
            )
            if on_segment is not None:
                await on_segment(results[index])

        ready = [
            r.index for r in results
            if r.status != SegmentStatus.FAILED and r.first_frame is not None and r.last_frame is not None
        ]
        await asyncio.gather(*(render(i) for i in ready))
        return results
