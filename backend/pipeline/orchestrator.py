"""
Generation Orchestrator - entry point of the orchestration layer

Coordinates storyboard generation end to end:
1. Keyframes, chained segment to segment (with enhancement)
2. Video and voice per segment, concurrently
3. Checkpointing into the job store after every segment
4. Conflict checks and constrained regeneration
5. Explicit per-segment retries

Every long-running operation is started as a supervised task: the caller
gets a job id immediately, and whatever happens to the task (success,
failure, cancellation) ends up in the job store.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import structlog

from config import settings
from models import (
    ConflictReport,
    GenerationJob,
    GenerationMode,
    JobKind,
    JobSpec,
    JobStatus,
    KeyframeContext,
    Segment,
    SegmentKeyframes,
    SegmentResult,
    SegmentStatus,
    SegmentType,
    Storyboard,
)
from pipeline.conflict_detector import ConflictDetector, Regenerator
from pipeline.continuity_chain import SegmentContinuityChain
from pipeline.enhancement_chain import create_enhancement_chain
from pipeline.error_handler import (
    JobBusyError,
    JobNotFoundError,
    PipelineError,
    PollingCancelledError,
    SegmentNotFoundError,
    ValidationError,
)
from pipeline.poller import CancellationToken, PredictionPoller
from pipeline.prompt_composer import PromptComposer
from services.cost_tracker import CostTracker
from services.job_store import JobStore
from services.model_registry import ModelTask
from services.provider_gateway import ReplicateGateway, get_provider_gateway
from services.storyboard_planner import StoryboardPlanner
from services.vision_service import VisionService


logger = structlog.get_logger(__name__)

JobWork = Callable[[GenerationJob, CancellationToken], Awaitable[None]]


class GenerationOrchestrator:
    """
    Orchestrate storyboard generation on top of an injected job store.

    Example:
        >>> orchestrator = create_orchestrator(JobStore(FileDurableStore()))
        >>> job_id = await orchestrator.submit_job(JobSpec(storyboard=storyboard))
        >>> job = await orchestrator.get_job_status(job_id)
    """

    def __init__(
        self,
        job_store: JobStore,
        continuity_chain: SegmentContinuityChain,
        conflict_detector: Optional[ConflictDetector] = None,
        regenerator: Optional[Regenerator] = None,
        cost_tracker: Optional[CostTracker] = None,
    ):
        """
        Initialize with collaborators.

        Args:
            job_store: Store for job records (memory + durable)
            continuity_chain: Keyframe chaining and segment rendering
            conflict_detector: Hook-vs-body check (optional)
            regenerator: Constrained storyboard regeneration (optional)
            cost_tracker: Cost counters (optional)
        """
        self.job_store = job_store
        self.chain = continuity_chain
        self.conflict_detector = conflict_detector
        self.regenerator = regenerator
        self.cost_tracker = cost_tracker
        self._tasks: Dict[str, asyncio.Task] = {}
        self._tokens: Dict[str, CancellationToken] = {}
        self._reserved: Set[str] = set()
        self.logger = logger.bind(service="orchestrator")

    # ------------------------------------------------------------------
    # Supervision
    # ------------------------------------------------------------------

    def _supervise(self, job: GenerationJob, work: JobWork) -> asyncio.Task:
        token = CancellationToken()
        task = asyncio.create_task(self._run_supervised(job, work, token))
        self._tasks[job.id] = task
        self._tokens[job.id] = token
        task.add_done_callback(lambda t, job_id=job.id: self._forget(job_id, t))
        return task

    def _forget(self, job_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(job_id) is task:
            del self._tasks[job_id]
            self._tokens.pop(job_id, None)

    async def _run_supervised(self, job: GenerationJob, work: JobWork, token: CancellationToken) -> None:
        # The task runs in its own context copy; cost entries pick up job_id from it
        structlog.contextvars.bind_contextvars(job_id=job.id)
        log = self.logger.bind(job_id=job.id, kind=job.kind)
        try:
            await work(job, token)
        except PollingCancelledError:
            log.info("job_cancelled")
            await self._fail(job, "Cancelled before completion")
        except asyncio.CancelledError:
            log.warning("job_interrupted")
            await self._fail(job, "Interrupted by shutdown")
            raise
        except PipelineError as e:
            e.log_error()
            await self._fail(job, e.message)
        except Exception as e:
            log.error("job_crashed", error=str(e), error_type=type(e).__name__)
            await self._fail(job, f"Unexpected error: {e}")

    async def _fail(self, job: GenerationJob, reason: str) -> None:
        job.status = JobStatus.FAILED
        job.error = reason
        await self.job_store.put(job)

    def _is_busy(self, job_id: str) -> bool:
        return job_id in self._tasks or job_id in self._reserved

    async def _start(self, job: GenerationJob, work: JobWork) -> str:
        # Claimed before the first await so a concurrent retry sees the job as busy
        self._reserved.add(job.id)
        try:
            await self.job_store.put(job)
            self._supervise(job, work)
        finally:
            self._reserved.discard(job.id)
        self.logger.info("job_submitted", job_id=job.id, kind=job.kind)
        return job.id

    # ------------------------------------------------------------------
    # Storyboard jobs
    # ------------------------------------------------------------------

    async def submit_job(self, spec: JobSpec) -> str:
        """
        Start generating a storyboard and return its job id right away.

        Args:
            spec: Storyboard plus generation switches

        Returns:
            Job id to poll with get_job_status
        """
        if not spec.storyboard.segments:
            raise ValidationError("Storyboard has no segments", field="storyboard.segments")

        job = GenerationJob(
            kind=JobKind.STORYBOARD,
            payload={"spec": spec.model_dump(mode="json")},
        )

        async def work(job: GenerationJob, token: CancellationToken) -> None:
            await self._run_storyboard(job, spec, token)

        return await self._start(job, work)

    def _result_payload(self, job: GenerationJob, storyboard: Storyboard, results: List[SegmentResult]) -> Dict[str, Any]:
        payload = {
            "storyboard_id": storyboard.id,
            "mode": storyboard.meta.mode,
            "segments": [r.model_dump(mode="json") for r in results],
        }
        if self.cost_tracker:
            payload["cost"] = self.cost_tracker.summary(job_id=job.id)
        return payload

    def _checkpointer(self, job: GenerationJob, storyboard: Storyboard, results: List[SegmentResult]):
        lock = asyncio.Lock()

        async def checkpoint(_: Optional[SegmentResult] = None) -> None:
            # Concurrent segment renders share one job record
            async with lock:
                job.result = self._result_payload(job, storyboard, results)
                await self.job_store.put(job)

        return checkpoint

    async def _run_storyboard(self, job: GenerationJob, spec: JobSpec, token: CancellationToken) -> None:
        storyboard = spec.storyboard
        results = [SegmentResult(index=i, type=s.type) for i, s in enumerate(storyboard.segments)]
        checkpoint = self._checkpointer(job, storyboard, results)
        log = self.logger.bind(job_id=job.id, storyboard_id=storyboard.id)

        job.status = JobStatus.PROCESSING
        await checkpoint()
        log.info("storyboard_job_started", segments=len(results), mode=storyboard.meta.mode)

        await self.chain.generate_keyframes(
            storyboard, results, on_segment=checkpoint, enhance=spec.enhance, token=token
        )

        if self._renders_video(spec):
            await self.chain.render_segments(storyboard, results, on_segment=checkpoint, token=token)
        else:
            self._complete_keyframe_only(results)

        await self._finalize(job, storyboard, results)
        log.info("storyboard_job_finished", status=job.status)

    @staticmethod
    def _renders_video(spec: JobSpec) -> bool:
        return spec.generate_video and spec.storyboard.meta.mode != GenerationMode.PREVIEW

    @staticmethod
    def _complete_keyframe_only(results: List[SegmentResult]) -> None:
        for result in results:
            if result.status == SegmentStatus.GENERATING and result.first_frame and result.last_frame:
                result.status = SegmentStatus.COMPLETED

    async def _finalize(self, job: GenerationJob, storyboard: Storyboard, results: List[SegmentResult]) -> None:
        processed = [r for r in results if r.status != SegmentStatus.PENDING]
        failed = [r for r in processed if r.status != SegmentStatus.COMPLETED]

        job.result = self._result_payload(job, storyboard, results)
        if failed:
            job.status = JobStatus.FAILED
            job.error = "; ".join(f"Segment {r.index} ({r.type}): {r.error or r.status}" for r in failed)
        else:
            job.status = JobStatus.COMPLETED
            job.error = None
        await self.job_store.put(job)

    async def get_job_status(self, job_id: str) -> GenerationJob:
        """
        Return the current record of a job.

        Raises:
            JobNotFoundError: If neither memory nor disk knows the job
        """
        job = await self.job_store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def cancel_job(self, job_id: str) -> GenerationJob:
        """
        Stop waiting on a running job. Provider predictions keep running;
        the job ends up failed with a cancellation reason.
        """
        job = await self.get_job_status(job_id)
        token = self._tokens.get(job_id)
        if token is not None:
            token.cancel()
            task = self._tasks.get(job_id)
            if task is not None:
                await asyncio.gather(task, return_exceptions=True)
        return await self.get_job_status(job_id)

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------

    async def retry_segment(self, job_id: str, index: int, alternative_index: Optional[int] = None) -> str:
        """
        Regenerate one failed segment of a storyboard job with fresh predictions.

        Retrying a segment that already completed does nothing.

        Args:
            job_id: Storyboard job id
            index: Segment index
            alternative_index: Use this entry of the segment's prompt
                alternatives instead of its primary prompt

        Returns:
            The job id (unchanged)
        """
        job = await self.get_job_status(job_id)
        if job.kind != JobKind.STORYBOARD:
            raise ValidationError(f"Job {job_id} is not a storyboard job", field="job_id")
        if self._is_busy(job_id):
            raise JobBusyError(job_id)

        spec = JobSpec.model_validate(job.payload["spec"])
        storyboard = spec.storyboard
        if not 0 <= index < len(storyboard.segments):
            raise SegmentNotFoundError(job_id, index)

        results = [SegmentResult.model_validate(s) for s in (job.result or {}).get("segments", [])]
        if len(results) != len(storyboard.segments):
            results = [SegmentResult(index=i, type=s.type) for i, s in enumerate(storyboard.segments)]

        if results[index].status == SegmentStatus.COMPLETED:
            self.logger.info("retry_skipped_segment_completed", job_id=job_id, segment_index=index)
            return job_id

        segment = storyboard.segments[index]
        prompt = None
        if alternative_index is not None:
            if not 0 <= alternative_index < len(segment.prompt_alternatives):
                raise ValidationError(
                    f"Segment {index} has no prompt alternative {alternative_index}",
                    field="alternative_index",
                )
            prompt = segment.prompt_alternatives[alternative_index]
            segment = segment.model_copy(update={"prompt": prompt})

        job.status = JobStatus.PROCESSING
        job.error = None

        async def work(job: GenerationJob, token: CancellationToken) -> None:
            await self._run_retry(job, spec, results, index, segment, prompt, token)

        self.logger.info("segment_retry_requested", job_id=job_id, segment_index=index, alternative=alternative_index)
        return await self._start(job, work)

    def _anchor_for(self, storyboard: Storyboard, results: List[SegmentResult], index: int):
        """Nearest earlier non-CTA segment and its resolved last frame"""
        for i in range(index - 1, -1, -1):
            if storyboard.segments[i].type == SegmentType.CTA:
                continue
            last = results[i].last_frame
            return i, last.image_uri if last else None
        return None, None

    async def _run_retry(
        self,
        job: GenerationJob,
        spec: JobSpec,
        results: List[SegmentResult],
        index: int,
        segment: Segment,
        prompt: Optional[str],
        token: CancellationToken,
    ) -> None:
        storyboard = spec.storyboard
        result = results[index]
        checkpoint = self._checkpointer(job, storyboard, results)

        if result.first_frame is None or result.last_frame is None:
            previous_index, previous_last = None, None
            if segment.type != SegmentType.CTA:
                previous_index, previous_last = self._anchor_for(storyboard, results, index)
            context = self.chain.build_context(storyboard, index, previous_index, previous_last, spec.enhance)
            await self.chain.fill_segment_keyframes(result, segment, context, token, checkpoint)

        if result.first_frame is not None and result.last_frame is not None:
            if self._renders_video(spec):
                await self.chain.render_segment(
                    segment, result, storyboard.meta.aspect_ratio, prompt=prompt, token=token
                )
            else:
                self._complete_keyframe_only(results)

        await self._finalize(job, storyboard, results)

    # ------------------------------------------------------------------
    # Single-segment keyframes
    # ------------------------------------------------------------------

    async def generate_segment_keyframes(
        self,
        segment: Segment,
        context: KeyframeContext,
        token: Optional[CancellationToken] = None,
    ) -> SegmentKeyframes:
        """Generate first and last keyframes for one segment and wait for them."""
        return await self.chain.generate_segment_keyframes(segment, context, token)

    async def submit_keyframes(self, segment: Segment, context: KeyframeContext) -> str:
        """Same as generate_segment_keyframes, tracked as a job."""
        job = GenerationJob(
            kind=JobKind.KEYFRAMES,
            payload={"segment": segment.model_dump(mode="json"), "context": context.model_dump(mode="json")},
        )

        async def work(job: GenerationJob, token: CancellationToken) -> None:
            job.status = JobStatus.PROCESSING
            await self.job_store.put(job)
            frames = await self.generate_segment_keyframes(segment, context, token)
            job.result = frames.model_dump(mode="json")
            job.status = JobStatus.COMPLETED
            await self.job_store.put(job)

        return await self._start(job, work)

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    async def check_conflict(self, body_segment: Segment, hook_frames: List[str]) -> ConflictReport:
        """Check a body segment's solution item against resolved hook frames."""
        if self.conflict_detector is None:
            raise ValidationError("Conflict detection is not configured")
        return await self.conflict_detector.check_conflict(body_segment, hook_frames)

    async def regenerate_excluding(
        self,
        item: str,
        storyboard: Storyboard,
        hook_frames: Optional[List[str]] = None,
    ) -> Storyboard:
        """Plan a new storyboard without item; the given storyboard is left as-is."""
        if self.regenerator is None:
            raise ValidationError("Regeneration is not configured")
        if not item or not item.strip():
            raise ValidationError("Item to exclude must not be empty", field="item")

        new_storyboard = await self.regenerator.regenerate_excluding(item.strip(), storyboard, hook_frames)
        if self.cost_tracker:
            await self.cost_tracker.track_model_run(
                ModelTask.TEXT,
                self.regenerator.planner.model_name,
                {"storyboard_id": new_storyboard.id, "excluded": item},
            )
        return new_storyboard

    async def submit_regeneration(
        self,
        item: str,
        storyboard: Storyboard,
        hook_frames: Optional[List[str]] = None,
    ) -> str:
        """Same as regenerate_excluding, tracked as a job."""
        if self.regenerator is None:
            raise ValidationError("Regeneration is not configured")
        if not item or not item.strip():
            raise ValidationError("Item to exclude must not be empty", field="item")

        job = GenerationJob(
            kind=JobKind.REGENERATE,
            payload={"item": item, "storyboard_id": storyboard.id},
        )

        async def work(job: GenerationJob, token: CancellationToken) -> None:
            job.status = JobStatus.PROCESSING
            await self.job_store.put(job)
            new_storyboard = await self.regenerate_excluding(item, storyboard, hook_frames)
            job.result = {"storyboard": new_storyboard.model_dump(mode="json")}
            job.status = JobStatus.COMPLETED
            await self.job_store.put(job)

        return await self._start(job, work)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def active_jobs(self) -> List[str]:
        return list(self._tasks)

    async def wait_for(self, job_id: str) -> GenerationJob:
        """Await a job's supervised task (if any) and return its record."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return await self.get_job_status(job_id)

    async def shutdown(self) -> None:
        """Cancel outstanding supervised tasks; their jobs are recorded as failed."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.logger.info("orchestrator_shutdown", cancelled=len(tasks))


def create_orchestrator(
    job_store: JobStore,
    gateway: Optional[ReplicateGateway] = None,
    composer: Optional[PromptComposer] = None,
    cost_tracker: Optional[CostTracker] = None,
) -> GenerationOrchestrator:
    """
    Factory function to wire an orchestrator from settings.

    Args:
        job_store: Job store to record into
        gateway: Replicate gateway (created from settings if None)
        composer: Prompt composer (default composer if None)
        cost_tracker: Cost tracker (one logging to COST_LOG_PATH if None)

    Returns:
        Configured GenerationOrchestrator instance
    """
    gateway = gateway or get_provider_gateway()
    composer = composer or PromptComposer()
    cost_tracker = cost_tracker or CostTracker(settings.COST_LOG_PATH)

    poller = PredictionPoller(gateway)
    chain = SegmentContinuityChain(
        create_enhancement_chain(poller, composer),
        composer=composer,
        cost_tracker=cost_tracker,
    )
    vision = VisionService(gateway, composer)
    planner = StoryboardPlanner(gateway, composer)

    return GenerationOrchestrator(
        job_store=job_store,
        continuity_chain=chain,
        conflict_detector=ConflictDetector(vision, planner),
        regenerator=Regenerator(vision, planner, composer),
        cost_tracker=cost_tracker,
    )
