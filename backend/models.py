"""
Domain models for the generation orchestration layer

Requests and handles for single provider predictions, the storyboard
segments they are chained across, and the job records persisted by the
job store.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field, computed_field

from pipeline.error_handler import InvalidTransitionError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# Prediction status constants
class PredictionStatus:
    """Constants for prediction status values"""
    SUBMITTED = "submitted"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    TERMINAL = (SUCCEEDED, FAILED, CANCELED)


class FailureKind:
    """Why a handle ended in the failed state"""
    PROVIDER = "provider"
    TIMEOUT = "timeout"
    NO_RESULT = "no_result"
    STATUS_CHECK = "status_check"


# Job status constants
class JobStatus:
    """Constants for job status values"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobKind:
    """Constants for job kinds"""
    STORYBOARD = "storyboard"
    KEYFRAMES = "keyframes"
    REGENERATE = "regenerate"


# Segment status constants
class SegmentStatus:
    """Constants for segment status values"""
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


class SegmentType:
    HOOK = "hook"
    BODY = "body"
    CTA = "cta"


class AssetSource:
    BASE = "base"
    ENHANCED = "enhanced"
    SUPPLIED = "supplied"  # frame provided on the segment, nothing generated


class ActionType:
    BRINGING = "bringing"
    INTERACTING = "interacting"


class GenerationMode:
    PRODUCTION = "production"
    PREVIEW = "preview"


_STATUS_ORDER = {
    PredictionStatus.SUBMITTED: 0,
    PredictionStatus.RUNNING: 1,
    PredictionStatus.SUCCEEDED: 2,
    PredictionStatus.FAILED: 2,
    PredictionStatus.CANCELED: 2,
}


class GenerationRequest(BaseModel):
    """One unit of provider work. Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    model: str  # registry model name
    prompt: str
    references: List[str] = Field(default_factory=list)
    aspect_ratio: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    options: Dict[str, Any] = Field(default_factory=dict)
    # Local bookkeeping (stage, segment index, frame). Not sent to the provider.
    labels: Dict[str, Any] = Field(default_factory=dict)


class PredictionHandle(BaseModel):
    """
    Identifier plus status of one submitted GenerationRequest.

    Status moves forward only: submitted -> running -> terminal. Once
    terminal the handle is frozen in place; a retry submits a new request
    and gets a new handle.
    """

    prediction_id: str
    model: str
    status: str = PredictionStatus.SUBMITTED
    result_uri: Optional[str] = None
    error: Optional[str] = None
    failure_kind: Optional[str] = None
    ticks: int = 0
    labels: Dict[str, Any] = Field(default_factory=dict)
    submitted_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in PredictionStatus.TERMINAL

    def _advance(self, status: str) -> None:
        if self.is_terminal or _STATUS_ORDER[status] < _STATUS_ORDER[self.status]:
            raise InvalidTransitionError(self.prediction_id, self.status, status)
        self.status = status
        if self.is_terminal:
            self.completed_at = utc_now()

    def mark_running(self) -> None:
        if self.status != PredictionStatus.RUNNING:
            self._advance(PredictionStatus.RUNNING)

    def succeed(self, result_uri: str) -> None:
        if not result_uri:
            raise ValueError("succeeded predictions must carry a result URI")
        self._advance(PredictionStatus.SUCCEEDED)
        self.result_uri = result_uri

    def fail(self, reason: str, kind: str = FailureKind.PROVIDER) -> None:
        self._advance(PredictionStatus.FAILED)
        self.error = reason
        self.failure_kind = kind

    def cancel(self, reason: Optional[str] = None) -> None:
        self._advance(PredictionStatus.CANCELED)
        self.error = reason


class ProviderStatus(BaseModel):
    """Normalized answer to a single status check"""

    status: str
    result_uri: Optional[str] = None
    error: Optional[str] = None
    raw_status: Optional[str] = None


class EnhancementAttempt(BaseModel):
    """Base prediction, optional enhancement pass, and which one won."""

    model_config = ConfigDict(frozen=True)

    base: PredictionHandle
    enhancement: Optional[PredictionHandle] = None
    resolved_uri: str
    source: str = AssetSource.BASE
    enhancement_error: Optional[str] = None


class Segment(BaseModel):
    """One story beat of a storyboard"""

    type: str  # hook | body | cta
    description: str
    start_time: float = 0.0
    end_time: float = 0.0
    prompt: str
    prompt_alternatives: List[str] = Field(default_factory=list)
    first_frame_image: Optional[str] = None
    last_frame_image: Optional[str] = None
    audio_notes: Optional[str] = None
    solution_item: Optional[str] = None
    action_type: Optional[str] = None
    status: str = SegmentStatus.PENDING

    @property
    def duration(self) -> float:
        return max(self.end_time - self.start_time, 0.0)


class StoryboardMeta(BaseModel):
    product_name: Optional[str] = None
    aspect_ratio: str = "9:16"
    mode: str = GenerationMode.PRODUCTION
    mood: Optional[str] = None
    product_images: List[str] = Field(default_factory=list)
    story: Optional[str] = None


class Storyboard(BaseModel):
    id: str = Field(default_factory=new_id)
    segments: List[Segment]
    meta: StoryboardMeta = Field(default_factory=StoryboardMeta)
    regenerated_from: Optional[str] = None
    excluded_items: List[str] = Field(default_factory=list)
    allowed_items: List[str] = Field(default_factory=list)


class KeyframeContext(BaseModel):
    """What one segment's keyframe generation needs to know about its neighbours"""

    segment_index: int = 0
    product_name: Optional[str] = None
    product_images: List[str] = Field(default_factory=list)
    aspect_ratio: str = "9:16"
    mood: Optional[str] = None
    previous_segment: Optional[Segment] = None
    previous_last_frame: Optional[str] = None
    next_segment: Optional[Segment] = None
    enhance: bool = True


class Keyframe(BaseModel):
    frame: str  # first | last
    prediction_id: Optional[str] = None  # None when the frame was supplied
    image_uri: str
    prompt: Optional[str] = None
    source: str = AssetSource.BASE
    attempt: Optional[EnhancementAttempt] = None


class SegmentKeyframes(BaseModel):
    first: Keyframe
    last: Keyframe


class SegmentResult(BaseModel):
    """Per-segment progress stored inside a storyboard job's result"""

    index: int
    type: str
    status: str = SegmentStatus.PENDING
    first_frame: Optional[Keyframe] = None
    last_frame: Optional[Keyframe] = None
    video_url: Optional[str] = None
    video_prediction_id: Optional[str] = None
    voice_url: Optional[str] = None
    voice_prediction_id: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0

    @computed_field
    @property
    def source(self) -> Optional[str]:
        """enhanced only when every generated frame was enhanced"""
        frames = [f for f in (self.first_frame, self.last_frame) if f is not None]
        if not frames:
            return None
        frames = [f for f in frames if f.source != AssetSource.SUPPLIED]
        if not frames:
            return AssetSource.SUPPLIED
        if all(f.source == AssetSource.ENHANCED for f in frames):
            return AssetSource.ENHANCED
        return AssetSource.BASE


class GenerationJob(BaseModel):
    """Top-level tracked unit of work, persisted whole on every checkpoint"""

    id: str = Field(default_factory=new_id)
    kind: str = JobKind.STORYBOARD
    status: str = JobStatus.PENDING
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_finished(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)


class SolutionItem(BaseModel):
    item: str
    action: Optional[str] = None
    action_type: Optional[str] = None
    confidence: float = 0.0


class ConflictReport(BaseModel):
    item: Optional[str] = None
    action_type: Optional[str] = None
    has_conflict: bool = False
    checked: bool = False
    frames_examined: List[str] = Field(default_factory=list)
    detected_in_frames: List[str] = Field(default_factory=list)
    confidence: Optional[float] = None
    reason: Optional[str] = None


class JobSpec(BaseModel):
    """Input for a storyboard generation job"""

    storyboard: Storyboard
    enhance: bool = True
    generate_video: bool = True
