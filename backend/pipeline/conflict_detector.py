"""
Conflict detection and constrained regeneration.

A body segment's solution item is classified as either brought into the
scene ("bringing") or operated on ("interacting"). Bringing items are
staged into the hook ahead of time, so they must be visible in at least
one hook frame; if none shows the item, the body contradicts the hook.
Interacting items are not checked.

The regenerator answers a conflict by planning a new storyboard that
excludes the offending item and, when possible, draws only on items
visible in the hook frames.
"""

import asyncio
import re
from collections import OrderedDict
from typing import List, Optional

import structlog

from config import settings
from models import (
    ActionType,
    ConflictReport,
    Segment,
    SegmentType,
    SolutionItem,
    Storyboard,
    new_id,
)
from pipeline.error_handler import APIError
from pipeline.prompt_composer import PromptComposer
from services.storyboard_planner import StoryboardPlanner
from services.vision_service import VisionService


logger = structlog.get_logger(__name__)

MIN_EXTRACTION_CONFIDENCE = 0.5


class LRUCache:
    """Dict-like cache that drops the least recently used entry past max_size"""

    def __init__(self, max_size: int):
        self.max_size = max_size
        # Oldest first
        self._entries: OrderedDict = OrderedDict()

    def __contains__(self, key) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key):
        value = self._entries[key]
        self._entries.move_to_end(key)
        return value

    def set(self, key, value) -> None:
        self._entries[key] = value
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)


BRINGING_VERBS = ("brings", "offers", "provides", "delivers", "presents", "gives", "hands")
INTERACTING_VERBS = (
    "uses", "refills", "interacts", "helps", "assists",
    "operates", "activates", "manipulates", "works with",
)


def infer_action_type(action: Optional[str]) -> str:
    """
    Classify an action phrase by its verb.

    Interacting verbs win when both kinds appear; unknown phrases count as
    bringing, the stricter check.
    """
    text = (action or "").lower()
    if any(re.search(rf"\b{verb}\b", text) for verb in INTERACTING_VERBS):
        return ActionType.INTERACTING
    if any(re.search(rf"\b{verb}\b", text) for verb in BRINGING_VERBS):
        return ActionType.BRINGING
    return ActionType.BRINGING


class ConflictDetector:
    """
    Hook-vs-body solution item check.

    Extractions and frame verdicts are cached on the instance (LRU, bounded
    by CONFLICT_CACHE_SIZE), so the same segment and frames produce the
    same report.
    """

    def __init__(self, vision: VisionService, planner: StoryboardPlanner, cache_size: Optional[int] = None):
        self.vision = vision
        self.planner = planner
        cache_size = cache_size or settings.CONFLICT_CACHE_SIZE
        self._extractions = LRUCache(cache_size)
        self._verdicts = LRUCache(cache_size)
        self.logger = logger.bind(service="conflict_detector")

    async def resolve_solution_item(self, segment: Segment) -> Optional[SolutionItem]:
        if segment.solution_item:
            return SolutionItem(
                item=segment.solution_item,
                action_type=segment.action_type,
                confidence=1.0,
            )

        key = (segment.description, segment.prompt)
        if key in self._extractions:
            return self._extractions.get(key)

        try:
            extracted = await self.planner.extract_solution_item(segment)
        except APIError as e:
            self.logger.warning("solution_item_extraction_failed", error=e.message)
            return None

        if extracted is not None and extracted.confidence < MIN_EXTRACTION_CONFIDENCE:
            self.logger.info(
                "solution_item_low_confidence",
                item=extracted.item,
                confidence=extracted.confidence,
            )
            extracted = None
        self._extractions.set(key, extracted)
        return extracted

    async def _frame_contains(self, frame: str, item: str) -> bool:
        key = (frame, item.lower())
        if key in self._verdicts:
            return self._verdicts.get(key)
        try:
            present = await self.vision.contains_item(frame, item)
        except APIError as e:
            self.logger.warning("frame_check_failed", frame=frame, item=item, error=e.message)
            return False
        self._verdicts.set(key, present)
        return present

    async def check_conflict(self, body_segment: Segment, hook_frames: List[str]) -> ConflictReport:
        """
        Check a body segment's solution item against resolved hook frames.

        Returns:
            ConflictReport; has_conflict is only ever true for bringing
            items absent from every hook frame
        """
        frames = [f for f in hook_frames if f]
        if not frames or body_segment.type != SegmentType.BODY:
            return ConflictReport(frames_examined=frames, reason="not applicable")

        solution = await self.resolve_solution_item(body_segment)
        if solution is None:
            return ConflictReport(frames_examined=frames, reason="no solution item")

        action_type = solution.action_type
        if action_type not in (ActionType.BRINGING, ActionType.INTERACTING):
            action_type = infer_action_type(solution.action)

        if action_type == ActionType.INTERACTING:
            self.logger.info("conflict_check_skipped", item=solution.item, action_type=action_type)
            return ConflictReport(
                item=solution.item,
                action_type=action_type,
                frames_examined=frames,
                confidence=solution.confidence,
                reason="interacting items are expected to pre-exist",
            )

        verdicts = await asyncio.gather(*(self._frame_contains(frame, solution.item) for frame in frames))
        detected = [frame for frame, present in zip(frames, verdicts) if present]
        has_conflict = not detected

        self.logger.info(
            "conflict_checked",
            item=solution.item,
            action_type=action_type,
            frames=len(frames),
            detected=len(detected),
            has_conflict=has_conflict,
        )

        return ConflictReport(
            item=solution.item,
            action_type=action_type,
            has_conflict=has_conflict,
            checked=True,
            frames_examined=frames,
            detected_in_frames=detected,
            confidence=solution.confidence,
            reason="item not visible in any hook frame" if has_conflict else None,
        )


class Regenerator:
    """Plans a replacement storyboard that avoids a conflicting item"""

    def __init__(
        self,
        vision: VisionService,
        planner: StoryboardPlanner,
        composer: Optional[PromptComposer] = None,
    ):
        self.vision = vision
        self.planner = planner
        self.composer = composer or PromptComposer()
        self.logger = logger.bind(service="regenerator")

    async def regenerate_excluding(
        self,
        item: str,
        storyboard: Storyboard,
        hook_frames: Optional[List[str]] = None,
    ) -> Storyboard:
        """
        Plan a new storyboard without the given item.

        Args:
            item: Solution item to exclude
            storyboard: Storyboard that produced the conflict (not modified)
            hook_frames: Resolved hook frames used to build the allow-list

        Returns:
            New Storyboard with a new id

        Raises:
            APIError: If planning fails
        """
        allowed_items: List[str] = []
        if hook_frames:
            allowed_items = await self.vision.extract_items([f for f in hook_frames if f])
        allowed_items = [i for i in allowed_items if i.lower() != item.lower()]

        # Items excluded by earlier regenerations stay excluded
        earlier = [e for e in storyboard.excluded_items if e.lower() != item.lower()]
        excluded = earlier + [item]
        constraints = self.composer.exclusion_constraints(item, allowed_items)
        for excluded_item in earlier:
            constraints += f"\nDO NOT use {excluded_item} as the solution."

        story = storyboard.meta.story or " ".join(s.description for s in storyboard.segments)
        segments = await self.planner.plan(story, len(storyboard.segments), constraints)

        new_storyboard = Storyboard(
            id=new_id(),
            segments=segments,
            meta=storyboard.meta.model_copy(),
            regenerated_from=storyboard.id,
            excluded_items=excluded,
            allowed_items=allowed_items,
        )

        self.logger.info(
            "storyboard_regenerated",
            original_id=storyboard.id,
            new_id=new_storyboard.id,
            excluded=excluded,
            allowed_items=len(allowed_items),
        )
        return new_storyboard
