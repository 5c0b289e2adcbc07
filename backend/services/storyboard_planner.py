"""
Storyboard Planner

Text-model calls used by conflict handling: extracting a body segment's
solution item, and planning a replacement storyboard under constraints.
"""

from typing import List, Optional

import structlog

from config import settings
from models import Segment, SegmentType, SolutionItem
from pipeline.error_handler import APIError
from pipeline.prompt_composer import PromptComposer
from services.provider_gateway import ReplicateGateway, parse_json_text


logger = structlog.get_logger(__name__)


def as_float(value, default: float = 0.0) -> float:
    """Model JSON numbers may arrive as strings or words like "high"."""
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


class StoryboardPlanner:
    """LLM-backed storyboard planning via Replicate"""

    def __init__(
        self,
        gateway: ReplicateGateway,
        composer: Optional[PromptComposer] = None,
        model_name: Optional[str] = None,
    ):
        self.gateway = gateway
        self.composer = composer or PromptComposer()
        self.model_name = model_name or settings.TEXT_MODEL
        self.logger = logger.bind(service="storyboard_planner")

    async def extract_solution_item(self, segment: Segment) -> Optional[SolutionItem]:
        """
        Identify the item a body segment introduces or uses.

        Returns None when the model finds no item or answers with
        something that is not the expected JSON.

        Raises:
            APIError: If the text model call fails
        """
        text = await self.gateway.run_model_async(
            self.model_name,
            {"prompt": self.composer.solution_extraction_prompt(segment), "temperature": 0.0},
            service="planner",
        )
        data = parse_json_text(text)
        if not isinstance(data, dict) or not data.get("item"):
            self.logger.info("no_solution_item", description=segment.description[:80])
            return None

        return SolutionItem(
            item=str(data["item"]).strip(),
            action=data.get("action"),
            action_type=data.get("actionType") or data.get("action_type"),
            confidence=as_float(data.get("confidence")),
        )

    async def plan(self, story: str, segment_count: int, constraints: Optional[str] = None) -> List[Segment]:
        """
        Plan storyboard segments for a story.

        Raises:
            APIError: If the model fails or returns no usable segments
        """
        prompt = self.composer.storyboard_prompt(story, segment_count, constraints)
        text = await self.gateway.run_model_async(self.model_name, {"prompt": prompt}, service="planner")
        data = parse_json_text(text)

        raw_segments = data.get("segments") if isinstance(data, dict) else None
        if not raw_segments:
            raise APIError("planner", "Storyboard planner returned no segments", {"response": (text or "")[:200]})

        segments = []
        for raw in raw_segments:
            segment_type = str(raw.get("type", SegmentType.BODY)).lower()
            if segment_type not in (SegmentType.HOOK, SegmentType.BODY, SegmentType.CTA):
                segment_type = SegmentType.BODY
            description = raw.get("description") or ""
            segments.append(
                Segment(
                    type=segment_type,
                    description=description,
                    start_time=as_float(raw.get("startTime", raw.get("start_time"))),
                    end_time=as_float(raw.get("endTime", raw.get("end_time"))),
                    prompt=raw.get("visualPrompt") or raw.get("prompt") or description,
                    prompt_alternatives=list(raw.get("promptAlternatives") or []),
                    audio_notes=raw.get("audioNotes") or raw.get("audio_notes"),
                )
            )

        self.logger.info("storyboard_planned", segments=len(segments), constrained=constraints is not None)
        return segments
