"""
Prompt Composer

Builds the prompt strings the pipeline sends to providers. The
orchestration layer treats every string produced here as opaque; the
only structure it relies on is the request fields (model, references,
aspect ratio) assembled around them.
"""

from typing import List, Optional

from models import KeyframeContext, Segment, SegmentType


ENHANCEMENT_INSTRUCTION = (
    "Enhance this image to a professional, photorealistic quality. "
    "Do NOT change the product shape or geometry, any text or labels, "
    "faces, body poses or composition. "
    "Only adjust lighting, color saturation and clarity."
)

CONTINUITY_INSTRUCTION = (
    "CRITICAL VISUAL CONTINUITY: the last reference image is the previous frame of this ad. "
    "Keep the same characters, product appearance, background and lighting."
)

PRODUCT_INSTRUCTION = "Match the product exactly as shown in the product reference images."

CTA_INSTRUCTION = (
    "Final call-to-action shot: a distinct hero composition of the product, "
    "clean background, product centered and clearly legible."
)


class PromptComposer:
    """
    Default composer for keyframe, enhancement, video and voice prompts.

    Subclass and override any method to change wording; the pipeline
    only calls these methods.
    """

    def first_frame_prompt(self, segment: Segment, context: KeyframeContext) -> str:
        parts = [segment.prompt]
        if segment.type == SegmentType.CTA:
            parts.append(CTA_INSTRUCTION)
        elif context.previous_segment is not None:
            parts.append(f"Transitioning from: {context.previous_segment.description}.")
            if context.previous_last_frame:
                parts.append(CONTINUITY_INSTRUCTION)
        parts.extend(self._shared_parts(context))
        return " ".join(parts)

    def last_frame_prompt(self, segment: Segment, context: KeyframeContext) -> str:
        parts = [f"Current scene: {segment.description}."]
        if context.next_segment is not None and segment.type != SegmentType.CTA:
            parts.append(f"Transitioning to next scene: {context.next_segment.description}.")
        parts.append(segment.prompt)
        parts.append(CONTINUITY_INSTRUCTION)
        parts.extend(self._shared_parts(context))
        return " ".join(parts)

    def _shared_parts(self, context: KeyframeContext) -> List[str]:
        parts = []
        if context.product_images:
            parts.append(PRODUCT_INSTRUCTION)
        if context.mood:
            parts.append(f"Mood: {context.mood}.")
        return parts

    def enhancement_prompt(self, base_prompt: str) -> str:
        return f"{ENHANCEMENT_INSTRUCTION} Scene: {base_prompt}"

    def video_prompt(self, segment: Segment, prompt: Optional[str] = None) -> str:
        return prompt or segment.prompt

    def voice_text(self, segment: Segment) -> Optional[str]:
        if not segment.audio_notes:
            return None
        text = segment.audio_notes.strip()
        # "Voiceover: ..." style notes carry the spoken line after the label
        if ":" in text and text.split(":", 1)[0].lower().startswith(("voiceover", "vo", "narrator")):
            text = text.split(":", 1)[1].strip()
        return text.strip("\"' ") or None

    def frame_question(self, item: str) -> str:
        return (
            f"Does this image contain {item}? Look carefully, partial or "
            f"similar matches count (e.g. a visible part of the {item}). "
            f"Respond with only yes or no."
        )

    def item_extraction_prompt(self) -> str:
        return (
            "List every distinct physical object visible in this image. "
            'Respond with JSON only: {"items": ["object", ...]}'
        )

    def solution_extraction_prompt(self, segment: Segment) -> str:
        return (
            "Identify the solution item introduced or used in this ad scene, "
            "and the action performed with it.\n"
            f"Scene description: {segment.description}\n"
            f"Scene prompt: {segment.prompt}\n"
            "Respond with JSON only: "
            '{"item": "...", "action": "...", "actionType": "bringing" | "interacting", "confidence": 0.0-1.0}. '
            "Use bringing when someone brings, offers or hands over the item, "
            "interacting when someone uses or operates an item already present."
        )

    def exclusion_constraints(self, item: str, allowed_items: List[str]) -> str:
        lines = [f"DO NOT use {item} as the solution."]
        if allowed_items:
            lines.append(
                "The solution must use ONLY items visible in the opening scene: "
                + ", ".join(allowed_items) + "."
            )
        else:
            lines.append(
                "Only use items that plausibly appear in the opening scene; "
                "do not introduce new objects."
            )
        return "\n".join(lines)

    def storyboard_prompt(self, story: str, segment_count: int, constraints: Optional[str] = None) -> str:
        prompt = (
            f"Plan a {segment_count}-segment vertical video ad (hook, body, call-to-action).\n"
            f"Story: {story}\n"
        )
        if constraints:
            prompt += f"Constraints:\n{constraints}\n"
        prompt += (
            'Respond with JSON only: {"segments": [{"type": "hook|body|cta", "description": "...", '
            '"startTime": 0, "endTime": 0, "visualPrompt": "...", "audioNotes": "..."}]}'
        )
        return prompt
