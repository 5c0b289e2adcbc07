"""
Vision Check Service

Asks a vision-capable model questions about generated frames: yes/no
classification for conflict checks and structured item listing for
regeneration allow-lists.
"""

import asyncio
from typing import Any, List, Optional, Union

import structlog

from config import settings
from pipeline.error_handler import APIError
from pipeline.prompt_composer import PromptComposer
from services.provider_gateway import ReplicateGateway, parse_json_text


logger = structlog.get_logger(__name__)


def parse_yes_no(text: str) -> bool:
    """Interpret a free-text answer as yes/no. Anything not starting with yes is no."""
    answer = (text or "").strip().lower().lstrip("*\"'` ")
    return answer.startswith("yes") or answer.startswith("true")


class VisionService:
    """
    Vision checks over image URIs.

    Example:
        vision = VisionService(gateway)
        present = await vision.contains_item(frame_uri, "umbrella")
    """

    def __init__(
        self,
        gateway: ReplicateGateway,
        composer: Optional[PromptComposer] = None,
        model_name: Optional[str] = None,
    ):
        self.gateway = gateway
        self.composer = composer or PromptComposer()
        self.model_name = model_name or settings.VISION_MODEL
        self.logger = logger.bind(service="vision_service")

    async def classify(self, image: str, question: str, structured: bool = False) -> Union[bool, Any]:
        """
        Ask a question about one image.

        Args:
            image: Image URI
            question: Prompt for the vision model
            structured: Parse the answer as JSON instead of yes/no

        Returns:
            bool for yes/no questions, parsed JSON (or None) when structured

        Raises:
            APIError: If the vision model call fails
        """
        self.logger.info("vision_check", image=image, structured=structured)
        text = await self.gateway.run_model_async(
            self.model_name,
            {"prompt": question, "image": image},
            service="vision",
        )
        if structured:
            return parse_json_text(text)
        return parse_yes_no(text)

    async def contains_item(self, image: str, item: str) -> bool:
        return await self.classify(image, self.composer.frame_question(item))

    async def extract_items(self, images: List[str]) -> List[str]:
        """
        List the distinct physical items visible across frames.

        Frames whose analysis fails are skipped. Item names are lowercased
        and de-duplicated in first-seen order.
        """
        results = await asyncio.gather(
            *(self.classify(image, self.composer.item_extraction_prompt(), structured=True) for image in images),
            return_exceptions=True,
        )

        items: List[str] = []
        for image, result in zip(images, results):
            if isinstance(result, APIError):
                self.logger.warning("item_extraction_failed", image=image, error=result.message)
                continue
            if isinstance(result, BaseException):
                raise result
            if not isinstance(result, dict):
                continue
            for item in result.get("items") or []:
                name = str(item).strip().lower()
                if name and name not in items:
                    items.append(name)

        self.logger.info("items_extracted", frames=len(images), items=len(items))
        return items
