"""
Tests for VisionService and StoryboardPlanner

Both sit on ReplicateGateway.run_model_async, mocked here.
"""

import json
from unittest.mock import AsyncMock, Mock

import pytest

from models import SegmentType
from pipeline.error_handler import APIError, ErrorCode
from services.provider_gateway import ReplicateGateway
from services.storyboard_planner import StoryboardPlanner, as_float
from services.vision_service import VisionService, parse_yes_no
from tests.fakes import make_segment


@pytest.fixture
def text_gateway():
    gateway = Mock(spec=ReplicateGateway)
    gateway.run_model_async = AsyncMock(return_value="")
    return gateway


@pytest.fixture
def vision(text_gateway, composer):
    return VisionService(text_gateway, composer, model_name="claude-3.5-sonnet")


@pytest.fixture
def planner(text_gateway, composer):
    return StoryboardPlanner(text_gateway, composer, model_name="claude-3.5-sonnet")


class TestParseYesNo:

    @pytest.mark.parametrize("text, expected", [
        ("Yes", True),
        ("yes, there is an umbrella", True),
        ("**Yes**", True),
        ("No.", False),
        ("I cannot tell", False),
        ("", False),
    ])
    def test_parse(self, text, expected):
        assert parse_yes_no(text) is expected


class TestVisionService:

    @pytest.mark.asyncio
    async def test_contains_item(self, vision, text_gateway):
        text_gateway.run_model_async.return_value = "Yes"

        assert await vision.contains_item("https://cdn.test/hook.png", "umbrella") is True

        model, params = text_gateway.run_model_async.await_args.args
        assert model == "claude-3.5-sonnet"
        assert params["image"] == "https://cdn.test/hook.png"
        assert "umbrella" in params["prompt"]
        assert text_gateway.run_model_async.await_args.kwargs["service"] == "vision"

    @pytest.mark.asyncio
    async def test_extract_items_merges_frames(self, vision, text_gateway):
        text_gateway.run_model_async.side_effect = [
            json.dumps({"items": ["Bench", "newspaper"]}),
            '```json\n{"items": ["bench", "Umbrella"]}\n```',
        ]

        items = await vision.extract_items(["https://cdn.test/a.png", "https://cdn.test/b.png"])

        assert items == ["bench", "newspaper", "umbrella"]

    @pytest.mark.asyncio
    async def test_extract_items_skips_failed_frames(self, vision, text_gateway):
        text_gateway.run_model_async.side_effect = [
            APIError("vision", "timeout"),
            json.dumps({"items": ["bench"]}),
            "not json",
        ]

        items = await vision.extract_items(["a", "b", "c"])

        assert items == ["bench"]

    @pytest.mark.asyncio
    async def test_classify_error_propagates(self, vision, text_gateway):
        text_gateway.run_model_async.side_effect = APIError("vision", "model down")

        with pytest.raises(APIError) as exc_info:
            await vision.contains_item("https://cdn.test/hook.png", "umbrella")
        assert exc_info.value.code == ErrorCode.VISION_CHECK_FAILED


class TestAsFloat:

    @pytest.mark.parametrize("value, expected", [
        (0.9, 0.9),
        ("0.75", 0.75),
        ("high", 0.0),
        (None, 0.0),
        ([1], 0.0),
    ])
    def test_as_float(self, value, expected):
        assert as_float(value) == expected


class TestStoryboardPlanner:

    @pytest.mark.asyncio
    async def test_extract_solution_item(self, planner, text_gateway):
        text_gateway.run_model_async.return_value = json.dumps(
            {"item": "umbrella", "action": "friend brings an umbrella", "actionType": "bringing", "confidence": 0.9}
        )

        solution = await planner.extract_solution_item(make_segment("body", 1))

        assert solution.item == "umbrella"
        assert solution.action_type == "bringing"
        assert solution.confidence == 0.9

    @pytest.mark.asyncio
    async def test_extract_solution_item_non_numeric_confidence(self, planner, text_gateway):
        text_gateway.run_model_async.return_value = json.dumps(
            {"item": "umbrella", "actionType": "bringing", "confidence": "high"}
        )

        solution = await planner.extract_solution_item(make_segment("body", 1))

        assert solution.item == "umbrella"
        assert solution.confidence == 0.0

    @pytest.mark.asyncio
    async def test_extract_solution_item_none(self, planner, text_gateway):
        text_gateway.run_model_async.return_value = '{"item": null}'

        assert await planner.extract_solution_item(make_segment("body", 1)) is None

    @pytest.mark.asyncio
    async def test_plan_parses_segments(self, planner, text_gateway):
        text_gateway.run_model_async.return_value = json.dumps({"segments": [
            {"type": "hook", "description": "Rain starts", "startTime": 0, "endTime": 3, "visualPrompt": "rain"},
            {"type": "solution", "description": "Newspaper as shelter", "startTime": 3, "endTime": 8},
            {"type": "CTA", "description": "Logo", "audioNotes": "Voiceover: Be ready."},
        ]})

        segments = await planner.plan("Caught in the rain", 3, "DO NOT use umbrella as the solution.")

        assert [s.type for s in segments] == [SegmentType.HOOK, SegmentType.BODY, SegmentType.CTA]
        assert segments[0].prompt == "rain"
        assert segments[1].prompt == "Newspaper as shelter"
        assert segments[1].end_time == 8.0
        assert segments[2].audio_notes == "Voiceover: Be ready."
        prompt = text_gateway.run_model_async.await_args.args[1]["prompt"]
        assert "DO NOT use umbrella as the solution." in prompt

    @pytest.mark.asyncio
    async def test_plan_without_segments_fails(self, planner, text_gateway):
        text_gateway.run_model_async.return_value = "Sorry, I can't help with that."

        with pytest.raises(APIError) as exc_info:
            await planner.plan("story", 3)
        assert exc_info.value.code == ErrorCode.STORYBOARD_PLANNING_FAILED
