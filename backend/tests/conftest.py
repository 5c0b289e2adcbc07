"""
Pytest configuration for the orchestration tests.

This file is automatically loaded by pytest. It puts the backend
directory on the import path and wires the pipeline around a scripted
FakeGateway so no test talks to Replicate.
"""

import sys
from pathlib import Path
from unittest.mock import AsyncMock, Mock

# Add backend directory to Python path for imports
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

import pytest
from tenacity import wait_none

from pipeline.continuity_chain import SegmentContinuityChain
from pipeline.enhancement_chain import EnhancementChain
from pipeline.poller import PredictionPoller
from pipeline.prompt_composer import PromptComposer
from services.cost_tracker import CostTracker
from services.job_store import InMemoryDurableStore, JobStore
from services.storyboard_planner import StoryboardPlanner
from services.vision_service import VisionService
from tests.fakes import FAST_BUDGET, FakeGateway


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def poller(gateway):
    return PredictionPoller(gateway, status_check_attempts=3, retry_wait=wait_none())


@pytest.fixture
def composer():
    return PromptComposer()


@pytest.fixture
def enhancement_chain(poller, composer):
    return EnhancementChain(
        poller,
        composer=composer,
        enhancement_model="seedream-4",
        base_budget=FAST_BUDGET,
        enhancement_budget=FAST_BUDGET,
    )


@pytest.fixture
def cost_tracker():
    return CostTracker()


@pytest.fixture
def continuity_chain(enhancement_chain, composer, cost_tracker):
    return SegmentContinuityChain(
        enhancement_chain,
        composer=composer,
        cost_tracker=cost_tracker,
        keyframe_model="nano-banana",
        video_model="minimax-video-01",
        voice_model="speech-02-hd",
        video_budget=FAST_BUDGET,
        voice_budget=FAST_BUDGET,
    )


@pytest.fixture
def durable_store():
    return InMemoryDurableStore()


@pytest.fixture
def job_store(durable_store):
    return JobStore(durable_store, retention_seconds=600, sweep_interval=60)


@pytest.fixture
def mock_vision():
    """VisionService double; nothing is visible unless a test says so"""
    vision = Mock(spec=VisionService)
    vision.contains_item = AsyncMock(return_value=False)
    vision.extract_items = AsyncMock(return_value=[])
    return vision


@pytest.fixture
def mock_planner():
    planner = Mock(spec=StoryboardPlanner)
    planner.model_name = "claude-3.5-sonnet"
    planner.extract_solution_item = AsyncMock(return_value=None)
    planner.plan = AsyncMock(return_value=[])
    return planner
