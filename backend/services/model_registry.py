"""
Model Registry - Centralized configuration for all provider models

This module provides a single source of truth for the models the
orchestration layer may submit to, how each one expects its inputs,
and what a run costs. The gateway refuses any model not listed here.
"""

from enum import Enum
from typing import Dict, Any, Optional
from pydantic import BaseModel
import structlog

logger = structlog.get_logger()


class ModelTask(str, Enum):
    """AI task types"""
    KEYFRAME = "keyframe"
    ENHANCEMENT = "enhancement"
    VIDEO_SEGMENT = "video_segment"
    VOICEOVER = "voiceover"
    VISION = "vision"
    TEXT = "text"


class ModelConfig(BaseModel):
    """Configuration for a specific AI model"""
    model_id: str  # Replicate model ID (e.g., "google/nano-banana")
    version: Optional[str] = None  # Specific version hash (optional)
    display_name: str
    description: str
    default_params: Dict[str, Any] = {}
    prompt_field: str = "prompt"
    reference_field: Optional[str] = None  # input key for reference media
    multiple_references: bool = False  # list input vs first reference only
    last_frame_field: Optional[str] = None  # video models that accept an end frame
    supports_aspect_ratio: bool = True
    cost_per_run: float = 0.0  # Estimated cost in USD
    avg_duration: float = 0.0  # Average duration in seconds


class ModelRegistry:
    """
    Registry of all available models organized by task type.

    Provides:
    - Model discovery and selection
    - Input field mapping per model
    - Cost estimation
    """

    # Base keyframe models
    KEYFRAME_MODELS: Dict[str, ModelConfig] = {
        "nano-banana": ModelConfig(
            model_id="google/nano-banana",
            display_name="Nano Banana",
            description="Fast reference-guided image generation for keyframes",
            default_params={"output_format": "png"},
            reference_field="image_input",
            multiple_references=True,
            cost_per_run=0.05,
            avg_duration=15.0
        ),
        "flux-schnell": ModelConfig(
            model_id="black-forest-labs/flux-schnell",
            display_name="FLUX.1 Schnell",
            description="Ultra-fast text-to-image, no reference support",
            default_params={"num_outputs": 1, "output_format": "png"},
            cost_per_run=0.003,
            avg_duration=3.0
        ),
    }

    # Enhancement pass models
    ENHANCEMENT_MODELS: Dict[str, ModelConfig] = {
        "seedream-4": ModelConfig(
            model_id="bytedance/seedream-4",
            display_name="Seedream 4",
            description="High-resolution image refinement from a reference image",
            default_params={"size": "2K", "max_images": 1, "sequential_image_generation": "disabled"},
            reference_field="image_input",
            multiple_references=True,
            cost_per_run=0.03,
            avg_duration=40.0
        ),
    }

    # Video segment models
    VIDEO_MODELS: Dict[str, ModelConfig] = {
        "minimax-video-01": ModelConfig(
            model_id="minimax/video-01",
            display_name="Minimax Video-01",
            description="Image-to-video from a first frame (6s clips)",
            default_params={"prompt_optimizer": True},
            reference_field="first_frame_image",
            supports_aspect_ratio=False,
            cost_per_run=0.15,
            avg_duration=180.0
        ),
        "veo-3.1-fast": ModelConfig(
            model_id="google/veo-3.1-fast",
            display_name="Veo 3.1 Fast",
            description="First and last frame guided video",
            default_params={"duration": 8, "generate_audio": False},
            reference_field="image",
            last_frame_field="last_frame",
            cost_per_run=0.15,
            avg_duration=120.0
        ),
        "kling-v2.1": ModelConfig(
            model_id="kwaivgi/kling-v2.1",
            display_name="Kling 2.1",
            description="Start and end image guided video",
            default_params={"duration": 5, "mode": "pro"},
            reference_field="start_image",
            last_frame_field="end_image",
            supports_aspect_ratio=False,
            cost_per_run=0.15,
            avg_duration=240.0
        ),
    }

    # Voiceover/TTS Models (via Replicate)
    VOICEOVER_MODELS: Dict[str, ModelConfig] = {
        "speech-02-hd": ModelConfig(
            model_id="minimax/speech-02-hd",
            display_name="Minimax Speech-02 HD",
            description="Natural sounding narration",
            default_params={"voice_id": "Friendly_Person", "emotion": "auto"},
            prompt_field="text",
            supports_aspect_ratio=False,
            cost_per_run=0.05,
            avg_duration=10.0
        ),
    }

    # Vision models (image + question)
    VISION_MODELS: Dict[str, ModelConfig] = {
        "claude-3.5-sonnet": ModelConfig(
            model_id="anthropic/claude-3.5-sonnet",
            display_name="Claude 3.5 Sonnet",
            description="Vision analysis of generated frames",
            default_params={"max_tokens": 1024, "temperature": 0.0},
            reference_field="image",
            supports_aspect_ratio=False,
            cost_per_run=0.015,
            avg_duration=5.0
        ),
    }

    # Text models (solution extraction, storyboard planning)
    TEXT_MODELS: Dict[str, ModelConfig] = {
        "claude-3.5-sonnet": ModelConfig(
            model_id="anthropic/claude-3.5-sonnet",
            display_name="Claude 3.5 Sonnet",
            description="Storyboard planning and structured extraction",
            default_params={"max_tokens": 4096, "temperature": 0.7},
            supports_aspect_ratio=False,
            cost_per_run=0.002,
            avg_duration=8.0
        ),
        "llama-3.1-70b": ModelConfig(
            model_id="meta/meta-llama-3.1-70b-instruct",
            display_name="Llama 3.1 70B",
            description="Fast, cost-effective planning",
            default_params={"max_tokens": 4096, "temperature": 0.7},
            supports_aspect_ratio=False,
            cost_per_run=0.0025,
            avg_duration=3.0
        ),
    }

    # Default models for each task
    DEFAULT_MODELS: Dict[ModelTask, str] = {
        ModelTask.KEYFRAME: "nano-banana",
        ModelTask.ENHANCEMENT: "seedream-4",
        ModelTask.VIDEO_SEGMENT: "minimax-video-01",
        ModelTask.VOICEOVER: "speech-02-hd",
        ModelTask.VISION: "claude-3.5-sonnet",
        ModelTask.TEXT: "claude-3.5-sonnet",
    }

    @classmethod
    def _registry_map(cls) -> Dict[ModelTask, Dict[str, ModelConfig]]:
        return {
            ModelTask.KEYFRAME: cls.KEYFRAME_MODELS,
            ModelTask.ENHANCEMENT: cls.ENHANCEMENT_MODELS,
            ModelTask.VIDEO_SEGMENT: cls.VIDEO_MODELS,
            ModelTask.VOICEOVER: cls.VOICEOVER_MODELS,
            ModelTask.VISION: cls.VISION_MODELS,
            ModelTask.TEXT: cls.TEXT_MODELS,
        }

    @classmethod
    def get_model(cls, task: ModelTask, model_name: Optional[str] = None) -> ModelConfig:
        """
        Get model configuration for a task.

        Args:
            task: The AI task type
            model_name: Specific model name (optional, uses default if None)

        Returns:
            ModelConfig for the requested model

        Raises:
            ValueError: If model not found
        """
        registry = cls._registry_map().get(task)
        if not registry:
            raise ValueError(f"Unknown task type: {task}")

        if model_name is None:
            model_name = cls.DEFAULT_MODELS[task]

        model_config = registry.get(model_name)
        if not model_config:
            available = list(registry.keys())
            raise ValueError(
                f"Model '{model_name}' not found for task '{task}'. "
                f"Available models: {available}"
            )

        logger.debug(
            "model_selected",
            task=task.value,
            model_name=model_name,
            model_id=model_config.model_id,
            cost=model_config.cost_per_run
        )

        return model_config

    @classmethod
    def find_model(cls, name: str) -> Optional[ModelConfig]:
        """
        Look a model up by registry name or Replicate model ID across all tasks.

        Returns None for unknown models.
        """
        for registry in cls._registry_map().values():
            if name in registry:
                return registry[name]
            for config in registry.values():
                if config.model_id == name:
                    return config
        return None

    @classmethod
    def estimate_cost(cls, task: ModelTask, model_name: Optional[str] = None) -> float:
        """
        Estimate cost for running a model.

        Args:
            task: The AI task type
            model_name: Specific model name (optional)

        Returns:
            Estimated cost in USD
        """
        model = cls.get_model(task, model_name)
        return model.cost_per_run
