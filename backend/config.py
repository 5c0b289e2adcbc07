"""
Configuration management for the generation backend
"""

import os
from typing import Optional
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


class Settings:
    """Application settings"""

    # CORS
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "http://localhost:3000")

    # Application
    DEBUG: bool = os.getenv("DEBUG", "false").lower() == "true"
    API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.getenv("API_PORT", "8000"))

    # API Keys
    REPLICATE_API_KEY: str = os.getenv("REPLICATE_API_KEY", "")
    REPLICATE_API_TOKEN: str = os.getenv("REPLICATE_API_TOKEN", "")  # Alternative naming

    # Model selection (registry names, see services/model_registry.py)
    KEYFRAME_MODEL: str = os.getenv("KEYFRAME_MODEL", "nano-banana")
    ENHANCEMENT_MODEL: Optional[str] = os.getenv("ENHANCEMENT_MODEL", "seedream-4") or None
    VIDEO_MODEL: str = os.getenv("VIDEO_MODEL", "minimax-video-01")
    VOICE_MODEL: str = os.getenv("VOICE_MODEL", "speech-02-hd")
    VISION_MODEL: str = os.getenv("VISION_MODEL", "claude-3.5-sonnet")
    TEXT_MODEL: str = os.getenv("TEXT_MODEL", "claude-3.5-sonnet")
    ENABLE_ENHANCEMENT: bool = os.getenv("ENABLE_ENHANCEMENT", "true").lower() == "true"

    # Polling (interval in seconds, budgets in ticks)
    POLL_INTERVAL: float = float(os.getenv("POLL_INTERVAL", "2.0"))
    KEYFRAME_MAX_TICKS: int = int(os.getenv("KEYFRAME_MAX_TICKS", "60"))  # ~2 minutes
    ENHANCEMENT_MAX_TICKS: int = int(os.getenv("ENHANCEMENT_MAX_TICKS", "90"))  # ~3 minutes
    VIDEO_MAX_TICKS: int = int(os.getenv("VIDEO_MAX_TICKS", "150"))  # ~5 minutes
    VOICE_MAX_TICKS: int = int(os.getenv("VOICE_MAX_TICKS", "60"))
    STATUS_CHECK_ATTEMPTS: int = int(os.getenv("STATUS_CHECK_ATTEMPTS", "3"))

    # Job store
    JOBS_DIR: str = os.getenv("JOBS_DIR", "./data/jobs")
    JOB_RETENTION_SECONDS: int = int(os.getenv("JOB_RETENTION_SECONDS", "600"))  # 10 minutes
    JOB_SWEEP_INTERVAL: int = int(os.getenv("JOB_SWEEP_INTERVAL", "60"))

    # Conflict detection
    CONFLICT_CACHE_SIZE: int = int(os.getenv("CONFLICT_CACHE_SIZE", "1024"))  # entries per cache

    # Cost tracking
    COST_LOG_PATH: str = os.getenv("COST_LOG_PATH", "./data/costs.jsonl")
    COST_MAX_ENTRIES: int = int(os.getenv("COST_MAX_ENTRIES", "10000"))

    # Keyframe composition
    MAX_REFERENCE_IMAGES: int = int(os.getenv("MAX_REFERENCE_IMAGES", "10"))
    DEFAULT_ASPECT_RATIO: str = os.getenv("DEFAULT_ASPECT_RATIO", "9:16")

    @property
    def replicate_token(self) -> str:
        """Replicate token from either supported variable"""
        return self.REPLICATE_API_TOKEN or self.REPLICATE_API_KEY

    @property
    def cors_origins_list(self) -> list:
        """Parse CORS origins into a list"""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]


# Global settings instance
settings = Settings()
