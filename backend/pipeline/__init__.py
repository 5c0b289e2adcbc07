"""
Generation orchestration pipeline package.

This package contains the components that drive provider predictions
to completion and chain them across a storyboard:
- Prediction polling with per-stage budgets
- Two-tier keyframe enhancement with fallback
- Segment continuity chaining
- Conflict detection and constrained regeneration
- Error handling for robust pipeline execution
"""

__version__ = "0.1.0"

from .error_handler import PipelineError, ErrorCode, should_retry

__all__ = [
    "PipelineError",
    "ErrorCode",
    "should_retry",
]
