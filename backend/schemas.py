"""
Pydantic schemas for request/response validation
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime

from models import KeyframeContext, Segment, Storyboard


class SubmitJobRequest(BaseModel):
    """Request model for storyboard generation"""
    storyboard: Storyboard = Field(..., description="Storyboard whose segments should be generated")
    enhance: bool = Field(default=True, description="Run the enhancement pass on every keyframe")
    generate_video: bool = Field(default=True, description="Render video and voice after keyframes")

    class Config:
        json_schema_extra = {
            "example": {
                "storyboard": {
                    "segments": [
                        {
                            "type": "hook",
                            "description": "Rain starts pouring on a woman at a bus stop",
                            "start_time": 0,
                            "end_time": 3,
                            "prompt": "Woman at a bus stop looks up as heavy rain begins"
                        },
                        {
                            "type": "body",
                            "description": "She opens the compact umbrella from her bag",
                            "start_time": 3,
                            "end_time": 8,
                            "prompt": "Woman opens a compact umbrella and smiles",
                            "audio_notes": "Voiceover: Always ready."
                        }
                    ],
                    "meta": {"product_name": "PocketBrella", "aspect_ratio": "9:16"}
                },
                "enhance": True,
                "generate_video": True
            }
        }


class SubmitJobResponse(BaseModel):
    """Response model for every endpoint that starts a job"""
    job_id: str = Field(..., description="Unique job identifier")
    status: str = Field(..., description="Job status at the time of the response")
    message: str = Field(..., description="Success message")

    class Config:
        json_schema_extra = {
            "example": {
                "job_id": "550e8400-e29b-41d4-a716-446655440000",
                "status": "pending",
                "message": "Generation job created successfully"
            }
        }


class JobStatusResponse(BaseModel):
    """Response model for job status endpoint"""
    job_id: str = Field(..., description="Unique job identifier")
    kind: str = Field(..., description="storyboard, keyframes or regenerate")
    status: str = Field(..., description="Overall job status")
    result: Optional[Dict[str, Any]] = Field(None, description="Partial or final result")
    error: Optional[str] = Field(None, description="Error message if job failed")
    created_at: datetime
    updated_at: datetime


class RetrySegmentRequest(BaseModel):
    """Request model for retrying a single segment"""
    alternative_index: Optional[int] = Field(
        None, ge=0, description="Use this prompt alternative instead of the segment's prompt"
    )


class KeyframesRequest(BaseModel):
    """Request model for single-segment keyframe generation"""
    segment: Segment
    context: KeyframeContext = Field(default_factory=KeyframeContext)


class ConflictCheckRequest(BaseModel):
    """Request model for a hook-vs-body conflict check"""
    body_segment: Segment
    hook_frames: List[str] = Field(default_factory=list, description="Resolved hook frame URIs")


class RegenerateRequest(BaseModel):
    """Request model for regenerating a storyboard without an item"""
    item: str = Field(..., min_length=1, description="Solution item to exclude")
    storyboard: Storyboard
    hook_frames: List[str] = Field(default_factory=list, description="Resolved hook frame URIs")


class ErrorResponse(BaseModel):
    """Standard error response"""
    error_code: str = Field(..., description="Error code")
    message: str = Field(..., description="Detailed error message")
    details: Dict[str, Any] = Field(default_factory=dict, description="Additional error details")
    user_message: str = Field(..., description="Human-readable error message")

    class Config:
        json_schema_extra = {
            "example": {
                "error_code": "JOB_NOT_FOUND",
                "message": "Job 550e8400-e29b-41d4-a716-446655440000 not found",
                "details": {"job_id": "550e8400-e29b-41d4-a716-446655440000"},
                "user_message": "Job not found."
            }
        }
