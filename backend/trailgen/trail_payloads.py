"""Pydantic request and response models for the trails API."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .trail_state import RefreshReason


class GenerateTrailRequest(BaseModel):
    language_code: str = Field(..., min_length=2, max_length=10)
    level_code: Optional[str] = Field(default=None, max_length=10)
    preferences: Optional[Dict[str, Any]] = None
    force_regenerate: bool = False


class RefreshTrailRequest(BaseModel):
    reason: RefreshReason
    # Accepted and ignored; progress never carries over to the new trail.
    preserve_progress: bool = True
    new_level_code: Optional[str] = Field(default=None, max_length=10)
    preferences: Optional[Dict[str, Any]] = None
    notes: Optional[str] = Field(default=None, max_length=500)


class LessonProgressUpdate(BaseModel):
    completed: bool = False
    score: Optional[Decimal] = Field(default=None, ge=0, le=100)
    time_spent_seconds: Optional[int] = Field(default=None, ge=0)


class ProgressPayload(BaseModel):
    total_lessons: int = 0
    lessons_completed: int = 0
    progress_percentage: float = 0.0
    average_score: Optional[float] = None
    time_spent_minutes: int = 0
    last_activity_at: Optional[datetime] = None


class LessonPayload(BaseModel):
    id: str
    module_id: str
    title: str
    lesson_type: str
    order_index: int
    duration_minutes: int
    is_placeholder: bool
    descriptor_code: Optional[str] = None
    content_block_id: Optional[str] = None
    content: Optional[Dict[str, Any]] = None
    completed: bool = False
    completed_at: Optional[datetime] = None
    score: Optional[float] = None
    time_spent_seconds: int = 0


class ModulePayload(BaseModel):
    id: str
    trail_id: str
    title: str
    competency_code: Optional[str] = None
    order_index: int
    status: str
    total_lessons: int = 0
    lessons_completed: int = 0
    lessons: Optional[List[LessonPayload]] = None


class TrailPayload(BaseModel):
    id: str
    student_id: str
    language_code: str
    level_code: Optional[str] = None
    status: str
    content_hash: str
    curriculum_version: str
    blueprint_id: Optional[str] = None
    previous_trail_id: Optional[str] = None
    refresh_reason: Optional[str] = None
    archived_at: Optional[datetime] = None
    total_modules: int = 0
    modules_ready: int = 0
    estimated_duration_hours: float = 0.0
    progress: ProgressPayload = Field(default_factory=ProgressPayload)
    created_at: datetime
    updated_at: datetime


class GenerationStatusPayload(BaseModel):
    trail_id: str
    job_id: Optional[str] = None
    status: Optional[str] = None
    job_type: Optional[str] = None
    attempt_count: int = 0
    max_attempts: int = 0
    last_error: Optional[str] = None
    error_details: Optional[Any] = None
    next_retry_at: Optional[datetime] = None
    queued_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None


__all__ = [
    "GenerateTrailRequest",
    "GenerationStatusPayload",
    "LessonPayload",
    "LessonProgressUpdate",
    "ModulePayload",
    "ProgressPayload",
    "RefreshTrailRequest",
    "TrailPayload",
]
