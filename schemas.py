"""Pydantic request/response schemas for the HTTP surface."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, StrictBool

__all__ = [
    "LearnerBody",
    "LearnerStatusBody",
    "LessonBody",
    "TaskBody",
    "CustomLessonBody",
    "CustomTaskBody",
    "LessonWatchedBody",
    "TaskProofBody",
    "ReviewBody",
    "CheckinBody",
    "CustomToggleBody",
    "ProgressResponse",
    "CheckinResponse",
    "XpEventResponse",
    "LeaderboardEntry",
    "ActivityResponse",
    "PendingSubmission",
    "PendingSubmissionList",
    "TeamBody",
    "TeamMemberBody",
    "LearnerProgressEntry",
    "TeamSummaryResponse",
]


class LearnerBody(BaseModel):
    learner_id: str = Field(min_length=1, max_length=128)
    full_name: str = Field(min_length=1, max_length=100)
    role: Literal["admin", "learner"] = "learner"
    level: Optional[str] = Field(default=None, min_length=1, max_length=32)
    english_level: Optional[str] = Field(default=None, min_length=1, max_length=32)


class LearnerStatusBody(BaseModel):
    status: Literal["pending", "approved", "rejected"]


class LessonBody(BaseModel):
    lesson_id: Optional[str] = None
    title: str = Field(min_length=1, max_length=200)
    track: str = Field(min_length=1, max_length=64, description="data, english, soft or a custom track name.")
    level: Optional[str] = Field(default=None, min_length=1, max_length=32)
    english_level: Optional[str] = Field(default=None, min_length=1, max_length=32)
    published: bool = False
    video_link: Optional[str] = None
    duration_minutes: Optional[int] = Field(default=None, ge=0)
    order_index: Optional[int] = None


class TaskBody(BaseModel):
    task_id: Optional[str] = None
    title: str = Field(min_length=1, max_length=200)
    track: str = Field(min_length=1, max_length=64)
    xp: int = Field(default=0, ge=0)
    level: Optional[str] = Field(default=None, min_length=1, max_length=32)
    published: bool = False
    description: Optional[str] = None
    resource_link: Optional[str] = None
    deadline: Optional[str] = None


class CustomLessonBody(BaseModel):
    learner_id: str
    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    track: str = "custom"
    video_link: Optional[str] = None


class CustomTaskBody(BaseModel):
    learner_id: str
    title: str = Field(min_length=1, max_length=200)
    xp_value: int = Field(default=0, ge=0)
    description: Optional[str] = None
    track: str = "custom"


class LessonWatchedBody(BaseModel):
    learner_id: str
    # Strict so "yes" or 1 is rejected instead of coerced.
    watched: StrictBool


class TaskProofBody(BaseModel):
    learner_id: str
    proof_text: str
    proof_type: Literal["text", "link", "file"] = "text"


class ReviewBody(BaseModel):
    decision: Literal["approve", "reject"]
    reviewer_id: Optional[str] = None
    xp_override: Optional[int] = Field(default=None, ge=0)
    note: Optional[str] = Field(default=None, max_length=2000)


class CheckinBody(BaseModel):
    learner_id: str
    track: str = Field(description="Check-in key: data, lang (or english) or soft.")
    local_date: str = Field(
        pattern=r"^\d{4}-\d{2}-\d{2}$",
        description="Caller's local calendar day; the server does not infer time zones.",
    )


class CustomToggleBody(BaseModel):
    completed: StrictBool
    kind: Literal["task", "lesson"] = "task"
    learner_id: Optional[str] = None


class ProgressResponse(BaseModel):
    learner_id: str
    level: Optional[str] = None
    per_track: Dict[str, float]
    task_pct: float
    overall: float
    counts: Dict[str, Dict[str, int]] = Field(default_factory=dict)
    labels: Dict[str, str] = Field(default_factory=dict)


class CheckinResponse(BaseModel):
    success: bool
    track: str
    date: str
    reason: Optional[str] = None
    xp_awarded: int = 0
    xp_total: Optional[int] = None
    streak_days: Optional[int] = None
    message_ar: Optional[str] = None


class XpEventResponse(BaseModel):
    id: int
    learner_id: str
    source: str
    direction: str
    requested: int
    applied: int
    balance_after: int
    related_id: Optional[str] = None
    created_at: Optional[str] = None


class LeaderboardEntry(BaseModel):
    rank: int
    id: str
    full_name: str
    level: Optional[str] = None
    xp_total: int
    streak_days: int
    overall_progress: Optional[float] = None


class ActivityResponse(BaseModel):
    id: int
    learner_id: str
    verb: str
    object_id: str
    xp_earned: int
    description: Optional[str] = None
    context: Optional[Dict[str, Any]] = None
    created_at: Optional[str] = None


class PendingSubmission(BaseModel):
    id: str
    learner_id: str
    learner_name: str
    task_id: str
    task_title: str
    task_xp: int
    completion_proof: Optional[str] = None
    proof_type: Optional[str] = None
    submitted_at: Optional[str] = None


class PendingSubmissionList(BaseModel):
    count: int
    items: List[PendingSubmission]


class TeamBody(BaseModel):
    team_id: Optional[str] = None
    name: str = Field(min_length=1, max_length=100)
    leader_id: str
    code: Optional[str] = Field(default=None, max_length=32)


class TeamMemberBody(BaseModel):
    # None removes the learner from their team.
    team_id: Optional[str] = None


class LearnerProgressEntry(BaseModel):
    id: str
    full_name: str
    status: Optional[str] = None
    level: Optional[str] = None
    english_level: Optional[str] = None
    team_id: Optional[str] = None
    xp_total: int
    streak_days: int
    per_track: Dict[str, float] = Field(default_factory=dict)
    task_pct: float = 0.0
    overall_progress: float = 0.0


class TeamSummaryResponse(BaseModel):
    team: Dict[str, Any]
    member_count: int
    total_xp: int
    average_progress: float
    members: List[LearnerProgressEntry]
