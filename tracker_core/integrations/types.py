"""Universal task/project/user/comment models shared by every tracker adapter."""

from __future__ import annotations
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TrackerProvider(str, Enum):
    LINEAR = "linear"
    TRELLO = "trello"
    ASANA = "asana"
    MONDAY = "monday"
    CLICKUP = "clickup"
    NOTION = "notion"
    WRIKE = "wrike"
    SHORTCUT = "shortcut"
    BASECAMP = "basecamp"
    JIRA = "jira"


class StatusCategory(str, Enum):
    BACKLOG = "backlog"
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    DONE = "done"
    CANCELLED = "cancelled"


PRIORITY_NAMES = ("None", "Low", "Medium", "High", "Urgent")

TextFormat = Literal["markdown", "html", "plain"]


# ---------------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------------

class TrackerUser(BaseModel):
    id: str
    external_id: str
    name: str
    email: Optional[str] = None
    avatar_url: Optional[str] = None


class TrackerLabel(BaseModel):
    id: str
    name: str
    color: Optional[str] = None


class TrackerStatus(BaseModel):
    id: str
    name: str
    category: StatusCategory
    color: Optional[str] = None


class TrackerPriority(BaseModel):
    level: int = Field(..., ge=0, le=4)
    name: str
    color: Optional[str] = None


class TrackerEstimate(BaseModel):
    value: float
    unit: Literal["points", "hours", "days", "minutes"]


class TrackerRef(BaseModel):
    """Reference to a parent project or task."""
    id: str
    external_id: str
    name: Optional[str] = None


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class TrackerTask(BaseModel):
    """Universal task/issue representation that maps across all trackers."""
    id: str
    external_id: str
    provider: TrackerProvider
    title: str
    description: Optional[str] = None
    description_format: TextFormat = "markdown"
    status: TrackerStatus
    priority: Optional[TrackerPriority] = None
    assignees: list[TrackerUser] = Field(default_factory=list)
    labels: list[TrackerLabel] = Field(default_factory=list)
    due_date: Optional[datetime] = None
    start_date: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    project: Optional[TrackerRef] = None
    parent: Optional[TrackerRef] = None
    subtasks: list[str] = Field(default_factory=list)
    blocked_by: list[str] = Field(default_factory=list)
    blocks: list[str] = Field(default_factory=list)
    estimate: Optional[TrackerEstimate] = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    url: Optional[str] = None
    synced_at: Optional[datetime] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ProjectMember(BaseModel):
    user: TrackerUser
    role: Optional[str] = None


class TrackerProject(BaseModel):
    id: str
    external_id: str
    provider: TrackerProvider
    name: str
    description: Optional[str] = None
    status: Optional[str] = None
    key: Optional[str] = None
    owner: Optional[TrackerUser] = None
    members: list[ProjectMember] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    url: Optional[str] = None
    statuses: Optional[list[TrackerStatus]] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class TrackerComment(BaseModel):
    id: str
    external_id: str
    body: str
    body_format: TextFormat = "markdown"
    author: TrackerUser
    created_at: datetime
    updated_at: datetime
    task_id: str


class RateLimitStatus(BaseModel):
    """Snapshot of an adapter's remaining request and complexity budget."""
    remaining: int
    limit: int
    reset_at: datetime
    complexity_remaining: Optional[int] = None


def provider_name(provider: Any) -> str:
    """Canonical lower-case key for a provider given as enum member or string."""
    return str(getattr(provider, "value", provider)).lower()
