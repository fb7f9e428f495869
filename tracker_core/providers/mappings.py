"""
Tracker Core Provider Mappings: Declarative Task Field Tables.

Rule tables that drive FieldMapper for each supported tracker, plus the
status and priority vocabularies used to normalize them.
"""
from __future__ import annotations
from datetime import datetime, timezone
from typing import Any

from tracker_core.integrations.errors import ConfigurationError
from tracker_core.integrations.field_mapper import (
    FieldMapper,
    FieldMappingConfig as F,
    PriorityMapping,
    StatusMapping,
    TransformContext,
)
from tracker_core.integrations.types import StatusCategory, provider_name


# ---------------------------------------------------------------------------
# Shared vocabularies
# ---------------------------------------------------------------------------

DEFAULT_STATUS_MAPPINGS = [
    StatusMapping("Backlog", StatusCategory.BACKLOG),
    StatusMapping("Triage", StatusCategory.BACKLOG),
    StatusMapping("Icebox", StatusCategory.BACKLOG),
    StatusMapping("Todo", StatusCategory.TODO),
    StatusMapping("To Do", StatusCategory.TODO),
    StatusMapping("Open", StatusCategory.TODO),
    StatusMapping("New", StatusCategory.TODO),
    StatusMapping("In Progress", StatusCategory.IN_PROGRESS),
    StatusMapping("Doing", StatusCategory.IN_PROGRESS),
    StatusMapping("Started", StatusCategory.IN_PROGRESS),
    StatusMapping("Review", StatusCategory.REVIEW),
    StatusMapping("In Review", StatusCategory.REVIEW),
    StatusMapping("Code Review", StatusCategory.REVIEW),
    StatusMapping("Done", StatusCategory.DONE),
    StatusMapping("Complete", StatusCategory.DONE),
    StatusMapping("Completed", StatusCategory.DONE),
    StatusMapping("Closed", StatusCategory.DONE),
    StatusMapping("Cancelled", StatusCategory.CANCELLED),
    StatusMapping("Canceled", StatusCategory.CANCELLED),
    StatusMapping("Won't Do", StatusCategory.CANCELLED),
]

DEFAULT_PRIORITY_MAPPINGS = [
    PriorityMapping("none", 0, "None"),
    PriorityMapping("no priority", 0, "None"),
    PriorityMapping("low", 1, "Low"),
    PriorityMapping("medium", 2, "Medium"),
    PriorityMapping("normal", 2, "Medium"),
    PriorityMapping("high", 3, "High"),
    PriorityMapping("urgent", 4, "Urgent"),
    PriorityMapping("critical", 4, "Urgent"),
]

# Linear: 0 = no priority, 1 = urgent ... 4 = low.
LINEAR_PRIORITY_MAPPINGS = [
    PriorityMapping(0, 0, "None"),
    PriorityMapping(1, 4, "Urgent"),
    PriorityMapping(2, 3, "High"),
    PriorityMapping(3, 2, "Medium"),
    PriorityMapping(4, 1, "Low"),
]


def trello_created_at(value: Any, context: TransformContext) -> datetime | None:
    """Trello object ids embed the creation time in their first 8 hex digits."""
    try:
        return datetime.fromtimestamp(int(str(value)[:8], 16), tz=timezone.utc)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Task tables
# ---------------------------------------------------------------------------

LINEAR_TASK_MAPPINGS = [
    F("id", "id", required=True),
    F("id", "external_id", direction="inbound"),
    F("title", "title", required=True),
    F("description", "description"),
    F("state", "status", "status", default_value="Todo", direction="inbound"),
    F("priority", "priority", "priority"),
    F("assignee", "assignees[0]", "user", direction="inbound"),
    F("labels.nodes", "labels", "labels", direction="inbound"),
    F("dueDate", "due_date", "date"),
    F("startedAt", "start_date", "date", direction="inbound"),
    F("completedAt", "completed_at", "date", direction="inbound"),
    F("createdAt", "created_at", "date", required=True, direction="inbound"),
    F("updatedAt", "updated_at", "date", required=True, direction="inbound"),
    F("project.id", "project.id", direction="inbound"),
    F("project.id", "project.external_id", direction="inbound"),
    F("project.name", "project.name", direction="inbound"),
    F("parent.id", "parent.id", direction="inbound"),
    F("parent.id", "parent.external_id", direction="inbound"),
    F("identifier", "metadata.identifier", direction="inbound"),
    F("url", "url", direction="inbound"),
]

ASANA_TASK_MAPPINGS = [
    F("gid", "id", required=True),
    F("gid", "external_id", direction="inbound"),
    F("name", "title", required=True),
    F("notes", "description"),
    F("memberships[0].section", "status", "status", default_value="Todo", direction="inbound"),
    F("assignee", "assignees[0]", "user", direction="inbound"),
    F("tags", "labels", "labels", direction="inbound"),
    F("due_on", "due_date", "date"),
    F("start_on", "start_date", "date"),
    F("completed_at", "completed_at", "date", direction="inbound"),
    F("created_at", "created_at", "date", required=True, direction="inbound"),
    F("modified_at", "updated_at", "date", required=True, direction="inbound"),
    F("projects[0].gid", "project.id", direction="inbound"),
    F("projects[0].gid", "project.external_id", direction="inbound"),
    F("projects[0].name", "project.name", direction="inbound"),
    F("parent.gid", "parent.id", direction="inbound"),
    F("parent.gid", "parent.external_id", direction="inbound"),
    F("permalink_url", "url", direction="inbound"),
]

TRELLO_TASK_MAPPINGS = [
    F("id", "id", required=True),
    F("id", "external_id", direction="inbound"),
    F("name", "title", required=True),
    F("desc", "description"),
    F("list", "status", "status", default_value="Todo", direction="inbound"),
    F("idMembers", "assignees", "users"),
    F("labels", "labels", "labels", direction="inbound"),
    F("due", "due_date", "date"),
    F("start", "start_date", "date"),
    F("id", "created_at", "custom", custom_transform="trello_created_at", direction="inbound"),
    F("dateLastActivity", "updated_at", "date", required=True, direction="inbound"),
    F("idBoard", "project.id", direction="inbound"),
    F("idBoard", "project.external_id", direction="inbound"),
    F("shortUrl", "url", direction="inbound"),
]

TASK_MAPPINGS: dict[str, list[F]] = {
    "linear": LINEAR_TASK_MAPPINGS,
    "asana": ASANA_TASK_MAPPINGS,
    "trello": TRELLO_TASK_MAPPINGS,
}

PRIORITY_MAPPINGS: dict[str, list[PriorityMapping]] = {
    "linear": LINEAR_PRIORITY_MAPPINGS,
}


def get_task_mappings(provider: Any) -> list[F]:
    key = provider_name(provider)
    if key not in TASK_MAPPINGS:
        raise ConfigurationError(f"No task mappings for provider: {key}", key)
    return TASK_MAPPINGS[key]


def build_field_mapper(provider: Any) -> FieldMapper:
    """FieldMapper preloaded with the shared vocabularies and the provider's overrides."""
    key = provider_name(provider)
    mapper = FieldMapper(
        status_mappings=DEFAULT_STATUS_MAPPINGS,
        priority_mappings=DEFAULT_PRIORITY_MAPPINGS,
    )
    mapper.add_priority_mappings(PRIORITY_MAPPINGS.get(key, []))
    if key == "trello":
        mapper.add_transform("trello_created_at", trello_created_at)
    mapper.validate_mappings(get_task_mappings(key))
    return mapper
