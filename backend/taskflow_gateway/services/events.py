"""
Domain events emitted after successful mutations.

event_type_for() maps a gateway request (method + resource path) to the
event it produces, or None for reads and non-resource paths:

    POST   /tasks                     → task.created
    PUT    /tasks/{id}                → task.updated   (task.completed when
    PATCH  /tasks/{id}                                  the body sets status=completed)
    POST   /tasks/{id}/complete       → task.completed
    DELETE /tasks/{id}                → task.deleted
    POST   /tasks/{id}/comments       → comment.created
    PATCH  /comments/{id}             → comment.updated
    DELETE /comments/{id}             → comment.deleted
    POST   /files, /tasks/{id}/files  → file.uploaded
    DELETE /files/{id}                → file.deleted
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Any

from taskflow_gateway.core.database import utcnow

TASK_CREATED = "task.created"
TASK_UPDATED = "task.updated"
TASK_COMPLETED = "task.completed"
TASK_DELETED = "task.deleted"
COMMENT_CREATED = "comment.created"
COMMENT_UPDATED = "comment.updated"
COMMENT_DELETED = "comment.deleted"
FILE_UPLOADED = "file.uploaded"
FILE_DELETED = "file.deleted"

EVENT_TYPES = frozenset({
    TASK_CREATED,
    TASK_UPDATED,
    TASK_COMPLETED,
    TASK_DELETED,
    COMMENT_CREATED,
    COMMENT_UPDATED,
    COMMENT_DELETED,
    FILE_UPLOADED,
    FILE_DELETED,
})

MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

# collection segment → event name prefix
_COLLECTIONS = {"tasks": "task", "comments": "comment", "files": "file"}


@dataclass(frozen=True, slots=True)
class DomainEvent:
    type: str
    data: Any
    actor_user_id: str | None = None
    occurred_at: datetime.datetime = field(default_factory=utcnow)

    def to_payload(self) -> dict[str, Any]:
        """Webhook body: {event, timestamp, data}."""
        return {
            "event": self.type,
            "timestamp": self.occurred_at.isoformat(),
            "data": self.data,
        }


def _completes_task(body: Any) -> bool:
    return isinstance(body, dict) and (
        body.get("status") == "completed" or body.get("completed") is True
    )


def event_type_for(method: str, path: str, request_body: Any = None) -> str | None:
    event_type = _match(method.upper(), path, request_body)
    return event_type if event_type in EVENT_TYPES else None


def _match(method: str, path: str, request_body: Any) -> str | None:
    if method not in MUTATING_METHODS:
        return None

    segments = [s for s in path.split("/") if s]
    # The innermost collection in the path names the resource.
    index = None
    for i, segment in enumerate(segments):
        if segment in _COLLECTIONS:
            index = i
    if index is None:
        return None

    resource = _COLLECTIONS[segments[index]]
    rest = segments[index + 1:]

    if not rest:
        if method != "POST":
            return None
        return FILE_UPLOADED if resource == "file" else f"{resource}.created"

    if len(rest) == 1:
        if method == "DELETE":
            return f"{resource}.deleted"
        if method in ("PUT", "PATCH"):
            if resource == "task" and _completes_task(request_body):
                return TASK_COMPLETED
            return f"{resource}.updated"
        return None

    if len(rest) == 2 and resource == "task" and rest[1] == "complete" and method == "POST":
        return TASK_COMPLETED

    return None
