"""Mapping from gateway requests to domain event types."""
from __future__ import annotations

import datetime

import pytest

from taskflow_gateway.services.events import DomainEvent, event_type_for


@pytest.mark.parametrize(
    ("method", "path", "body", "expected"),
    [
        ("POST", "/tasks", None, "task.created"),
        ("PATCH", "/tasks/42", {"title": "x"}, "task.updated"),
        ("PUT", "/tasks/42", {"status": "completed"}, "task.completed"),
        ("POST", "/tasks/42/complete", None, "task.completed"),
        ("DELETE", "/tasks/42", None, "task.deleted"),
        ("POST", "/tasks/42/comments", None, "comment.created"),
        ("PATCH", "/comments/7", None, "comment.updated"),
        ("DELETE", "/comments/7", None, "comment.deleted"),
        ("POST", "/files", None, "file.uploaded"),
        ("POST", "/tasks/42/files", None, "file.uploaded"),
        ("DELETE", "/files/9", None, "file.deleted"),
    ],
)
def test_mutations_map_to_events(method, path, body, expected):
    assert event_type_for(method, path, body) == expected


@pytest.mark.parametrize(
    ("method", "path"),
    [
        ("GET", "/tasks"),
        ("GET", "/tasks/42"),
        ("POST", "/users"),
        ("PATCH", "/users/3"),
        ("PUT", "/files/9"),
        ("DELETE", "/tasks"),
        ("POST", "/tasks/42/archive"),
        ("POST", "/health"),
    ],
)
def test_reads_and_untracked_paths_emit_nothing(method, path):
    assert event_type_for(method, path) is None


def test_method_is_case_insensitive():
    assert event_type_for("post", "/tasks/") == "task.created"


def test_payload_shape():
    at = datetime.datetime(2026, 10, 19, 12, 0, tzinfo=datetime.timezone.utc)
    event = DomainEvent(type="task.created", data={"id": 1}, actor_user_id="alice", occurred_at=at)

    assert event.to_payload() == {
        "event": "task.created",
        "timestamp": "2026-10-19T12:00:00+00:00",
        "data": {"id": 1},
    }
