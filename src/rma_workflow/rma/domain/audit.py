"""
Audit / Comment Log
===================

Append-only log embedded in each case.

Every transition writes a system entry with the old and new stage/priority
in its metadata; the tracking history is rebuilt from those entries. Entries
are never edited or removed, and identical comments are stored twice.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from typing import List, Optional
from uuid import uuid4

from rma_workflow.config import (
    CommentCategory, Priority, Stage, INTERNAL_CATEGORIES, SYSTEM_AUTHOR
)
from rma_workflow.core import ValidationException
from rma_workflow.rma.domain.entities import Case, Comment


# metadata["event"] values written by system entries
EVENT_OPENED = "opened"
EVENT_TRANSITION = "transition"
EVENT_ESCALATION = "escalation"
EVENT_ASSIGNMENT = "assignment"


@dataclass(frozen=True)
class HistoryEntry:
    """One row of the reconstructed tracking history."""
    timestamp: datetime
    event: str
    actor: str
    from_stage: Optional[str]
    to_stage: Optional[str]
    from_priority: Optional[str]
    to_priority: Optional[str]
    assigned_to: Optional[str]
    description: str


def default_visibility(category: CommentCategory) -> bool:
    """Technical and status notes are internal unless stated otherwise."""
    return category in INTERNAL_CATEGORIES


def new_comment(
    author: str,
    body: str,
    category: CommentCategory,
    timestamp: datetime,
    is_internal: Optional[bool] = None,
    metadata: Optional[dict] = None
) -> Comment:
    """Build a log entry, validating the required fields."""
    if not author or not author.strip():
        raise ValidationException("Comment author is required", field="author")
    if not body or not body.strip():
        raise ValidationException("Comment body is required", field="body")

    return Comment(
        id=str(uuid4()),
        author=author.strip(),
        body=body.strip(),
        category=category,
        is_internal=default_visibility(category) if is_internal is None else is_internal,
        timestamp=timestamp,
        metadata=dict(metadata or {}),
    )


def system_entry(
    event: str,
    timestamp: datetime,
    summary: str,
    actor: str = SYSTEM_AUTHOR,
    from_stage: Optional[Stage] = None,
    to_stage: Optional[Stage] = None,
    from_priority: Optional[Priority] = None,
    to_priority: Optional[Priority] = None,
    assigned_to: Optional[str] = None,
    note: Optional[str] = None
) -> Comment:
    """
    Audit entry for a state change.

    The body is a readable summary; metadata keeps the structured values
    used by ``tracking_history``.
    """
    body = summary
    if note and note.strip():
        body = f"{summary}. Notes: {note.strip()}"

    return new_comment(
        author=SYSTEM_AUTHOR,
        body=body,
        category=CommentCategory.STATUS,
        timestamp=timestamp,
        is_internal=True,
        metadata={
            "system": True,
            "event": event,
            "actor": actor or SYSTEM_AUTHOR,
            "from_stage": from_stage.value if from_stage else None,
            "to_stage": to_stage.value if to_stage else None,
            "from_priority": from_priority.value if from_priority else None,
            "to_priority": to_priority.value if to_priority else None,
            "assigned_to": assigned_to,
        },
    )


def describe_change(old: Optional[str], new: Optional[str]) -> str:
    """'A → B', or just the value when unchanged."""
    if old == new or old is None:
        return f"{new}"
    return f"{old} → {new}"


def append(case: Case, *entries: Comment) -> Case:
    """Return a copy of the case with entries added to the end of the log."""
    return replace(case, comments=case.comments + tuple(entries))


def visible_comments(case: Case, include_internal: bool = False) -> List[Comment]:
    """Comments for display, newest first."""
    comments = [
        c for c in case.comments
        if include_internal or not c.is_internal
    ]
    return sorted(comments, key=lambda c: c.timestamp, reverse=True)


def tracking_history(case: Case) -> List[HistoryEntry]:
    """Rebuild the status history from the system entries, oldest first."""
    history = []
    for comment in case.comments:
        meta = comment.metadata or {}
        if not meta.get("system"):
            continue
        history.append(HistoryEntry(
            timestamp=comment.timestamp,
            event=meta.get("event", EVENT_TRANSITION),
            actor=meta.get("actor", comment.author),
            from_stage=meta.get("from_stage"),
            to_stage=meta.get("to_stage"),
            from_priority=meta.get("from_priority"),
            to_priority=meta.get("to_priority"),
            assigned_to=meta.get("assigned_to"),
            description=comment.body,
        ))
    return history
