from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

from portal.domain.states import (
    ACTIVITY_REOPEN,
    CLOSING_ACTIVITY_TYPES,
    UNASSIGNED_STATES,
    ActionTag,
    ActorType,
    Role,
    WorkflowStatus,
)


LOCAL_ID_PREFIX = "local-"
# Rebuilt from a legacy action_taken field; server data, never optimistic.
LEGACY_ID_PREFIX = "legacy-"

AttachmentSource = Literal["path", "url", "pendingUpload"]


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_local_id(prefix: str = LOCAL_ID_PREFIX) -> str:
    return f"{prefix}{uuid4().hex}"


@dataclass(frozen=True)
class Attachment:
    label: str
    resolved_url: str | None
    source_kind: AttachmentSource


@dataclass(eq=False)
class PendingUpload:
    """A file picked by the user that the backend has not stored yet."""

    filename: str
    content: bytes
    content_type: str = "application/octet-stream"
    token: str = field(default_factory=lambda: uuid4().hex)

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def dedup_key(self) -> str:
        return f"{self.filename}_{self.size}"


@dataclass
class Activity:
    activity_type: str
    actor_type: ActorType | None = None
    actor_id: str | None = None
    description: str = ""
    created_at: str | None = None
    created_ts: int = 0
    attachments: list[Attachment] = field(default_factory=list)
    id: str | None = None
    local_id: str | None = None
    actor_name: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def provisional(self) -> bool:
        return self.id is None and bool(self.local_id and self.local_id.startswith(LOCAL_ID_PREFIX))


@dataclass(frozen=True)
class ActionTaken:
    text: str
    attachments: list[Attachment]
    activity_type: str
    created_at: str | None = None


@dataclass
class Complaint:
    id: str
    workflow_status: WorkflowStatus = WorkflowStatus.NEW
    assigned_to: Any = None
    assigned_by: Any = None
    assign_all: bool = False
    area_id: str | None = None
    activities: list[Activity] = field(default_factory=list)
    area_actions: list[Activity] = field(default_factory=list)
    attachments: list[Attachment] = field(default_factory=list)
    legacy_action_taken: dict[str, Any] | None = None
    pending_action: ActionTag | None = None
    title: str | None = None
    description: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_closed(self) -> bool:
        return self.workflow_status == WorkflowStatus.CLOSED

    @property
    def is_assigned(self) -> bool:
        if self.is_closed:
            return True
        if self.assigned_to not in (None, "") or self.assign_all:
            return True
        return self.workflow_status not in UNASSIGNED_STATES

    @property
    def action_taken(self) -> ActionTaken | None:
        # Newest first: a reopen after the last close voids the summary.
        for activity in self.activities:
            kind = str(activity.activity_type or "").upper()
            if kind == ACTIVITY_REOPEN:
                return None
            if kind in CLOSING_ACTIVITY_TYPES:
                return ActionTaken(
                    text=activity.description,
                    attachments=list(activity.attachments),
                    activity_type=kind,
                    created_at=activity.created_at,
                )
        return None


@dataclass(frozen=True)
class ActorDirectoryEntry:
    id: str
    display_name: str
    area_id: str | None = None


@dataclass(frozen=True)
class SessionContext:
    user_id: str
    role: Role
    user_name: str | None = None
    area_id: str | None = None
    token: str | None = None

    @property
    def actor_type(self) -> ActorType:
        return self.role.actor_type

    @property
    def session_key(self) -> str:
        return self.token or f"{self.role.value}:{self.user_id}"
