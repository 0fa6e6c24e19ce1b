from __future__ import annotations

from enum import Enum


class WorkflowStatus(str, Enum):
    NEW = "NEW"
    ASSIGNED_TO_AREA = "ASSIGNED_TO_AREA"
    HQ_REVIEW = "HQ_REVIEW"
    BACK_TO_AREA = "BACK_TO_AREA"
    CLOSED = "CLOSED"
    OPEN = "OPEN"


class ActionTag(str, Enum):
    ASSIGN = "ASSIGN"
    NOTIFY = "NOTIFY"
    REASSIGN = "REASSIGN"
    CLOSE = "CLOSE"
    REOPEN = "REOPEN"


class ActorType(str, Enum):
    AREA = "AREA"
    HQ = "HQ"
    SYSTEM = "SYSTEM"


class Role(str, Enum):
    NODAL = "nodal"
    SAFETY = "safety"
    SUPERADMIN = "superadmin"

    @property
    def actor_type(self) -> ActorType:
        return ActorType.AREA if self == Role.NODAL else ActorType.HQ


ACTIVITY_ASSIGN = "ASSIGN"
ACTIVITY_BACK_TO_AREA = "BACK_TO_AREA"
ACTIVITY_AREA_SUBMIT_RESOLUTION = "AREA_SUBMIT_RESOLUTION"
ACTIVITY_HQ_CLOSE_ACTION = "HQ_CLOSE_ACTION"
ACTIVITY_REOPEN = "REOPEN"

ACTION_ACTIVITY_TYPES: dict[ActionTag, str] = {
    ActionTag.ASSIGN: ACTIVITY_ASSIGN,
    ActionTag.NOTIFY: ACTIVITY_AREA_SUBMIT_RESOLUTION,
    ActionTag.REASSIGN: ACTIVITY_BACK_TO_AREA,
    ActionTag.CLOSE: ACTIVITY_HQ_CLOSE_ACTION,
    ActionTag.REOPEN: ACTIVITY_REOPEN,
}

# Upstream sometimes records a close under the bare decision name.
CLOSING_ACTIVITY_TYPES = {ACTIVITY_HQ_CLOSE_ACTION, "CLOSE", "HQ_CLOSE"}

# Activities after which the area owes HQ a (new) resolution.
HANDOFF_ACTIVITY_TYPES = {ACTIVITY_ASSIGN, ACTIVITY_BACK_TO_AREA, ACTIVITY_REOPEN}

UNASSIGNED_STATES = {WorkflowStatus.NEW, WorkflowStatus.OPEN}
AREA_WORK_STATES = {WorkflowStatus.ASSIGNED_TO_AREA, WorkflowStatus.BACK_TO_AREA}


ALLOWED_TRANSITIONS: dict[WorkflowStatus, set[WorkflowStatus]] = {
    WorkflowStatus.NEW: {WorkflowStatus.ASSIGNED_TO_AREA, WorkflowStatus.CLOSED},
    WorkflowStatus.OPEN: {WorkflowStatus.ASSIGNED_TO_AREA, WorkflowStatus.CLOSED},
    WorkflowStatus.ASSIGNED_TO_AREA: {WorkflowStatus.HQ_REVIEW, WorkflowStatus.CLOSED},
    WorkflowStatus.HQ_REVIEW: {
        WorkflowStatus.BACK_TO_AREA,
        WorkflowStatus.ASSIGNED_TO_AREA,
        WorkflowStatus.CLOSED,
    },
    WorkflowStatus.BACK_TO_AREA: {
        WorkflowStatus.HQ_REVIEW,
        WorkflowStatus.ASSIGNED_TO_AREA,
        WorkflowStatus.CLOSED,
    },
    WorkflowStatus.CLOSED: {WorkflowStatus.OPEN},
}


def parse_status(value: object, *, is_closed: bool = False) -> WorkflowStatus:
    """Map an upstream status string onto the workflow enum.

    Unknown or missing values fall back to NEW. A record flagged closed is
    always CLOSED so the two fields never disagree locally.
    """
    if is_closed:
        return WorkflowStatus.CLOSED
    text = str(value or "").strip().upper().replace(" ", "_")
    try:
        return WorkflowStatus(text)
    except ValueError:
        return WorkflowStatus.NEW
