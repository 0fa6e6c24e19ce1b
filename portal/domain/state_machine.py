from __future__ import annotations

from portal.config import Settings, settings as default_settings
from portal.domain.models import Complaint, SessionContext
from portal.domain.states import (
    ACTIVITY_AREA_SUBMIT_RESOLUTION,
    ALLOWED_TRANSITIONS,
    AREA_WORK_STATES,
    HANDOFF_ACTIVITY_TYPES,
    ActionTag,
    Role,
    WorkflowStatus,
)
from portal.timeline.actors import extract_user_id


class InvalidTransitionError(ValueError):
    pass


class GuardViolation(ValueError):
    """An action was refused locally, before any network call."""

    def __init__(self, action: ActionTag, reason: str, message: str) -> None:
        super().__init__(message)
        self.action = action
        self.reason = reason
        self.message = message


def has_resolution_since_handoff(complaint: Complaint) -> bool:
    for activity in complaint.activities:
        kind = str(activity.activity_type or "").upper()
        if kind == ACTIVITY_AREA_SUBMIT_RESOLUTION:
            return True
        if kind in HANDOFF_ACTIVITY_TYPES:
            return False
    return bool(complaint.legacy_action_taken) and complaint.workflow_status != WorkflowStatus.BACK_TO_AREA


def is_assigned_to_actor(complaint: Complaint, ctx: SessionContext) -> bool:
    if complaint.assign_all:
        return ctx.area_id is not None and str(complaint.area_id) == str(ctx.area_id)
    assignee = extract_user_id(complaint.assigned_to)
    return assignee is not None and assignee == str(ctx.user_id)


class StateMachine:
    def __init__(self, cfg: Settings | None = None) -> None:
        self.cfg = cfg or default_settings

    def transition(self, current: WorkflowStatus, target: WorkflowStatus) -> WorkflowStatus:
        allowed = ALLOWED_TRANSITIONS.get(current, set())
        if target not in allowed:
            raise InvalidTransitionError(f"Invalid transition {current.value} -> {target.value}")
        return target

    def target_for(self, action: ActionTag, *, with_assignment: bool = False) -> WorkflowStatus:
        if action == ActionTag.ASSIGN:
            return WorkflowStatus.ASSIGNED_TO_AREA
        if action == ActionTag.NOTIFY:
            return WorkflowStatus.HQ_REVIEW
        if action == ActionTag.REASSIGN:
            return WorkflowStatus.ASSIGNED_TO_AREA if with_assignment else WorkflowStatus.BACK_TO_AREA
        if action == ActionTag.CLOSE:
            return WorkflowStatus.CLOSED
        return WorkflowStatus.OPEN

    def check_lock(self, complaint: Complaint, action: ActionTag, *, in_flight: bool) -> None:
        held = complaint.pending_action
        if held is None:
            return
        if in_flight:
            raise GuardViolation(action, "in_flight", f"{held.value.title()} is already in progress for complaint {complaint.id}")
        if held == action:
            return
        # A successful close keeps its lock; only reopen may pass it.
        if held == ActionTag.CLOSE and complaint.is_closed and action == ActionTag.REOPEN:
            return
        if held == ActionTag.CLOSE and complaint.is_closed:
            raise GuardViolation(action, "closed", f"Complaint {complaint.id} is closed")
        raise GuardViolation(action, "pending", f"Another action ({held.value}) is pending for complaint {complaint.id}")

    def guard(
        self,
        action: ActionTag,
        complaint: Complaint,
        ctx: SessionContext,
        *,
        note: str | None = None,
        assignee: str | None = None,
        assign_all: bool = False,
    ) -> WorkflowStatus:
        if action == ActionTag.ASSIGN:
            self._guard_assign(complaint, ctx, assignee, assign_all)
        elif action == ActionTag.NOTIFY:
            self._guard_notify(complaint, ctx, note)
        elif action == ActionTag.REASSIGN:
            self._guard_reassign(complaint, ctx)
        elif action == ActionTag.CLOSE:
            self._guard_close(complaint, ctx, note)
        elif action == ActionTag.REOPEN:
            self._guard_reopen(complaint, ctx)
        else:
            raise GuardViolation(action, "unsupported", f"Unsupported action {action}")

        with_assignment = action == ActionTag.REASSIGN and (bool(assignee) or assign_all)
        target = self.target_for(action, with_assignment=with_assignment)
        try:
            return self.transition(complaint.workflow_status, target)
        except InvalidTransitionError as exc:
            raise GuardViolation(action, "transition", str(exc)) from exc

    def _require_hq(self, action: ActionTag, ctx: SessionContext) -> None:
        if ctx.role == Role.NODAL:
            raise GuardViolation(action, "role", f"{action.value.title()} is not available to area officers")

    def _guard_assign(self, complaint: Complaint, ctx: SessionContext, assignee: str | None, assign_all: bool) -> None:
        self._require_hq(ActionTag.ASSIGN, ctx)
        if complaint.is_closed:
            raise GuardViolation(ActionTag.ASSIGN, "closed", f"Complaint {complaint.id} is closed; reopen it first")
        if complaint.is_assigned:
            raise GuardViolation(ActionTag.ASSIGN, "assigned", f"Complaint {complaint.id} is already assigned")
        if not assignee and not assign_all:
            raise GuardViolation(ActionTag.ASSIGN, "assignee", "Select an area officer or choose assign to all")

    def _guard_notify(self, complaint: Complaint, ctx: SessionContext, note: str | None) -> None:
        if ctx.role != Role.NODAL:
            raise GuardViolation(ActionTag.NOTIFY, "role", "Only area officers can notify safety")
        if complaint.workflow_status not in AREA_WORK_STATES or not is_assigned_to_actor(complaint, ctx):
            raise GuardViolation(ActionTag.NOTIFY, "not_assigned", f"Complaint {complaint.id} is not assigned to you")
        if has_resolution_since_handoff(complaint):
            raise GuardViolation(ActionTag.NOTIFY, "already_notified", f"A resolution is already recorded for complaint {complaint.id}")
        if len((note or "").strip()) < self.cfg.min_resolution_chars:
            raise GuardViolation(
                ActionTag.NOTIFY,
                "note",
                f"Please provide remarks ({self.cfg.min_resolution_chars}+ characters)",
            )

    def _guard_reassign(self, complaint: Complaint, ctx: SessionContext) -> None:
        self._require_hq(ActionTag.REASSIGN, ctx)
        if complaint.is_closed or complaint.workflow_status != WorkflowStatus.HQ_REVIEW:
            raise GuardViolation(
                ActionTag.REASSIGN,
                "not_in_review",
                f"Complaint {complaint.id} can only be sent back after the area submits a resolution",
            )

    def _guard_close(self, complaint: Complaint, ctx: SessionContext, note: str | None) -> None:
        self._require_hq(ActionTag.CLOSE, ctx)
        if complaint.is_closed:
            raise GuardViolation(ActionTag.CLOSE, "closed", f"Complaint {complaint.id} is already closed")
        text = (note or "").strip()
        if not text:
            raise GuardViolation(ActionTag.CLOSE, "note", "Describe the action taken before closing")
        words = len(text.split())
        if words > self.cfg.max_action_words:
            raise GuardViolation(
                ActionTag.CLOSE,
                "note",
                f"Action exceeds word limit ({words}/{self.cfg.max_action_words})",
            )

    def _guard_reopen(self, complaint: Complaint, ctx: SessionContext) -> None:
        self._require_hq(ActionTag.REOPEN, ctx)
        if not complaint.is_closed:
            raise GuardViolation(ActionTag.REOPEN, "not_closed", f"Complaint {complaint.id} is not closed")
