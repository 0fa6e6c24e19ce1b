from __future__ import annotations

from dataclasses import asdict
from typing import Any

from portal.domain.models import Activity, Attachment, Complaint
from portal.timeline.activities import is_duplicate_or_subset
from portal.timeline.actors import ActorResolver


def render_attachment(attachment: Attachment) -> dict[str, Any]:
    return asdict(attachment)


def render_activity(activity: Activity, actors: ActorResolver, area_id: str | None = None) -> dict[str, Any]:
    if activity.actor_name:
        actor = activity.actor_name
    elif activity.actor_id:
        actor = actors.label(activity.actor_id, area_id)
    else:
        actor = activity.actor_type.value if activity.actor_type else "Officer"
    return {
        "id": activity.id,
        "local_id": activity.local_id,
        "provisional": activity.provisional,
        "actor": actor,
        "actor_type": activity.actor_type.value if activity.actor_type else None,
        "activity_type": activity.activity_type,
        "description": activity.description,
        "created_at": activity.created_at,
        "attachments": [render_attachment(a) for a in activity.attachments],
    }


def render_complaint(complaint: Complaint, actors: ActorResolver) -> dict[str, Any]:
    area_actions = complaint.area_actions
    hide_other = is_duplicate_or_subset(area_actions, complaint.activities)
    action = complaint.action_taken
    return {
        "id": complaint.id,
        "title": complaint.title,
        "description": complaint.description,
        "workflow_status": complaint.workflow_status.value,
        "is_closed": complaint.is_closed,
        "is_assigned": complaint.is_assigned,
        "area_id": complaint.area_id,
        "assigned_to": actors.assignee_label(
            complaint.assigned_to,
            assign_all=complaint.assign_all,
            area_id=complaint.area_id,
        ),
        "assigned_by": actors.label(complaint.assigned_by, complaint.area_id),
        "pending_action": complaint.pending_action.value if complaint.pending_action else None,
        "attachments": [render_attachment(a) for a in complaint.attachments],
        "action_taken": (
            {
                "text": action.text,
                "activity_type": action.activity_type,
                "created_at": action.created_at,
                "attachments": [render_attachment(a) for a in action.attachments],
            }
            if action
            else None
        ),
        "area_actions": [render_activity(a, actors, complaint.area_id) for a in area_actions],
        "other_activities": [] if hide_other else [render_activity(a, actors, complaint.area_id) for a in complaint.activities],
        "hide_other_activities": hide_other,
    }
