from __future__ import annotations

from typing import Any

from portal.domain.models import utc_now

CORE_EVENTS = {
    "complaint.assigned",
    "complaint.resolution_submitted",
    "complaint.sent_back",
    "complaint.closed",
    "complaint.reopened",
    "action.started",
    "action.cancelled",
    "action.rejected",
    "mutation.failed",
    "timeline.reconciled",
}


def is_valid_event_type(event_type: str) -> bool:
    return event_type in CORE_EVENTS


EVENT_REQUIRED_KEYS: dict[str, set[str]] = {
    "complaint.assigned": {"from", "to", "assigned_to"},
    "complaint.resolution_submitted": {"from", "to", "attachments"},
    "complaint.sent_back": {"from", "to"},
    "complaint.closed": {"from", "to", "attachments"},
    "complaint.reopened": {"from", "to"},
    "action.started": {"action"},
    "action.cancelled": {"action"},
    "action.rejected": {"action", "reason", "message"},
    "mutation.failed": {"action", "error"},
    "timeline.reconciled": {"server", "provisional_kept"},
}


def validate_event_payload(event_type: str, payload: dict[str, Any]) -> None:
    if not is_valid_event_type(event_type):
        raise ValueError(f"Unsupported event type: {event_type}")

    required = EVENT_REQUIRED_KEYS.get(event_type)
    if not required:
        return

    missing = sorted(k for k in required if k not in payload)
    if missing:
        raise ValueError(f"Event payload missing required keys for {event_type}: {missing}")


def build_event_envelope(
    *,
    event_type: str,
    complaint_id: str,
    actor_type: str,
    actor_id: str | None,
    payload: dict[str, Any],
    reason: str | None = None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    validate_event_payload(event_type, payload)
    return {
        "event_type": event_type,
        "complaint_id": complaint_id,
        "actor_type": actor_type,
        "actor_id": actor_id,
        "payload": payload,
        "reason": reason,
        "correlation_id": correlation_id,
        "created_at": utc_now(),
    }
