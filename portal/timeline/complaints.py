from __future__ import annotations

from typing import Any

from portal.domain.models import Complaint
from portal.domain.states import parse_status
from portal.timeline.activities import extract_area_actions, legacy_action_taken, timeline_from_raw
from portal.timeline.attachments import AttachmentResolver, find_top_level_attachments

STATUS_KEYS = ("workflowstatus", "workflow_status", "flowStatus", "status")
ASSIGNED_TO_KEYS = ("assignedto", "assignedTo", "assigned_to", "assignedToName", "assigned_to_user")
ASSIGNED_BY_KEYS = ("assignedby", "assignedBy", "assigned_by")
AREA_KEYS = ("area_id", "areaId", "unit_id")


def _pick(raw: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None and value != "":
            return value
    return None


def unwrap_detail(payload: Any) -> dict[str, Any] | None:
    """Detail endpoints answer either with the object or with {"data": {...}}."""
    if not isinstance(payload, dict):
        return None
    data = payload.get("data")
    if isinstance(data, dict) and data.get("id") is not None:
        return data
    if payload.get("id") is not None:
        return payload
    return None


def complaint_from_raw(raw: dict[str, Any], resolver: AttachmentResolver) -> Complaint:
    is_closed = bool(raw.get("isclosed") or raw.get("is_closed") or raw.get("isClosed"))
    status = parse_status(_pick(raw, STATUS_KEYS), is_closed=is_closed)
    activities = timeline_from_raw(raw, resolver)
    area_id = _pick(raw, AREA_KEYS)
    legacy = legacy_action_taken(raw)
    description = raw.get("description")
    return Complaint(
        id=str(raw.get("id")),
        workflow_status=status,
        assigned_to=_pick(raw, ASSIGNED_TO_KEYS),
        assigned_by=_pick(raw, ASSIGNED_BY_KEYS),
        assign_all=bool(raw.get("assign_all")),
        area_id=str(area_id) if area_id is not None else None,
        activities=activities,
        area_actions=extract_area_actions(raw, activities, resolver),
        attachments=resolver.resolve_all(find_top_level_attachments(raw)),
        legacy_action_taken=legacy if isinstance(legacy, dict) else ({"text": legacy} if legacy else None),
        title=raw.get("title") or (f"Complaint #{raw.get('id')}"),
        description=str(description) if description else None,
        raw=raw,
    )
