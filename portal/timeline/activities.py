from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Sequence

from portal.domain.models import LEGACY_ID_PREFIX, Activity, SessionContext, new_local_id, utc_now
from portal.domain.states import ACTIVITY_AREA_SUBMIT_RESOLUTION, ActorType
from portal.timeline.actors import extract_user_id
from portal.timeline.attachments import AttachmentResolver

logger = logging.getLogger(__name__)

SIGNATURE_DESCRIPTION_CHARS = 200

# Ordered candidate keys per logical field, first present wins.
ID_KEYS = ("id", "activity_id", "activityId")
ACTOR_ID_KEYS = ("actorid", "actorId", "performed_by", "actor_id", "nodal_id", "nodal_user_id")
ACTOR_TYPE_KEYS = ("actortype", "actor_type", "actorType", "actor")
ACTIVITY_TYPE_KEYS = ("activitytype", "activity_type", "type", "type_name")
DESCRIPTION_KEYS = ("description", "desc", "note", "remarks", "text", "description_text", "resolution_text")
CREATED_KEYS = ("createdat", "created_at", "createdAt", "created", "timestamp", "time")
ATTACHMENT_KEYS = ("attachments", "files", "activity_attachments", "activityFiles", "attachments_map", "proofs")
ACTOR_NAME_KEYS = ("nodal_name", "nodal_user_name", "hq_name", "name", "username", "user", "author", "from")

ACTIVITY_LIST_KEYS = ("activities", "activity", "actions", "action_history", "history", "activity_history")
AREA_ACTION_LIST_KEYS = ("nodal_actions", "nodalActions", "nodal_notes", "nodalNotes")
LEGACY_ACTION_KEYS = ("action_taken", "actionTaken", "action")


def parse_time_to_ms(value: Any) -> int:
    if value is None or value == "" or isinstance(value, bool):
        return 0
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return int(dt.timestamp() * 1000)
    if isinstance(value, (int, float)):
        # Seconds and milliseconds both show up upstream.
        return int(value if value > 1e11 else value * 1000)
    text = str(value).strip()
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        try:
            return parse_time_to_ms(float(text))
        except ValueError:
            return 0
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def _first(raw: dict[str, Any], *key_groups: Sequence[str]) -> Any:
    for keys in key_groups:
        for key in keys:
            value = raw.get(key)
            if value is not None and value != "":
                return value
    return None


def _actor_type(value: Any, actor_id: Any) -> ActorType | None:
    text = str(value or "").strip().upper()
    if text in ("AREA", "NODAL", "AREA_NODAL"):
        return ActorType.AREA
    if text in ("HQ", "SAFETY"):
        return ActorType.HQ
    if text == "SYSTEM":
        return ActorType.SYSTEM
    if actor_id is not None:
        return ActorType.HQ if str(actor_id).upper().startswith("HQ") else ActorType.AREA
    return None


def _build(
    raw: dict[str, Any],
    resolver: AttachmentResolver,
    *,
    id_keys: Sequence[str] = (),
    actor_id_keys: Sequence[str] = (),
    actor_type_keys: Sequence[str] = (),
    type_keys: Sequence[str] = (),
    description_keys: Sequence[str] = (),
    created_keys: Sequence[str] = (),
    default_type: str | None = None,
    default_actor_type: ActorType | None = None,
) -> Activity:
    activity_id = _first(raw, id_keys, ID_KEYS)
    actor_id = _first(raw, actor_id_keys, ACTOR_ID_KEYS)
    created = _first(raw, created_keys, CREATED_KEYS)
    actor_type = _actor_type(_first(raw, actor_type_keys, ACTOR_TYPE_KEYS), actor_id) or default_actor_type
    kind = _first(raw, type_keys, ACTIVITY_TYPE_KEYS) or default_type or ""
    description = _first(raw, description_keys, DESCRIPTION_KEYS)
    actor_name = _first(raw, ACTOR_NAME_KEYS)
    return Activity(
        id=str(activity_id) if activity_id is not None else None,
        actor_id=str(actor_id) if actor_id is not None else None,
        actor_type=actor_type,
        activity_type=str(kind).upper(),
        description=str(description or ""),
        created_at=str(created) if created is not None else None,
        created_ts=parse_time_to_ms(created),
        attachments=resolver.resolve_all(_first(raw, ATTACHMENT_KEYS)),
        actor_name=str(actor_name) if isinstance(actor_name, (str, int)) else None,
        raw=raw,
    )


def adapt_hq_flat(raw: dict[str, Any], resolver: AttachmentResolver) -> Activity | None:
    """HQ detail endpoint: flat lowercase keys (activitytype, createdat, actorid)."""
    if "activitytype" not in raw:
        return None
    return _build(
        raw,
        resolver,
        actor_id_keys=("actorid",),
        actor_type_keys=("actortype",),
        type_keys=("activitytype",),
        created_keys=("createdat",),
    )


def adapt_snake_case(raw: dict[str, Any], resolver: AttachmentResolver) -> Activity | None:
    if "activity_type" not in raw:
        return None
    return _build(
        raw,
        resolver,
        actor_id_keys=("actor_id",),
        actor_type_keys=("actor_type",),
        type_keys=("activity_type",),
        created_keys=("created_at",),
    )


def adapt_nodal_action(raw: dict[str, Any], resolver: AttachmentResolver) -> Activity | None:
    """Area resolution records (nodal_user_id / resolution_text)."""
    if "nodal_user_id" not in raw and "resolution_text" not in raw:
        return None
    return _build(
        raw,
        resolver,
        actor_id_keys=("nodal_user_id", "nodal_id"),
        description_keys=("resolution_text", "remarks"),
        created_keys=("created_at",),
        default_type=ACTIVITY_AREA_SUBMIT_RESOLUTION,
        default_actor_type=ActorType.AREA,
    )


def adapt_legacy(raw: dict[str, Any], resolver: AttachmentResolver) -> Activity:
    return _build(raw, resolver)


ActivityAdapter = Callable[[dict[str, Any], AttachmentResolver], Activity | None]

ACTIVITY_ADAPTERS: tuple[ActivityAdapter, ...] = (
    adapt_hq_flat,
    adapt_snake_case,
    adapt_nodal_action,
    adapt_legacy,
)


def normalize_activity(raw: Any, resolver: AttachmentResolver) -> Activity | None:
    if isinstance(raw, Activity):
        return raw
    if not isinstance(raw, dict):
        logger.debug("Skipping non-object activity record: %r", raw)
        return None
    for adapter in ACTIVITY_ADAPTERS:
        activity = adapter(raw, resolver)
        if activity is not None:
            return activity
    return None


def activity_key(activity: Activity) -> str:
    if activity.id:
        return f"id:{activity.id}"
    desc = (activity.description or "").strip()[:SIGNATURE_DESCRIPTION_CHARS]
    return f"ts:{activity.created_ts}|type:{activity.activity_type}|desc:{desc}"


def sort_newest_first(activities: Iterable[Activity]) -> list[Activity]:
    return sorted(activities, key=lambda a: a.created_ts or 0, reverse=True)


def dedupe_activities(activities: Iterable[Activity]) -> list[Activity]:
    seen: set[str] = set()
    out: list[Activity] = []
    for activity in activities:
        key = activity_key(activity)
        if key in seen:
            continue
        seen.add(key)
        out.append(activity)
    return out


def normalize_activities(records: Any, resolver: AttachmentResolver) -> list[Activity]:
    if not isinstance(records, (list, tuple)):
        return []
    normalized = [a for a in (normalize_activity(r, resolver) for r in records) if a is not None]
    return dedupe_activities(sort_newest_first(normalized))


def is_duplicate_or_subset(narrow: Sequence[Activity], broad: Sequence[Activity]) -> bool:
    """True when every entry of ``broad`` already appears in ``narrow``."""
    narrow_keys = {activity_key(a) for a in narrow}
    broad_keys = {activity_key(a) for a in broad}
    return broad_keys <= narrow_keys


def synthesize_from_action_taken(action_taken: Any, resolver: AttachmentResolver) -> Activity | None:
    if not action_taken:
        return None
    if isinstance(action_taken, str):
        action_taken = {"text": action_taken}
    if not isinstance(action_taken, dict):
        return None
    activity = _build(
        action_taken,
        resolver,
        actor_id_keys=("nodal_id", "actorid"),
        type_keys=("activitytype", "type"),
        description_keys=("text", "remarks", "description"),
        created_keys=("created_at", "assignedat"),
        default_type=ACTIVITY_AREA_SUBMIT_RESOLUTION,
        default_actor_type=ActorType.AREA,
    )
    if activity.id is None:
        activity.local_id = new_local_id(LEGACY_ID_PREFIX)
    if activity.created_at is None:
        activity.created_at = utc_now()
        activity.created_ts = int(time.time() * 1000)
    return activity


def find_activity_records(raw: dict[str, Any]) -> list[Any]:
    for key in ACTIVITY_LIST_KEYS:
        value = raw.get(key)
        if isinstance(value, list):
            return value
    return []


def legacy_action_taken(raw: dict[str, Any]) -> Any:
    return _first(raw, LEGACY_ACTION_KEYS)


def timeline_from_raw(raw: dict[str, Any], resolver: AttachmentResolver) -> list[Activity]:
    activities = normalize_activities(find_activity_records(raw), resolver)
    if activities:
        return activities
    synthetic = synthesize_from_action_taken(legacy_action_taken(raw), resolver)
    return [synthetic] if synthetic else []


def _is_area_action(activity: Activity, assignee_id: str | None) -> bool:
    if activity.actor_type == ActorType.AREA:
        return True
    kind = activity.activity_type.upper()
    if "AREA" in kind or "RESOLUTION" in kind:
        return True
    return bool(assignee_id and activity.actor_id and activity.actor_id == assignee_id)


def extract_area_actions(raw: dict[str, Any], activities: Sequence[Activity], resolver: AttachmentResolver) -> list[Activity]:
    for key in AREA_ACTION_LIST_KEYS:
        direct = raw.get(key)
        if isinstance(direct, list) and direct:
            return normalize_activities(direct, resolver)

    assignee_id = extract_user_id(_first(raw, ("assignedto", "assigned_to", "assignedTo")))
    area = [a for a in activities if _is_area_action(a, assignee_id)]
    if area:
        return dedupe_activities(sort_newest_first(area))

    synthetic = synthesize_from_action_taken(legacy_action_taken(raw), resolver)
    return [synthetic] if synthetic else []


def synthesize_activity(
    activity_type: str,
    ctx: SessionContext,
    resolver: AttachmentResolver,
    *,
    note: str | None = None,
    attachments: Any = None,
) -> Activity:
    """Local stand-in for an event the server has accepted but not yet returned."""
    now = datetime.now(timezone.utc)
    return Activity(
        local_id=new_local_id(),
        actor_id=str(ctx.user_id),
        actor_type=ctx.actor_type,
        actor_name=ctx.user_name,
        activity_type=activity_type,
        description=(note or "").strip(),
        created_at=now.isoformat(),
        created_ts=int(now.timestamp() * 1000),
        attachments=resolver.resolve_all(attachments),
    )


def reconcile(
    server: Sequence[Activity],
    local: Sequence[Activity],
    *,
    skew_seconds: int,
    ttl_seconds: int,
    now_ms: int | None = None,
) -> list[Activity]:
    """Merge a fresh server history with the provisional entries still held locally.

    Server entries always win. A provisional entry is dropped once the server
    reports an activity of the same type and description, or when it has
    outlived the TTL without being confirmed.
    """
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    skew_ms = skew_seconds * 1000
    kept: list[Activity] = []
    for pending in (a for a in local if a.provisional):
        desc = pending.description.strip()[:SIGNATURE_DESCRIPTION_CHARS]
        confirmed = any(
            s.activity_type == pending.activity_type
            and s.description.strip()[:SIGNATURE_DESCRIPTION_CHARS] == desc
            and (s.created_ts == 0 or s.created_ts >= pending.created_ts - skew_ms)
            for s in server
        )
        if confirmed:
            continue
        if now_ms - pending.created_ts > ttl_seconds * 1000:
            logger.info("Dropping unconfirmed provisional %s activity %s", pending.activity_type, pending.local_id)
            continue
        kept.append(pending)
    return dedupe_activities(sort_newest_first([*kept, *server]))
