from portal.timeline.activities import (
    activity_key,
    dedupe_activities,
    is_duplicate_or_subset,
    normalize_activities,
    reconcile,
)
from portal.timeline.actors import ActorDirectory, ActorResolver, extract_user_id
from portal.timeline.attachments import AttachmentResolver, collect_uploads, normalize_attachment_value

__all__ = [
    "ActorDirectory",
    "ActorResolver",
    "AttachmentResolver",
    "activity_key",
    "collect_uploads",
    "dedupe_activities",
    "extract_user_id",
    "is_duplicate_or_subset",
    "normalize_activities",
    "normalize_attachment_value",
    "reconcile",
]
