from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterable
from urllib.parse import quote
from uuid import uuid4

from portal.config import Settings, settings as default_settings
from portal.domain.models import Attachment, PendingUpload

logger = logging.getLogger(__name__)

_LOCATION_KEYS = ("path", "path_name", "file", "url", "original_name", "originalname")
_LABEL_KEYS = ("original_name", "originalname", "filename", "name")

# Complaint-level attachments, most specific first.
TOP_LEVEL_ATTACHMENT_KEYS = ("attachments", "files", "docs", "photos", "attachments_map", "files_map", "attachment_path")
_ATTACHMENT_KEY_PATTERN = re.compile(r"attach|file|photo|doc|path", re.IGNORECASE)


def normalize_attachment_value(value: Any) -> list[Any]:
    """Flatten any upstream attachment representation into a list."""
    if value is None or value == "" or value == {}:
        return []
    if isinstance(value, PendingUpload):
        return [value]
    if isinstance(value, (list, tuple)):
        return [v for v in value if v not in (None, "")]
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            parsed = None
        if isinstance(parsed, list):
            return [v for v in parsed if v not in (None, "")]
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, dict):
        return [v for v in value.values() if v]
    return []


def _is_url(text: str) -> bool:
    return text.startswith("http://") or text.startswith("https://")


def _basename(path: str) -> str:
    return path.rstrip("/").split("/")[-1] or path


class AttachmentResolver:
    """Resolves attachment entries to display labels and URLs.

    Pending uploads get an ephemeral handle that is cached per upload, so
    rendering the same timeline twice does not mint a second handle.
    """

    def __init__(self, cfg: Settings | None = None) -> None:
        cfg = cfg or default_settings
        self.storage_base = cfg.storage_base_url if cfg.storage_base_url.endswith("/") else cfg.storage_base_url + "/"
        self._handles: dict[str, str] = {}

    def storage_url(self, path: str) -> str:
        return self.storage_base + quote(path.lstrip("/"), safe="/")

    def handle_for(self, upload: PendingUpload) -> str:
        handle = self._handles.get(upload.token)
        if handle is None:
            handle = f"blob:local/{uuid4().hex}"
            self._handles[upload.token] = handle
            logger.debug("Created local handle for %s", upload.filename)
        return handle

    def release(self, upload: PendingUpload) -> None:
        self._handles.pop(upload.token, None)

    def release_handle(self, handle: str) -> None:
        for token, live in list(self._handles.items()):
            if live == handle:
                del self._handles[token]

    def release_all(self) -> None:
        self._handles.clear()

    @property
    def live_handles(self) -> int:
        return len(self._handles)

    def resolve(self, entry: Any, idx: int = 0) -> Attachment:
        if isinstance(entry, Attachment):
            return entry
        if isinstance(entry, PendingUpload):
            return Attachment(label=entry.filename, resolved_url=self.handle_for(entry), source_kind="pendingUpload")
        if isinstance(entry, str):
            if _is_url(entry):
                return Attachment(label=_basename(entry), resolved_url=entry, source_kind="url")
            return Attachment(label=_basename(entry), resolved_url=self.storage_url(entry), source_kind="path")
        if isinstance(entry, dict):
            return self._resolve_mapping(entry, idx)
        return Attachment(label=f"Attachment {idx + 1}", resolved_url=None, source_kind="path")

    def _resolve_mapping(self, entry: dict[str, Any], idx: int) -> Attachment:
        location = next((entry[k] for k in _LOCATION_KEYS if entry.get(k)), None)
        label = next((str(entry[k]) for k in _LABEL_KEYS if entry.get(k)), None)
        if not isinstance(location, str):
            return Attachment(label=label or f"Attachment {idx + 1}", resolved_url=None, source_kind="path")
        label = label or _basename(location)
        if _is_url(location):
            return Attachment(label=label, resolved_url=location, source_kind="url")
        return Attachment(label=label, resolved_url=self.storage_url(location), source_kind="path")

    def resolve_all(self, value: Any) -> list[Attachment]:
        return [self.resolve(entry, idx) for idx, entry in enumerate(normalize_attachment_value(value))]


def find_top_level_attachments(raw: dict[str, Any]) -> list[Any]:
    for key in TOP_LEVEL_ATTACHMENT_KEYS:
        items = normalize_attachment_value(raw.get(key))
        if items:
            return items
    for key, value in raw.items():
        if _ATTACHMENT_KEY_PATTERN.search(str(key)):
            items = normalize_attachment_value(value)
            if items:
                return items
    return []


def collect_uploads(
    existing: Iterable[PendingUpload],
    chosen: Iterable[PendingUpload],
    cfg: Settings | None = None,
) -> tuple[list[PendingUpload], list[str]]:
    """Merge newly chosen files into a selection.

    Returns the merged selection and one message per rejected file. A file
    with the same name and size as one already selected is skipped silently.
    """
    cfg = cfg or default_settings
    merged = list(existing)
    seen = {u.dedup_key for u in merged}
    rejected: list[str] = []
    for upload in chosen:
        if upload.size > cfg.max_upload_bytes:
            rejected.append(f"{upload.filename} is too large (max {cfg.max_upload_bytes // (1024 * 1024)} MB).")
            continue
        if upload.content_type.lower() not in cfg.allowed_upload_types:
            rejected.append(f"{upload.filename} is not supported (only images & PDFs).")
            continue
        if upload.dedup_key in seen:
            continue
        seen.add(upload.dedup_key)
        merged.append(upload)
    return merged, rejected
