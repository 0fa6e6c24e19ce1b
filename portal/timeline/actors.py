from __future__ import annotations

import re
from collections import defaultdict
from typing import Any, Iterable

from portal.domain.models import ActorDirectoryEntry

ASSIGN_ALL_LABEL = "Area officers (all)"

_NUMERIC = re.compile(r"^\s*\d+\s*$")
# user_id=10, user id:10, userid 10, id=10, (user_id=10)
_EMBEDDED_ID = re.compile(r"(?:user[_\s-]*id|userid|user\s*id|id)\s*[:=]?\s*[\(\[]?\s*(\d+)\b", re.IGNORECASE)


def extract_user_id(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if not isinstance(value, str):
        return None
    if _NUMERIC.match(value):
        return value.strip()
    m = _EMBEDDED_ID.search(value)
    return m.group(1) if m else None


def display_name_for(user: dict[str, Any]) -> str:
    name = user.get("name") or user.get("username") or user.get("email")
    return str(name) if name else f"User {user.get('id')}"


class ActorDirectory:
    """Known users: HQ staff by id plus area officers grouped by area."""

    def __init__(self) -> None:
        self._hq: dict[str, ActorDirectoryEntry] = {}
        self._areas: dict[str, list[ActorDirectoryEntry]] = defaultdict(list)

    def seed_hq_users(self, users: Iterable[dict[str, Any]]) -> int:
        hq: dict[str, ActorDirectoryEntry] = {}
        for user in users:
            if not isinstance(user, dict) or user.get("id") is None:
                continue
            entry = ActorDirectoryEntry(id=str(user["id"]), display_name=display_name_for(user), area_id=None)
            hq[entry.id] = entry
        self._hq = hq
        return len(hq)

    def seed_area_officers(self, users: Iterable[dict[str, Any]], area_id: str | None = None) -> int:
        grouped: dict[str, list[ActorDirectoryEntry]] = defaultdict(list)
        if area_id is not None:
            grouped[str(area_id)] = []
        count = 0
        for user in users:
            if not isinstance(user, dict) or user.get("id") is None:
                continue
            area = str(user.get("area_id") if user.get("area_id") is not None else (area_id or "unknown"))
            grouped[area].append(ActorDirectoryEntry(id=str(user["id"]), display_name=display_name_for(user), area_id=area))
            count += 1
        self._areas.update(grouped)
        return count

    def officers_for_area(self, area_id: str | None) -> list[ActorDirectoryEntry]:
        if area_id is None:
            return [e for entries in self._areas.values() for e in entries]
        return list(self._areas.get(str(area_id), []))

    def lookup(self, user_id: str, area_id: str | None = None) -> ActorDirectoryEntry | None:
        hit = self._hq.get(str(user_id))
        if hit:
            return hit
        if area_id is not None:
            for entry in self._areas.get(str(area_id), []):
                if entry.id == str(user_id):
                    return entry
        for entries in self._areas.values():
            for entry in entries:
                if entry.id == str(user_id):
                    return entry
        return None


class ActorResolver:
    def __init__(self, directory: ActorDirectory | None = None) -> None:
        self.directory = directory or ActorDirectory()

    def label(self, value: Any, area_id: str | None = None) -> Any:
        if value is None or value == "":
            return value
        user_id = extract_user_id(value)
        if user_id is None:
            return value
        entry = self.directory.lookup(user_id, area_id)
        if entry:
            return f"{entry.display_name} (id:{user_id})"
        return f"User {user_id}"

    def assignee_label(self, assigned_to: Any, *, assign_all: bool = False, area_id: str | None = None) -> Any:
        if assign_all and assigned_to in (None, ""):
            return ASSIGN_ALL_LABEL
        return self.label(assigned_to, area_id)
