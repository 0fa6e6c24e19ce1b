from __future__ import annotations

from threading import RLock
from typing import Any

from portal.domain.models import Complaint
from portal.domain.states import WorkflowStatus


class ComplaintStore:
    """Complaints as last known by one client session."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._complaints: dict[str, Complaint] = {}

    def get(self, complaint_id: str) -> Complaint | None:
        with self._lock:
            return self._complaints.get(str(complaint_id))

    def put(self, complaint: Complaint) -> Complaint:
        with self._lock:
            self._complaints[str(complaint.id)] = complaint
            return complaint

    def list_complaints(self, limit: int = 500) -> list[Complaint]:
        with self._lock:
            return list(self._complaints.values())[:limit]

    def summary(self) -> dict[str, int]:
        rows = self.list_complaints(limit=len(self._complaints))
        closed = sum(1 for c in rows if c.workflow_status == WorkflowStatus.CLOSED)
        assigned = sum(1 for c in rows if not c.is_closed and c.is_assigned)
        return {
            "total": len(rows),
            "assigned_open": assigned,
            "unassigned_open": len(rows) - closed - assigned,
            "closed": closed,
        }
