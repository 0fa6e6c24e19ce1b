from __future__ import annotations

import asyncio
import copy
import json
import re
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

import httpx
import pytest

from portal.config import settings
from portal.domain.models import PendingUpload, SessionContext
from portal.domain.states import Role
from portal.events.bus import InMemoryEventBus
from portal.infra.portal_client import PortalClient
from portal.services.complaint_service import ComplaintService

_DETAIL = re.compile(r"^/api/(hq|area)/complaints/([^/]+)$")
_MUTATION = re.compile(r"^/api/(hq|area)/complaints/([^/]+)/(assign|decision|submit-resolution)$")

DECISION_STATUS = {"CLOSE": "CLOSED", "BACK_TO_AREA": "BACK_TO_AREA", "REOPEN": "OPEN"}
DECISION_ACTIVITY = {"CLOSE": "HQ_CLOSE_ACTION", "BACK_TO_AREA": "BACK_TO_AREA", "REOPEN": "REOPEN"}


def form_value(content: bytes, name: str) -> str | None:
    m = re.search(rb'name="' + name.encode() + rb'"\r\n(?:[^\r\n]+\r\n)*\r\n(.*?)\r\n--', content, re.DOTALL)
    return m.group(1).decode("utf-8") if m else None


def form_filenames(content: bytes, name: str) -> list[str]:
    return [f.decode() for f in re.findall(rb'name="' + name.encode() + rb'"; filename="([^"]+)"', content)]


class FakePortalBackend:
    """Stands in for the portal backend REST API."""

    def __init__(self) -> None:
        self.complaints: dict[str, dict[str, Any]] = {}
        self.hq_users: list[dict[str, Any]] = [{"id": 7, "name": "HQ Admin"}]
        self.area_officers: list[dict[str, Any]] = [
            {"id": 42, "name": "J. Singh", "area_id": 3},
            {"id": 43, "username": "mehta", "area_id": 3},
        ]
        self.requests: list[httpx.Request] = []
        self.failures: dict[str, tuple[int, str]] = {}
        self.record_history = True
        self.wrap_detail = False
        self.echo_decision = False
        self._next_activity = 1000

    def add_complaint(self, complaint_id: str = "1", **fields: Any) -> dict[str, Any]:
        row = {
            "id": int(complaint_id),
            "title": "Broken railing at platform 2",
            "workflowstatus": "NEW",
            "isclosed": False,
            "area_id": 3,
            "activities": [],
            **fields,
        }
        self.complaints[str(complaint_id)] = row
        return row

    def fail(self, suffix: str, status: int = 500, message: str = "Upstream exploded") -> None:
        self.failures[suffix] = (status, message)

    def mutations(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == "POST"]

    def _activity(self, activity_type: str, description: str, attachments: list[Any]) -> dict[str, Any]:
        self._next_activity += 1
        return {
            "id": self._next_activity,
            "activitytype": activity_type,
            "actortype": "AREA" if activity_type == "AREA_SUBMIT_RESOLUTION" else "HQ",
            "actorid": "7",
            "description": description,
            "createdat": datetime.now(timezone.utc).isoformat(),
            "attachments": attachments,
        }

    def _body(self, request: httpx.Request) -> dict[str, Any]:
        ctype = request.headers.get("content-type", "")
        if ctype.startswith("application/json"):
            return json.loads(request.content or b"{}")
        if ctype.startswith("multipart/form-data"):
            fields = {}
            for name in ("decision", "note", "assignedto", "assign_all", "resolution_text", "nodal_user_id"):
                value = form_value(request.content, name)
                if value is not None:
                    fields[name] = value
            return fields
        return {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        for suffix, (status, message) in self.failures.items():
            if path.endswith(suffix):
                return httpx.Response(status, json={"message": message})

        if path == "/api/hq/users":
            return httpx.Response(200, json=self.hq_users)
        if path == "/api/hq/users/options":
            area = request.url.params.get("areaid")
            rows = [u for u in self.area_officers if area is None or str(u.get("area_id")) == area]
            return httpx.Response(200, json={"data": rows})

        m = _DETAIL.match(path)
        if m and request.method == "GET":
            row = self.complaints.get(m.group(2))
            if row is None:
                return httpx.Response(404, json={"message": "Complaint not found"})
            payload = copy.deepcopy(row)
            return httpx.Response(200, json={"data": payload} if self.wrap_detail else payload)

        m = _MUTATION.match(path)
        if not m or request.method != "POST":
            return httpx.Response(404, json={"message": f"No route {request.method} {path}"})
        row = self.complaints.get(m.group(2))
        if row is None:
            return httpx.Response(404, json={"message": "Complaint not found"})
        return self._mutate(row, m.group(3), request)

    def _mutate(self, row: dict[str, Any], kind: str, request: httpx.Request) -> httpx.Response:
        body = self._body(request)
        note = str(body.get("note") or "")
        if kind == "assign":
            if str(body.get("assign_all")).lower() == "true":
                row["assign_all"] = True
                row["assignedto"] = None
            else:
                row["assignedto"] = int(body["assignedto"])
                row["assign_all"] = False
            row["workflowstatus"] = "ASSIGNED_TO_AREA"
            if self.record_history:
                row["activities"].insert(0, self._activity("ASSIGN", note, []))
            return httpx.Response(200, json={"ok": True, "complaint": copy.deepcopy(row)})

        if kind == "submit-resolution":
            stored = [
                {"path": f"complaints/{row['id']}/{name}", "original_name": name}
                for name in form_filenames(request.content, "proofs")
            ]
            row["workflowstatus"] = "HQ_REVIEW"
            if self.record_history:
                activity = self._activity("AREA_SUBMIT_RESOLUTION", str(body.get("resolution_text") or ""), stored)
                activity["actorid"] = body.get("nodal_user_id")
                row["activities"].insert(0, activity)
            return httpx.Response(200, json={"ok": True, "attachments": stored})

        decision = str(body.get("decision"))
        row["workflowstatus"] = DECISION_STATUS[decision]
        row["isclosed"] = decision == "CLOSE"
        if decision == "REOPEN":
            row["assignedto"] = None
            row["assign_all"] = False
        if self.record_history:
            names = form_filenames(request.content, "attachments") if request.content else []
            row["activities"].insert(0, self._activity(DECISION_ACTIVITY[decision], note, names))
        if self.echo_decision:
            return httpx.Response(200, json={"ok": True, "data": copy.deepcopy(row)})
        return httpx.Response(200, json={"ok": True})


class RecordingBus(InMemoryEventBus):
    """Event bus that also keeps every envelope it publishes."""

    def __init__(self) -> None:
        super().__init__()
        self.envelopes: list[dict[str, Any]] = []
        self.subscribe("*", self.envelopes.append)


@pytest.fixture
def cfg():
    return replace(settings, storage_base_url="/storage/", portal_api_base_url="http://portal.test")


@pytest.fixture
def backend() -> FakePortalBackend:
    return FakePortalBackend()


@pytest.fixture
def transport(backend: FakePortalBackend) -> httpx.MockTransport:
    return httpx.MockTransport(backend.handler)


@pytest.fixture
def hq_ctx() -> SessionContext:
    return SessionContext(user_id="7", role=Role.SAFETY, user_name="HQ Admin", token="hq-token")


@pytest.fixture
def area_ctx() -> SessionContext:
    return SessionContext(user_id="42", role=Role.NODAL, user_name="J. Singh", area_id="3", token="area-token")


@pytest.fixture
def make_service(cfg, transport):
    def _make(ctx: SessionContext, **kwargs: Any) -> ComplaintService:
        client = PortalClient(token=ctx.token, transport=kwargs.pop("transport", transport), cfg=cfg)
        kwargs.setdefault("bus", RecordingBus())
        return ComplaintService(ctx, client, cfg=cfg, **kwargs)

    return _make


@pytest.fixture
def run():
    return asyncio.run


@pytest.fixture
def make_upload():
    def _make(name: str = "proof.png", size: int = 16, content_type: str = "image/png") -> PendingUpload:
        return PendingUpload(filename=name, content=b"0" * size, content_type=content_type)

    return _make
