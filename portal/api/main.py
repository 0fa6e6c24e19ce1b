from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from threading import RLock
from typing import Any, AsyncIterator, Callable

import httpx
from fastapi import Depends, FastAPI, File, Form, Header, Request, UploadFile
from fastapi.responses import JSONResponse

from portal.config import settings
from portal.contracts.payloads import (
    AssignContract,
    CloseContract,
    NotifyContract,
    ReassignContract,
    ReopenContract,
)
from portal.domain.models import PendingUpload, SessionContext
from portal.domain.state_machine import GuardViolation
from portal.domain.states import ActionTag, Role
from portal.events.bus import InMemoryEventBus
from portal.infra.portal_client import PortalClient, PortalClientError
from portal.logger import init_logging
from portal.services.complaint_service import ComplaintService
from portal.timeline.attachments import collect_uploads

logger = logging.getLogger(__name__)


class SessionRegistry:
    """One engine per client session; locks and provisional entries are per session.

    Engines idle for longer than ``idle_seconds`` are dropped on the next
    lookup, unless a mutation is still in flight on them.
    """

    def __init__(
        self,
        transport: httpx.AsyncBaseTransport | None = None,
        *,
        idle_seconds: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._lock = RLock()
        self._services: dict[str, ComplaintService] = {}
        self._last_seen: dict[str, float] = {}
        self.transport = transport
        self.idle_seconds = settings.session_idle_seconds if idle_seconds is None else idle_seconds
        self.clock = clock
        self.bus = InMemoryEventBus()

    def service_for(self, ctx: SessionContext) -> ComplaintService:
        with self._lock:
            now = self.clock()
            self._evict_idle(now)
            service = self._services.get(ctx.session_key)
            if service is None:
                client = PortalClient(token=ctx.token, transport=self.transport, cfg=settings)
                service = ComplaintService(ctx, client, cfg=settings, bus=self.bus)
                self._services[ctx.session_key] = service
            self._last_seen[ctx.session_key] = now
            return service

    def _evict_idle(self, now: float) -> None:
        for key, seen in list(self._last_seen.items()):
            service = self._services[key]
            if now - seen <= self.idle_seconds or service.busy:
                continue
            service.attachments.release_all()
            del self._services[key]
            del self._last_seen[key]
            logger.info("Evicted idle session engine (%d active)", len(self._services))

    def reset(self) -> None:
        with self._lock:
            for service in self._services.values():
                service.attachments.release_all()
            self._services.clear()
            self._last_seen.clear()


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    init_logging(settings)
    yield
    registry.reset()


app = FastAPI(title="Incident Portal Workflow API", version="1.0.0", lifespan=lifespan)
registry = SessionRegistry()


def _ctx(
    x_user_id: str = Header(..., alias="X-User-ID"),
    x_role: str = Header(..., alias="X-Role"),
    x_user_name: str | None = Header(default=None, alias="X-User-Name"),
    x_area_id: str | None = Header(default=None, alias="X-Area-ID"),
    authorization: str | None = Header(default=None),
) -> SessionContext:
    token = None
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization[7:].strip() or None
    return SessionContext(
        user_id=x_user_id.strip(),
        role=Role(x_role.strip().lower()),
        user_name=(x_user_name or "").strip() or None,
        area_id=(x_area_id or "").strip() or None,
        token=token,
    )


def _service(ctx: SessionContext = Depends(_ctx)) -> ComplaintService:
    return registry.service_for(ctx)


async def _uploads(files: list[UploadFile]) -> tuple[list[PendingUpload], list[str]]:
    chosen = [
        PendingUpload(
            filename=f.filename or "upload",
            content=await f.read(),
            content_type=(f.content_type or "application/octet-stream"),
        )
        for f in files
    ]
    return collect_uploads([], chosen, settings)


def _parse_action(action: str) -> ActionTag:
    try:
        return ActionTag(action.strip().upper())
    except ValueError as exc:
        raise ValueError(f"Unknown action: {action}") from exc


@app.exception_handler(GuardViolation)
async def guard_violation_handler(_request: Request, exc: GuardViolation) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={"detail": exc.message, "action": exc.action.value, "reason": exc.reason},
    )


@app.exception_handler(PortalClientError)
async def portal_error_handler(_request: Request, exc: PortalClientError) -> JSONResponse:
    status = 404 if exc.status == 404 else 502
    return JSONResponse(status_code=status, content={"detail": str(exc), "upstream_status": exc.status})


@app.exception_handler(ValueError)
async def value_error_handler(_request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.get("/health")
def health() -> dict[str, Any]:
    return {
        "status": "ok",
        "upstream": settings.portal_api_base_url,
        "upstream_configured": settings.portal_api_configured(),
    }


@app.get("/complaints/summary")
def complaint_summary(service: ComplaintService = Depends(_service)) -> dict[str, int]:
    return service.summary()


@app.post("/directory/refresh")
async def refresh_directory(area_id: str | None = None, service: ComplaintService = Depends(_service)) -> dict[str, int]:
    return await service.refresh_directory(area_id)


@app.get("/complaints/{complaint_id}")
async def get_complaint(
    complaint_id: str,
    refresh: bool = True,
    service: ComplaintService = Depends(_service),
) -> dict[str, Any]:
    if refresh:
        await service.load_complaint(complaint_id)
    return await service.view(complaint_id)


@app.post("/complaints/{complaint_id}/actions/{action}/begin")
async def begin_action(complaint_id: str, action: str, service: ComplaintService = Depends(_service)) -> dict[str, Any]:
    await service.begin_action(complaint_id, _parse_action(action))
    return await service.view(complaint_id)


@app.post("/complaints/{complaint_id}/actions/{action}/cancel")
async def cancel_action(complaint_id: str, action: str, service: ComplaintService = Depends(_service)) -> dict[str, Any]:
    await service.cancel_action(complaint_id, _parse_action(action))
    return await service.view(complaint_id)


@app.post("/complaints/{complaint_id}/assign")
async def assign_complaint(
    complaint_id: str,
    assigned_to: str | None = Form(default=None),
    assign_all: bool = Form(default=False),
    note: str = Form(default=""),
    files: list[UploadFile] = File(default=[]),
    service: ComplaintService = Depends(_service),
) -> dict[str, Any]:
    payload = AssignContract(assigned_to=assigned_to or None, assign_all=assign_all, note=note)
    uploads, rejected = await _uploads(files)
    await service.assign(
        complaint_id,
        assignee=payload.assigned_to,
        assign_all=payload.assign_all,
        note=payload.note,
        attachments=uploads,
    )
    return {**await service.view(complaint_id), "rejected_files": rejected}


@app.post("/complaints/{complaint_id}/notify")
async def notify_safety(
    complaint_id: str,
    note: str = Form(default=""),
    files: list[UploadFile] = File(default=[]),
    service: ComplaintService = Depends(_service),
) -> dict[str, Any]:
    payload = NotifyContract(note=note)
    uploads, rejected = await _uploads(files)
    await service.notify(complaint_id, note=payload.note, attachments=uploads)
    return {**await service.view(complaint_id), "rejected_files": rejected}


@app.post("/complaints/{complaint_id}/reassign")
async def reassign_complaint(
    complaint_id: str,
    note: str = Form(default=""),
    assigned_to: str | None = Form(default=None),
    assign_all: bool = Form(default=False),
    files: list[UploadFile] = File(default=[]),
    service: ComplaintService = Depends(_service),
) -> dict[str, Any]:
    payload = ReassignContract(note=note, assigned_to=assigned_to or None, assign_all=assign_all)
    uploads, rejected = await _uploads(files)
    await service.reassign(
        complaint_id,
        note=payload.note,
        attachments=uploads,
        assignee=payload.assigned_to,
        assign_all=payload.assign_all,
    )
    return {**await service.view(complaint_id), "rejected_files": rejected}


@app.post("/complaints/{complaint_id}/close")
async def close_complaint(
    complaint_id: str,
    note: str = Form(default=""),
    files: list[UploadFile] = File(default=[]),
    service: ComplaintService = Depends(_service),
) -> dict[str, Any]:
    payload = CloseContract(note=note)
    uploads, rejected = await _uploads(files)
    await service.close(complaint_id, note=payload.note, attachments=uploads)
    return {**await service.view(complaint_id), "rejected_files": rejected}


@app.post("/complaints/{complaint_id}/reopen")
async def reopen_complaint(
    complaint_id: str,
    note: str = Form(default=""),
    service: ComplaintService = Depends(_service),
) -> dict[str, Any]:
    payload = ReopenContract(note=note)
    await service.reopen(complaint_id, note=payload.note or None)
    return await service.view(complaint_id)
