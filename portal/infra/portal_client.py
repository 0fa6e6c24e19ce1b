from __future__ import annotations

import json
import logging
from typing import Any, Sequence

import httpx

from portal.config import Settings, settings as default_settings
from portal.domain.models import PendingUpload

logger = logging.getLogger(__name__)

AREA_NODAL_ROLE = "AREA_NODAL"


class PortalClientError(RuntimeError):
    def __init__(self, message: str, *, status: int | None = None, detail: Any = None) -> None:
        super().__init__(message)
        self.status = status
        self.detail = detail


def _error_message(res: httpx.Response) -> str:
    try:
        body = res.json()
    except ValueError:
        return res.text[:300] or res.reason_phrase
    if isinstance(body, dict):
        for key in ("message", "detail", "error"):
            if body.get(key):
                return str(body[key])
    return res.text[:300]


def unwrap_list(payload: Any) -> list[dict[str, Any]]:
    """List endpoints answer either with a bare array or with {"data": [...]}."""
    if isinstance(payload, dict):
        payload = payload.get("data")
    if not isinstance(payload, list):
        return []
    return [row for row in payload if isinstance(row, dict)]


def _form_parts(
    fields: dict[str, Any],
    uploads: Sequence[PendingUpload],
    file_field: str,
) -> list[tuple[str, tuple[str | None, bytes] | tuple[str, bytes, str]]]:
    parts: list[tuple[str, Any]] = []
    for name, value in fields.items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        parts.append((name, (None, str(value).encode("utf-8"))))
    for upload in uploads:
        parts.append((file_field, (upload.filename, upload.content, upload.content_type)))
    return parts


class PortalClient:
    """Async client for the portal backend REST API.

    Mutations go out as multipart when a note or files accompany them and as
    compact JSON otherwise.
    """

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        *,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        cfg: Settings | None = None,
    ) -> None:
        cfg = cfg or default_settings
        self.base_url = (base_url or cfg.portal_api_base_url).rstrip("/")
        self.token = token
        self.timeout = timeout if timeout is not None else cfg.request_timeout_seconds
        self.transport = transport

    def _headers(self) -> dict[str, str]:
        h = {"Accept": "application/json"}
        if self.token:
            h["Authorization"] = f"Bearer {self.token}"
        return h

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
        files: list[tuple[str, Any]] | None = None,
    ) -> Any:
        kwargs: dict[str, Any] = {"params": params, "headers": self._headers()}
        if files:
            kwargs["files"] = files
        elif payload is not None:
            kwargs["content"] = json.dumps(payload, separators=(",", ":"))
            kwargs["headers"]["Content-Type"] = "application/json"

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self.transport,
            ) as http_client:
                res = await http_client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("Portal %s %s failed: %s", method, path, exc)
            raise PortalClientError(f"Portal request failed: {exc}") from exc

        if res.status_code >= 400:
            message = _error_message(res)
            logger.warning("Portal %s %s failed [%s] %s", method, path, res.status_code, message)
            raise PortalClientError(message, status=res.status_code, detail=res.text[:400])
        if not res.content:
            return {}
        try:
            return res.json()
        except ValueError:
            return {}

    async def _mutate(
        self,
        path: str,
        fields: dict[str, Any],
        *,
        note: str | None = None,
        attachments: Sequence[PendingUpload] = (),
        file_field: str = "attachments",
        force_multipart: bool = False,
    ) -> dict[str, Any]:
        note = (note or "").strip()
        if note or attachments or force_multipart:
            body = dict(fields)
            if note:
                body.setdefault("note", note)
            result = await self._request("POST", path, files=_form_parts(body, attachments, file_field))
        else:
            result = await self._request("POST", path, payload=fields)
        return result if isinstance(result, dict) else {}

    async def fetch_complaint(self, complaint_id: str, *, area: bool = False) -> Any:
        scope = "area" if area else "hq"
        return await self._request("GET", f"/api/{scope}/complaints/{complaint_id}")

    async def assign(
        self,
        complaint_id: str,
        *,
        assignee: str | None = None,
        assign_all: bool = False,
        note: str | None = None,
        attachments: Sequence[PendingUpload] = (),
    ) -> dict[str, Any]:
        fields: dict[str, Any] = {"assign_all": True} if assign_all else {"assignedto": _as_number(assignee)}
        return await self._mutate(
            f"/api/hq/complaints/{complaint_id}/assign",
            fields,
            note=note,
            attachments=attachments,
        )

    async def decide(
        self,
        complaint_id: str,
        decision: str,
        *,
        note: str | None = None,
        attachments: Sequence[PendingUpload] = (),
    ) -> dict[str, Any]:
        return await self._mutate(
            f"/api/hq/complaints/{complaint_id}/decision",
            {"decision": decision},
            note=note,
            attachments=attachments,
        )

    async def submit_resolution(
        self,
        complaint_id: str,
        *,
        resolution_text: str,
        nodal_user_id: str,
        proofs: Sequence[PendingUpload] = (),
    ) -> dict[str, Any]:
        return await self._mutate(
            f"/api/area/complaints/{complaint_id}/submit-resolution",
            {"resolution_text": resolution_text, "nodal_user_id": nodal_user_id},
            attachments=proofs,
            file_field="proofs",
            force_multipart=True,
        )

    async def list_hq_users(self) -> list[dict[str, Any]]:
        return unwrap_list(await self._request("GET", "/api/hq/users"))

    async def list_area_officers(self, area_id: str | None = None) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"role": AREA_NODAL_ROLE}
        if area_id is not None:
            params["areaid"] = area_id
        return unwrap_list(await self._request("GET", "/api/hq/users/options", params=params))


def _as_number(value: Any) -> Any:
    text = str(value).strip() if value is not None else ""
    return int(text) if text.isdigit() else value
