from __future__ import annotations

import logging
from typing import Any, Sequence

from portal.config import Settings, settings as default_settings
from portal.domain.models import Activity, Complaint, PendingUpload, SessionContext
from portal.domain.state_machine import GuardViolation, StateMachine
from portal.domain.states import (
    ACTION_ACTIVITY_TYPES,
    ACTIVITY_ASSIGN,
    ACTIVITY_BACK_TO_AREA,
    ActionTag,
    ActorType,
    Role,
    WorkflowStatus,
)
from portal.events.bus import InMemoryEventBus
from portal.events.contracts import build_event_envelope
from portal.infra.portal_client import PortalClient, PortalClientError
from portal.infra.repositories import ComplaintStore
from portal.services.directory_service import DirectoryService
from portal.timeline.activities import (
    ATTACHMENT_KEYS,
    dedupe_activities,
    reconcile,
    sort_newest_first,
    synthesize_activity,
)
from portal.timeline.actors import ActorResolver
from portal.timeline.attachments import AttachmentResolver, normalize_attachment_value
from portal.timeline.complaints import complaint_from_raw, unwrap_detail
from portal.timeline.render import render_complaint

logger = logging.getLogger(__name__)

ACTION_EVENTS = {
    ActionTag.ASSIGN: "complaint.assigned",
    ActionTag.NOTIFY: "complaint.resolution_submitted",
    ActionTag.REASSIGN: "complaint.sent_back",
    ActionTag.CLOSE: "complaint.closed",
    ActionTag.REOPEN: "complaint.reopened",
}


def _settled_lock(complaint: Complaint) -> ActionTag | None:
    """Lock value consistent with the complaint's state once nothing is pending."""
    return ActionTag.CLOSE if complaint.is_closed else None


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


def _server_record(result: dict[str, Any]) -> dict[str, Any] | None:
    for candidate in (result, result.get("complaint"), result.get("data")):
        record = unwrap_detail(candidate)
        if record is not None:
            return record
    return None


def _stored_files(result: dict[str, Any]) -> list[Any]:
    """Files a mutation response reports as stored.

    A response that echoes the whole complaint is skipped, its attachment
    keys belong to the complaint and not to the files just sent.
    """
    if _server_record(result) is not None:
        return []
    scopes = [result]
    if isinstance(result.get("data"), dict):
        scopes.append(result["data"])
    for scope in scopes:
        for key in ATTACHMENT_KEYS:
            items = normalize_attachment_value(scope.get(key))
            if items:
                return items
    return []


class ComplaintService:
    """Optimistic mutation engine for one client session.

    Every action runs guard, lock, network call, then local apply. Local
    state only changes after the backend accepts the mutation; the entries
    it synthesizes stay provisional until a refetch confirms them.
    """

    def __init__(
        self,
        ctx: SessionContext,
        client: PortalClient,
        *,
        cfg: Settings | None = None,
        store: ComplaintStore | None = None,
        directory: DirectoryService | None = None,
        bus: InMemoryEventBus | None = None,
        sm: StateMachine | None = None,
        attachments: AttachmentResolver | None = None,
    ) -> None:
        self.ctx = ctx
        self.client = client
        self.cfg = cfg or default_settings
        self.store = store or ComplaintStore()
        self.directory = directory or DirectoryService(client)
        self.bus = bus or InMemoryEventBus()
        self.sm = sm or StateMachine(self.cfg)
        self.attachments = attachments or AttachmentResolver(self.cfg)
        self.actors = ActorResolver(self.directory.directory)
        self._in_flight: set[str] = set()

    @property
    def busy(self) -> bool:
        return bool(self._in_flight)

    # Reads

    async def load_complaint(self, complaint_id: str) -> Complaint:
        """Authoritative refetch, reconciled with what this session already holds."""
        complaint_id = str(complaint_id)
        known = self.store.get(complaint_id)
        try:
            payload = await self.client.fetch_complaint(complaint_id, area=self.ctx.role == Role.NODAL)
        except PortalClientError as exc:
            if known is None:
                raise
            logger.warning("Detail fetch failed for complaint %s, keeping local copy: %s", complaint_id, exc)
            return known

        raw = unwrap_detail(payload)
        if raw is None:
            if known is None:
                raise PortalClientError(f"Complaint {complaint_id} not found", status=404)
            logger.warning("Unexpected detail payload for complaint %s, keeping local copy", complaint_id)
            return known

        fresh = complaint_from_raw(raw, self.attachments)
        fresh.pending_action = _settled_lock(fresh)
        if known is not None:
            self._merge_local(fresh, known)
        return self.store.put(fresh)

    def _merge_local(self, fresh: Complaint, known: Complaint) -> None:
        server_count = len(fresh.activities)
        fresh.activities = reconcile(
            fresh.activities,
            known.activities,
            skew_seconds=self.cfg.reconcile_skew_seconds,
            ttl_seconds=self.cfg.provisional_ttl_seconds,
        )
        survivors = {id(a) for a in fresh.activities}
        for activity in known.activities:
            if activity.provisional and id(activity) not in survivors:
                self._release_files(activity)
        kept = [a for a in fresh.activities if a.provisional]
        kept_area = [a for a in kept if a.actor_type == ActorType.AREA]
        if kept_area:
            fresh.area_actions = dedupe_activities(sort_newest_first([*kept_area, *fresh.area_actions]))

        # An open dialog or an in-flight call keeps its lock across a refetch.
        held = known.pending_action
        if held is not None and held != ActionTag.CLOSE:
            fresh.pending_action = held
        elif fresh.id in self._in_flight:
            fresh.pending_action = held

        if kept:
            self._publish(
                "timeline.reconciled",
                fresh,
                {"server": server_count, "provisional_kept": len(kept)},
            )

    async def get_complaint(self, complaint_id: str) -> Complaint:
        return self.store.get(str(complaint_id)) or await self.load_complaint(complaint_id)

    async def view(self, complaint_id: str) -> dict[str, Any]:
        complaint = await self.get_complaint(complaint_id)
        return render_complaint(complaint, self.actors)

    async def refresh_directory(self, area_id: str | None = None) -> dict[str, int]:
        return await self.directory.refresh_for(self.ctx, area_id)

    def summary(self) -> dict[str, int]:
        return self.store.summary()

    # Dialog lock

    async def begin_action(self, complaint_id: str, action: ActionTag) -> Complaint:
        complaint = await self.get_complaint(complaint_id)
        self.sm.check_lock(complaint, action, in_flight=complaint.id in self._in_flight)
        complaint.pending_action = action
        self._publish("action.started", complaint, {"action": action.value})
        return complaint

    async def cancel_action(self, complaint_id: str, action: ActionTag) -> Complaint:
        complaint = await self.get_complaint(complaint_id)
        if complaint.id in self._in_flight:
            raise GuardViolation(action, "in_flight", f"{action.value.title()} is already in progress for complaint {complaint.id}")
        if complaint.pending_action != action:
            return complaint
        complaint.pending_action = _settled_lock(complaint)
        self._publish("action.cancelled", complaint, {"action": action.value})
        return complaint

    # Mutations

    async def assign(
        self,
        complaint_id: str,
        *,
        assignee: str | None = None,
        assign_all: bool = False,
        note: str | None = None,
        attachments: Sequence[PendingUpload] = (),
    ) -> Complaint:
        complaint = await self.get_complaint(complaint_id)
        target = self._acquire(ActionTag.ASSIGN, complaint, note=note, assignee=assignee, assign_all=assign_all)
        try:
            result = await self.client.assign(
                complaint.id,
                assignee=assignee,
                assign_all=assign_all,
                note=note,
                attachments=attachments,
            )
        except BaseException as exc:
            self._fail(ActionTag.ASSIGN, complaint, exc, attachments)
            raise
        finally:
            self._in_flight.discard(complaint.id)

        previous = complaint.workflow_status
        fields = self._assignment(assignee, assign_all, result)
        activity = self._synthesize(ACTIVITY_ASSIGN, note, attachments, result)
        return self._commit(ActionTag.ASSIGN, complaint, previous, target, [activity], fields)

    async def notify(
        self,
        complaint_id: str,
        *,
        note: str,
        attachments: Sequence[PendingUpload] = (),
    ) -> Complaint:
        complaint = await self.get_complaint(complaint_id)
        target = self._acquire(ActionTag.NOTIFY, complaint, note=note)
        try:
            result = await self.client.submit_resolution(
                complaint.id,
                resolution_text=note.strip(),
                nodal_user_id=str(self.ctx.user_id),
                proofs=attachments,
            )
        except BaseException as exc:
            self._fail(ActionTag.NOTIFY, complaint, exc, attachments)
            raise
        finally:
            self._in_flight.discard(complaint.id)

        previous = complaint.workflow_status
        activity = self._synthesize(ACTION_ACTIVITY_TYPES[ActionTag.NOTIFY], note, attachments, result)
        return self._commit(ActionTag.NOTIFY, complaint, previous, target, [activity])

    async def reassign(
        self,
        complaint_id: str,
        *,
        note: str | None = None,
        attachments: Sequence[PendingUpload] = (),
        assignee: str | None = None,
        assign_all: bool = False,
    ) -> Complaint:
        """Send a reviewed complaint back to the area, optionally to a new assignee.

        With an assignment this is two backend calls. If the decision lands
        and the assignment does not, the send-back is kept and the assignment
        error is raised.
        """
        complaint = await self.get_complaint(complaint_id)
        with_assignment = bool(assignee) or assign_all
        target = self._acquire(ActionTag.REASSIGN, complaint, note=note, assignee=assignee, assign_all=assign_all)
        previous = complaint.workflow_status
        try:
            try:
                result = await self.client.decide(complaint.id, "BACK_TO_AREA", note=note, attachments=attachments)
            except BaseException as exc:
                self._fail(ActionTag.REASSIGN, complaint, exc, attachments)
                raise
            sent_back = self._synthesize(ACTIVITY_BACK_TO_AREA, note, attachments, result)
            if not with_assignment:
                return self._commit(ActionTag.REASSIGN, complaint, previous, target, [sent_back])

            try:
                result = await self.client.assign(complaint.id, assignee=assignee, assign_all=assign_all)
            except BaseException as exc:
                complaint = self._commit(ActionTag.REASSIGN, complaint, previous, WorkflowStatus.BACK_TO_AREA, [sent_back])
                self._publish(
                    "mutation.failed",
                    complaint,
                    {"action": ActionTag.ASSIGN.value, "error": _describe(exc), "status": getattr(exc, "status", None)},
                    reason="Sent back without reassignment",
                )
                raise
        finally:
            self._in_flight.discard(complaint.id)

        fields = self._assignment(assignee, assign_all, result)
        assigned = self._synthesize(ACTIVITY_ASSIGN, None, ())
        return self._commit(ActionTag.REASSIGN, complaint, previous, target, [sent_back, assigned], fields)

    async def close(
        self,
        complaint_id: str,
        *,
        note: str,
        attachments: Sequence[PendingUpload] = (),
    ) -> Complaint:
        complaint = await self.get_complaint(complaint_id)
        target = self._acquire(ActionTag.CLOSE, complaint, note=note)
        try:
            result = await self.client.decide(complaint.id, "CLOSE", note=note, attachments=attachments)
        except BaseException as exc:
            self._fail(ActionTag.CLOSE, complaint, exc, attachments)
            raise
        finally:
            self._in_flight.discard(complaint.id)

        previous = complaint.workflow_status
        activity = self._synthesize(ACTION_ACTIVITY_TYPES[ActionTag.CLOSE], note, attachments, result)
        return self._commit(ActionTag.CLOSE, complaint, previous, target, [activity])

    async def reopen(self, complaint_id: str, *, note: str | None = None) -> Complaint:
        complaint = await self.get_complaint(complaint_id)
        target = self._acquire(ActionTag.REOPEN, complaint, note=note)
        try:
            await self.client.decide(complaint.id, "REOPEN", note=note)
        except BaseException as exc:
            self._fail(ActionTag.REOPEN, complaint, exc, ())
            raise
        finally:
            self._in_flight.discard(complaint.id)

        previous = complaint.workflow_status
        activity = self._synthesize(ACTION_ACTIVITY_TYPES[ActionTag.REOPEN], note, ())
        cleared = {"assigned_to": None, "assigned_by": None, "assign_all": False}
        return self._commit(ActionTag.REOPEN, complaint, previous, target, [activity], cleared)

    # Internals

    def _acquire(
        self,
        action: ActionTag,
        complaint: Complaint,
        *,
        note: str | None = None,
        assignee: str | None = None,
        assign_all: bool = False,
    ) -> WorkflowStatus:
        try:
            self.sm.check_lock(complaint, action, in_flight=complaint.id in self._in_flight)
            target = self.sm.guard(action, complaint, self.ctx, note=note, assignee=assignee, assign_all=assign_all)
        except GuardViolation as exc:
            logger.info("Rejected %s on complaint %s: %s", action.value, complaint.id, exc.message)
            self._publish(
                "action.rejected",
                complaint,
                {"action": action.value, "reason": exc.reason, "message": exc.message},
            )
            raise
        complaint.pending_action = action
        self._in_flight.add(complaint.id)
        return target

    def _fail(
        self,
        action: ActionTag,
        complaint: Complaint,
        exc: BaseException,
        uploads: Sequence[PendingUpload],
    ) -> None:
        """Release the lock after any unsuccessful call, cancellation included."""
        complaint.pending_action = _settled_lock(complaint)
        current = self._current(complaint)
        current.pending_action = _settled_lock(current)
        for upload in uploads:
            self.attachments.release(upload)
        logger.warning("%s failed for complaint %s: %s", action.value, complaint.id, _describe(exc))
        self._publish(
            "mutation.failed",
            complaint,
            {"action": action.value, "error": _describe(exc), "status": getattr(exc, "status", None)},
        )

    def _synthesize(
        self,
        activity_type: str,
        note: str | None,
        uploads: Sequence[PendingUpload],
        result: dict[str, Any] | None = None,
    ) -> Activity:
        """Provisional entry carrying exactly the files sent with the action.

        An upload the backend reports as stored is shown by its stored copy
        and its local handle is released. Anything else in the response is
        ignored.
        """
        stored: dict[str, Any] = {}
        if uploads and result:
            for item in _stored_files(result):
                stored.setdefault(self.attachments.resolve(item).label, item)
        files: list[Any] = []
        for upload in uploads:
            match = stored.pop(upload.filename, None)
            if match is None:
                files.append(upload)
                continue
            self.attachments.release(upload)
            files.append(match)
        return synthesize_activity(
            activity_type,
            self.ctx,
            self.attachments,
            note=note,
            attachments=files,
        )

    def _assignment(
        self,
        assignee: str | None,
        assign_all: bool,
        result: dict[str, Any],
    ) -> dict[str, Any]:
        record = _server_record(result) if result else None
        if record is not None:
            server = complaint_from_raw(record, self.attachments)
            if server.assigned_to not in (None, "") or server.assign_all:
                fields = {
                    "assigned_to": server.assigned_to,
                    "assign_all": server.assign_all,
                    "assigned_by": server.assigned_by or self.ctx.user_id,
                }
                if server.area_id:
                    fields["area_id"] = server.area_id
                return fields
        return {
            "assigned_to": None if assign_all else assignee,
            "assign_all": assign_all,
            "assigned_by": self.ctx.user_id,
        }

    def _current(self, complaint: Complaint) -> Complaint:
        """The stored copy of ``complaint``, which a refetch may have replaced."""
        return self.store.get(complaint.id) or complaint

    def _release_files(self, activity: Activity) -> None:
        for attachment in activity.attachments:
            if attachment.source_kind == "pendingUpload" and attachment.resolved_url:
                self.attachments.release_handle(attachment.resolved_url)

    def _commit(
        self,
        action: ActionTag,
        complaint: Complaint,
        previous: WorkflowStatus,
        target: WorkflowStatus,
        activities: list[Activity],
        fields: dict[str, Any] | None = None,
    ) -> Complaint:
        synthesized = activities
        current = self._current(complaint)
        if current is not complaint:
            # Refetched mid-call: apply onto the newer copy, minus what it already confirms.
            merged = reconcile(
                current.activities,
                activities,
                skew_seconds=self.cfg.reconcile_skew_seconds,
                ttl_seconds=self.cfg.provisional_ttl_seconds,
            )
            kept = {id(a) for a in merged}
            for activity in activities:
                if id(activity) not in kept:
                    self._release_files(activity)
            activities = [a for a in activities if id(a) in kept]
            complaint = current

        for name, value in (fields or {}).items():
            setattr(complaint, name, value)
        complaint.workflow_status = self.sm.transition(previous, target)
        # Oldest first in, so the newest ends up on top.
        for activity in activities:
            complaint.activities.insert(0, activity)
            if activity.actor_type == ActorType.AREA:
                complaint.area_actions.insert(0, activity)
        complaint.pending_action = _settled_lock(complaint)
        self.store.put(complaint)
        logger.info("%s complaint %s: %s -> %s", action.value, complaint.id, previous.value, target.value)

        event_type = ACTION_EVENTS[action]
        if action == ActionTag.REASSIGN and target == WorkflowStatus.ASSIGNED_TO_AREA:
            event_type = ACTION_EVENTS[ActionTag.ASSIGN]
        payload: dict[str, Any] = {
            "from": previous.value,
            "to": target.value,
            "attachments": [a.label for act in synthesized for a in act.attachments],
        }
        if event_type == "complaint.assigned":
            payload["assigned_to"] = "*" if complaint.assign_all else complaint.assigned_to
        self._publish(event_type, complaint, payload)
        return complaint

    def _publish(
        self,
        event_type: str,
        complaint: Complaint,
        payload: dict[str, Any],
        reason: str | None = None,
    ) -> None:
        envelope = build_event_envelope(
            event_type=event_type,
            complaint_id=complaint.id,
            actor_type=self.ctx.actor_type.value,
            actor_id=str(self.ctx.user_id),
            payload=payload,
            reason=reason,
        )
        self.bus.publish(event_type, envelope)
