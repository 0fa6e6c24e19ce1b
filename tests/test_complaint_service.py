from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from portal.domain.state_machine import GuardViolation
from portal.domain.states import ActionTag, WorkflowStatus
from portal.infra.portal_client import PortalClientError
from portal.timeline.actors import extract_user_id


def _event_types(service):
    return [e["event_type"] for e in service.bus.envelopes]


def test_full_lifecycle(backend, make_service, hq_ctx, area_ctx, make_upload, run):
    backend.add_complaint("1")
    hq = make_service(hq_ctx)
    area = make_service(area_ctx)

    complaint = run(hq.load_complaint("1"))
    assert complaint.workflow_status == WorkflowStatus.NEW
    assert not complaint.is_assigned

    run(hq.assign("1", assignee="42"))
    assert complaint.workflow_status == WorkflowStatus.ASSIGNED_TO_AREA
    assert extract_user_id(complaint.assigned_to) == "42"
    assert complaint.activities[0].activity_type == "ASSIGN"
    assert complaint.activities[0].provisional
    assert complaint.pending_action is None

    mine = run(area.load_complaint("1"))
    run(area.notify("1", note="Replaced the railing", attachments=[make_upload("railing.png")]))
    assert mine.workflow_status == WorkflowStatus.HQ_REVIEW
    resolution = mine.activities[0]
    assert resolution.activity_type == "AREA_SUBMIT_RESOLUTION"
    assert resolution.description == "Replaced the railing"
    assert [(a.label, a.resolved_url, a.source_kind) for a in resolution.attachments] == [
        ("railing.png", "/storage/complaints/1/railing.png", "path")
    ]
    assert mine.area_actions[0] is resolution

    refreshed = run(hq.load_complaint("1"))
    assert refreshed.workflow_status == WorkflowStatus.HQ_REVIEW
    assert not any(a.provisional for a in refreshed.activities)
    assert [a.activity_type for a in refreshed.activities] == ["AREA_SUBMIT_RESOLUTION", "ASSIGN"]

    report = make_upload("final.pdf", content_type="application/pdf")
    run(hq.close("1", note="Railing replaced and inspected", attachments=[report]))
    assert refreshed.is_closed
    assert refreshed.pending_action == ActionTag.CLOSE
    assert refreshed.action_taken.text == "Railing replaced and inspected"
    assert [a.label for a in refreshed.action_taken.attachments] == ["final.pdf"]

    run(hq.reopen("1"))
    assert refreshed.workflow_status == WorkflowStatus.OPEN
    assert refreshed.assigned_to is None
    assert refreshed.pending_action is None
    assert refreshed.action_taken is None

    run(hq.assign("1", assign_all=True))
    assert refreshed.assign_all
    assert _event_types(hq) == [
        "complaint.assigned",
        "complaint.closed",
        "complaint.reopened",
        "complaint.assigned",
    ]
    assert _event_types(area) == ["complaint.resolution_submitted"]


def test_assign_rejected_without_network_call(backend, make_service, hq_ctx, run):
    backend.add_complaint("1", workflowstatus="ASSIGNED_TO_AREA", assignedto=42)
    hq = make_service(hq_ctx)
    complaint = run(hq.load_complaint("1"))

    with pytest.raises(GuardViolation) as err:
        run(hq.assign("1", assignee="43"))

    assert err.value.reason == "assigned"
    assert backend.mutations() == []
    assert complaint.workflow_status == WorkflowStatus.ASSIGNED_TO_AREA
    assert complaint.pending_action is None
    assert _event_types(hq) == ["action.rejected"]


def test_failed_mutation_releases_lock_and_keeps_state(backend, make_service, hq_ctx, run):
    backend.add_complaint("1")
    backend.fail("/decision", 500, "Database unavailable")
    hq = make_service(hq_ctx)
    complaint = run(hq.load_complaint("1"))

    with pytest.raises(PortalClientError) as err:
        run(hq.close("1", note="Done"))

    assert str(err.value) == "Database unavailable"
    assert err.value.status == 500
    assert complaint.workflow_status == WorkflowStatus.NEW
    assert complaint.activities == []
    assert complaint.pending_action is None
    assert _event_types(hq) == ["mutation.failed"]

    backend.failures.clear()
    run(hq.close("1", note="Done"))
    assert complaint.is_closed


def test_close_lock_retained_until_reopen(backend, make_service, hq_ctx, run):
    backend.add_complaint("1")
    hq = make_service(hq_ctx)
    complaint = run(hq.load_complaint("1"))
    run(hq.close("1", note="Duplicate of #2"))

    with pytest.raises(GuardViolation) as err:
        run(hq.begin_action("1", ActionTag.ASSIGN))
    assert err.value.reason == "closed"
    with pytest.raises(GuardViolation):
        run(hq.close("1", note="Again"))

    run(hq.begin_action("1", ActionTag.REOPEN))
    assert complaint.pending_action == ActionTag.REOPEN
    run(hq.cancel_action("1", ActionTag.REOPEN))
    assert complaint.pending_action == ActionTag.CLOSE
    assert len(backend.mutations()) == 1


def test_dialog_lock_blocks_other_actions_until_cancelled(backend, make_service, hq_ctx, run):
    backend.add_complaint("1")
    hq = make_service(hq_ctx)
    complaint = run(hq.load_complaint("1"))

    run(hq.begin_action("1", ActionTag.CLOSE))
    assert complaint.pending_action == ActionTag.CLOSE
    with pytest.raises(GuardViolation) as err:
        run(hq.assign("1", assignee="42"))
    assert err.value.reason == "pending"

    run(hq.cancel_action("1", ActionTag.CLOSE))
    assert complaint.pending_action is None
    assert backend.mutations() == []
    assert "action.cancelled" in _event_types(hq)


def test_second_submit_rejected_while_first_in_flight(backend, make_service, hq_ctx, run):
    backend.add_complaint("1")
    reasons = []

    async def handler(request):
        if request.method == "POST":
            with pytest.raises(GuardViolation) as err:
                await hq.close("1", note="Again")
            reasons.append(err.value.reason)
        return backend.handler(request)

    hq = make_service(hq_ctx, transport=httpx.MockTransport(handler))
    run(hq.load_complaint("1"))
    run(hq.close("1", note="Done"))

    assert reasons == ["in_flight"]
    assert len(backend.mutations()) == 1


def test_body_is_json_unless_note_or_files(backend, make_service, hq_ctx, make_upload, run):
    backend.add_complaint("1")
    backend.add_complaint("2")
    hq = make_service(hq_ctx)
    run(hq.load_complaint("1"))
    run(hq.load_complaint("2"))

    run(hq.assign("1", assignee="42"))
    run(hq.assign("2", assignee="42", note="Urgent"))
    run(hq.close("1", note="Fixed", attachments=[make_upload("after.png")]))

    plain, with_note, with_file = backend.mutations()
    assert plain.headers["content-type"] == "application/json"
    assert json.loads(plain.content) == {"assignedto": 42}
    assert b" " not in plain.content
    assert with_note.headers["content-type"].startswith("multipart/form-data")
    assert b'name="note"' in with_note.content
    assert with_file.headers["content-type"].startswith("multipart/form-data")
    assert b'filename="after.png"' in with_file.content
    assert with_file.headers["authorization"] == "Bearer hq-token"


def _in_review(backend):
    backend.add_complaint(
        "1",
        workflowstatus="HQ_REVIEW",
        assignedto=42,
        activities=[
            {"id": 2, "activitytype": "AREA_SUBMIT_RESOLUTION", "actortype": "AREA", "actorid": 42, "createdat": 20, "description": "Done"},
            {"id": 1, "activitytype": "ASSIGN", "actortype": "HQ", "actorid": 7, "createdat": 10},
        ],
    )


def test_reassign_sends_back_to_area(backend, make_service, hq_ctx, run):
    _in_review(backend)
    hq = make_service(hq_ctx)
    complaint = run(hq.load_complaint("1"))

    run(hq.reassign("1", note="Photos are unclear"))

    assert complaint.workflow_status == WorkflowStatus.BACK_TO_AREA
    assert extract_user_id(complaint.assigned_to) == "42"
    assert complaint.activities[0].activity_type == "BACK_TO_AREA"
    assert complaint.activities[0].description == "Photos are unclear"
    assert complaint.pending_action is None


def test_reassign_with_assignment(backend, make_service, hq_ctx, run):
    _in_review(backend)
    hq = make_service(hq_ctx)
    complaint = run(hq.load_complaint("1"))

    run(hq.reassign("1", note="Wrong officer", assignee="43"))

    assert complaint.workflow_status == WorkflowStatus.ASSIGNED_TO_AREA
    assert extract_user_id(complaint.assigned_to) == "43"
    assert [a.activity_type for a in complaint.activities[:2]] == ["ASSIGN", "BACK_TO_AREA"]
    assert [r.url.path for r in backend.mutations()] == [
        "/api/hq/complaints/1/decision",
        "/api/hq/complaints/1/assign",
    ]
    assert _event_types(hq)[-1] == "complaint.assigned"


def test_reassign_keeps_send_back_when_assignment_fails(backend, make_service, hq_ctx, run):
    _in_review(backend)
    backend.fail("/assign", 422, "Officer not in area")
    hq = make_service(hq_ctx)
    complaint = run(hq.load_complaint("1"))

    with pytest.raises(PortalClientError):
        run(hq.reassign("1", note="Wrong officer", assignee="99"))

    assert complaint.workflow_status == WorkflowStatus.BACK_TO_AREA
    assert complaint.activities[0].activity_type == "BACK_TO_AREA"
    assert complaint.pending_action is None
    assert _event_types(hq) == ["complaint.sent_back", "mutation.failed"]


def test_detail_fetch_failure_falls_back_to_local_copy(backend, make_service, hq_ctx, run):
    backend.add_complaint("1")
    hq = make_service(hq_ctx)
    complaint = run(hq.load_complaint("1"))

    backend.fail("/complaints/1", 503, "Maintenance")
    assert run(hq.load_complaint("1")) is complaint

    with pytest.raises(PortalClientError) as err:
        run(hq.load_complaint("99"))
    assert err.value.status == 404


def test_refetch_keeps_unconfirmed_provisional_entries(backend, make_service, hq_ctx, run):
    backend.add_complaint("1")
    backend.record_history = False
    backend.wrap_detail = True
    hq = make_service(hq_ctx)
    run(hq.load_complaint("1"))
    run(hq.close("1", note="Closed after inspection"))

    refreshed = run(hq.load_complaint("1"))

    assert refreshed.is_closed
    assert refreshed.pending_action == ActionTag.CLOSE
    assert [a.provisional for a in refreshed.activities] == [True]
    assert refreshed.action_taken.text == "Closed after inspection"
    assert _event_types(hq)[-1] == "timeline.reconciled"


def test_area_officer_reads_area_endpoint(backend, make_service, area_ctx, run):
    backend.add_complaint("1", workflowstatus="ASSIGNED_TO_AREA", assignedto=42)
    area = make_service(area_ctx)
    run(area.load_complaint("1"))
    assert backend.requests[-1].url.path == "/api/area/complaints/1"

    with pytest.raises(GuardViolation) as err:
        run(area.close("1", note="Not mine to close"))
    assert err.value.reason == "role"


def test_directory_refresh_and_labels(backend, make_service, hq_ctx, area_ctx, run):
    backend.add_complaint("1", workflowstatus="ASSIGNED_TO_AREA", assignedto="user_id=42", assignedby=7)
    hq = make_service(hq_ctx)
    assert run(hq.refresh_directory()) == {"hq_users": 1, "area_officers": 2}

    view = run(hq.view("1"))
    assert view["assigned_to"] == "J. Singh (id:42)"
    assert view["assigned_by"] == "HQ Admin (id:7)"

    backend.fail("/api/hq/users", 500)
    assert run(hq.refresh_directory())["hq_users"] == 0
    assert run(hq.view("1"))["assigned_by"] == "HQ Admin (id:7)"

    area = make_service(area_ctx)
    assert run(area.refresh_directory()) == {"hq_users": 0, "area_officers": 2}
    assert backend.requests[-1].url.params["areaid"] == "3"


def test_summary_counts(backend, make_service, hq_ctx, run):
    backend.add_complaint("1")
    backend.add_complaint("2", workflowstatus="ASSIGNED_TO_AREA", assignedto=42)
    backend.add_complaint("3", isclosed=True)
    hq = make_service(hq_ctx)
    for cid in ("1", "2", "3"):
        run(hq.load_complaint(cid))
    assert hq.summary() == {"total": 3, "assigned_open": 1, "unassigned_open": 1, "closed": 1}


def test_close_carries_only_the_files_sent_with_it(backend, make_service, hq_ctx, make_upload, run):
    backend.add_complaint("1", attachments=["complaints/1/citizen_photo.jpg"])
    backend.echo_decision = True
    hq = make_service(hq_ctx)
    complaint = run(hq.load_complaint("1"))
    assert [a.label for a in complaint.attachments] == ["citizen_photo.jpg"]

    run(hq.close("1", note="Resolved, PPE issued"))
    assert complaint.activities[0].attachments == []
    assert complaint.action_taken.attachments == []

    run(hq.reopen("1"))
    report = make_upload("final.pdf", content_type="application/pdf")
    run(hq.close("1", note="Closed again", attachments=[report]))
    assert [(a.label, a.source_kind) for a in complaint.action_taken.attachments] == [("final.pdf", "pendingUpload")]


def test_cancelled_call_releases_lock(backend, make_service, hq_ctx, run):
    backend.add_complaint("1")
    hang = {"on": True}

    async def handler(request):
        if request.method == "POST" and hang["on"]:
            hang["started"].set()
            await asyncio.sleep(3600)
        return backend.handler(request)

    hq = make_service(hq_ctx, transport=httpx.MockTransport(handler))
    complaint = run(hq.load_complaint("1"))

    async def cancel_close():
        hang["started"] = asyncio.Event()
        task = asyncio.create_task(hq.close("1", note="Done"))
        await hang["started"].wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    run(cancel_close())
    assert complaint.workflow_status == WorkflowStatus.NEW
    assert complaint.pending_action is None
    assert not hq.busy
    assert _event_types(hq)[-1] == "mutation.failed"

    hang["on"] = False
    run(hq.assign("1", assignee="42"))
    assert complaint.workflow_status == WorkflowStatus.ASSIGNED_TO_AREA


class TransportBroke(Exception):
    pass


def test_unexpected_error_releases_lock(backend, make_service, hq_ctx, run):
    backend.add_complaint("1")

    def handler(request):
        if request.method == "POST":
            raise TransportBroke("socket closed by peer")
        return backend.handler(request)

    hq = make_service(hq_ctx, transport=httpx.MockTransport(handler))
    complaint = run(hq.load_complaint("1"))

    with pytest.raises(TransportBroke):
        run(hq.close("1", note="Done"))

    assert complaint.pending_action is None
    assert hq.bus.envelopes[-1]["payload"]["error"] == "socket closed by peer"


def test_refetch_during_call_receives_the_commit(backend, make_service, hq_ctx, run):
    backend.add_complaint("1")

    async def handler(request):
        response = backend.handler(request)
        if request.method == "POST":
            await hq.load_complaint("1")
        return response

    hq = make_service(hq_ctx, transport=httpx.MockTransport(handler))
    stale = run(hq.load_complaint("1"))
    closed = run(hq.close("1", note="Done"))

    assert closed is hq.store.get("1")
    assert closed is not stale
    assert closed.is_closed
    assert closed.pending_action == ActionTag.CLOSE
    assert [(a.activity_type, a.provisional) for a in closed.activities] == [("HQ_CLOSE_ACTION", False)]
    assert closed.action_taken.text == "Done"


def test_confirmed_entries_release_upload_handles(backend, make_service, hq_ctx, make_upload, run):
    backend.add_complaint("1")
    hq = make_service(hq_ctx)
    run(hq.load_complaint("1"))

    run(hq.close("1", note="Done", attachments=[make_upload("final.pdf", content_type="application/pdf")]))
    assert hq.attachments.live_handles == 1

    refreshed = run(hq.load_complaint("1"))
    assert not any(a.provisional for a in refreshed.activities)
    assert hq.attachments.live_handles == 0
