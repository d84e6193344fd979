"""Tests for the case workflow: milestones, approvals, notes, documents, disputes."""

import uuid
from collections.abc import Awaitable, Callable
from decimal import Decimal

import pytest
from httpx import AsyncClient

from tests.conftest import DISPUTE, Actor, complete_milestone, open_case, signed
from visaflow.models.user import UserRole


def _active_flags(case: dict) -> list[bool]:
    return [m["is_active"] for m in case["milestones"]]


async def _approve(client: AsyncClient, owner: Actor, case_id: str, index: int, feedback: str | None = None):  # type: ignore[no-untyped-def]
    body = {"client_feedback": feedback} if feedback else {}
    return await signed(client, owner, "PUT", f"/cases/{case_id}/milestones/{index}/approve", body)


# --- Reads ---


@pytest.mark.asyncio
async def test_list_cases_per_role(
    client: AsyncClient,
    make_user: Callable[..., Awaitable[Actor]],
    client_user: Actor,
    agent_user: Actor,
    admin_user: Actor,
) -> None:
    await open_case(client, client_user, agent_user)
    other_agent = await make_user(UserRole.AGENT)
    await open_case(client, client_user, other_agent)

    resp = await signed(client, client_user, "GET", "/cases")
    assert resp.json()["data"]["total"] == 2
    resp = await signed(client, agent_user, "GET", "/cases")
    assert resp.json()["data"]["total"] == 1
    resp = await signed(client, admin_user, "GET", "/cases")
    assert resp.json()["data"]["total"] == 2

    resp = await signed(client, other_agent, "GET", "/cases/active")
    assert resp.status_code == 200
    assert len(resp.json()["data"]) == 1


@pytest.mark.asyncio
async def test_get_case_access(
    client: AsyncClient,
    make_user: Callable[..., Awaitable[Actor]],
    client_user: Actor,
    agent_user: Actor,
    admin_user: Actor,
) -> None:
    funded = await open_case(client, client_user, agent_user)
    case_id = funded["case"]["case_id"]

    for actor in (client_user, agent_user, admin_user):
        resp = await signed(client, actor, "GET", f"/cases/{case_id}")
        assert resp.status_code == 200

    stranger = await make_user(UserRole.CLIENT)
    resp = await signed(client, stranger, "GET", f"/cases/{case_id}")
    assert resp.status_code == 403

    resp = await signed(client, client_user, "GET", f"/cases/{uuid.uuid4()}")
    assert resp.status_code == 404
    assert resp.json()["error"] == "Case not found"


@pytest.mark.asyncio
async def test_case_timeline_and_payment_summary(
    client: AsyncClient, client_user: Actor, agent_user: Actor,
) -> None:
    funded = await open_case(client, client_user, agent_user)
    case_id = funded["case"]["case_id"]
    await complete_milestone(client, agent_user, case_id, 0)
    await _approve(client, client_user, case_id, 0)

    resp = await signed(client, client_user, "GET", f"/cases/{case_id}/timeline")
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["case_id"] == case_id
    assert [t["action"] for t in data["timeline"]] == [
        "case_created", "milestone_updated", "milestone_approved",
    ]
    summary = data["payment_summary"]
    assert Decimal(summary["total_paid"]) == Decimal("400.00")
    assert Decimal(summary["total_amount"]) == Decimal("1000.00")
    assert Decimal(summary["remaining_amount"]) == Decimal("600.00")
    assert summary["payments_count"] == 1


# --- Milestone updates ---


@pytest.mark.asyncio
async def test_agent_updates_milestone(
    client: AsyncClient, client_user: Actor, agent_user: Actor,
) -> None:
    funded = await open_case(client, client_user, agent_user)
    case_id = funded["case"]["case_id"]

    resp = await signed(client, agent_user, "PUT", f"/cases/{case_id}/milestones/1", {
        "status": "in-progress",
        "agent_notes": "Collecting employer letters",
        "submitted_files": [{"name": "draft.pdf", "url": "https://files.example.com/draft.pdf"}],
    })
    assert resp.status_code == 200
    case = resp.json()["data"]
    second = case["milestones"][1]
    assert second["status"] == "in-progress"
    assert second["started_at"] is not None
    assert second["agent_notes"] == "Collecting employer letters"
    assert second["submitted_files"][0]["name"] == "draft.pdf"
    assert second["submitted_files"][0]["uploaded_at"]
    # The active pointer follows the first unapproved milestone, not the latest update
    assert _active_flags(case) == [True, False]
    assert case["timeline"][-1]["action"] == "milestone_updated"
    assert case["timeline"][-1]["data"] == {"milestone_index": 1, "from": "pending", "to": "in-progress"}

    resp = await signed(client, client_user, "GET", "/notifications")
    assert "case:status_changed" in [n["event"] for n in resp.json()["data"]["items"]]


@pytest.mark.asyncio
async def test_milestone_timestamps_set_once(
    client: AsyncClient, client_user: Actor, agent_user: Actor,
) -> None:
    funded = await open_case(client, client_user, agent_user)
    case_id = funded["case"]["case_id"]
    started = funded["case"]["milestones"][0]["started_at"]

    first = await complete_milestone(client, agent_user, case_id, 0)
    completed = first["milestones"][0]["completed_at"]
    assert completed is not None

    resp = await signed(client, agent_user, "PUT", f"/cases/{case_id}/milestones/0", {"status": "in-progress"})
    assert resp.json()["data"]["milestones"][0]["started_at"] == started
    again = await complete_milestone(client, agent_user, case_id, 0)
    assert again["milestones"][0]["started_at"] == started
    assert again["milestones"][0]["completed_at"] == completed


@pytest.mark.asyncio
async def test_update_milestone_validation(
    client: AsyncClient, client_user: Actor, agent_user: Actor,
) -> None:
    funded = await open_case(client, client_user, agent_user)
    case_id = funded["case"]["case_id"]

    resp = await signed(client, agent_user, "PUT", f"/cases/{case_id}/milestones/0", {"status": "approved"})
    assert resp.status_code == 400
    assert resp.json()["error"].startswith("Invalid milestone status")

    resp = await signed(client, agent_user, "PUT", f"/cases/{case_id}/milestones/0", {"status": "done"})
    assert resp.status_code == 400

    resp = await signed(client, agent_user, "PUT", f"/cases/{case_id}/milestones/5", {"status": "completed"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid milestone index"


@pytest.mark.asyncio
async def test_only_assigned_agent_updates_milestones(
    client: AsyncClient,
    make_user: Callable[..., Awaitable[Actor]],
    client_user: Actor,
    agent_user: Actor,
) -> None:
    funded = await open_case(client, client_user, agent_user)
    case_id = funded["case"]["case_id"]
    other_agent = await make_user(UserRole.AGENT)

    resp = await signed(client, other_agent, "PUT", f"/cases/{case_id}/milestones/0", {"status": "completed"})
    assert resp.status_code == 403
    resp = await signed(client, client_user, "PUT", f"/cases/{case_id}/milestones/0", {"status": "completed"})
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_approved_milestone_is_frozen(
    client: AsyncClient, client_user: Actor, agent_user: Actor,
) -> None:
    funded = await open_case(client, client_user, agent_user)
    case_id = funded["case"]["case_id"]
    await complete_milestone(client, agent_user, case_id, 0)
    await _approve(client, client_user, case_id, 0)

    resp = await signed(client, agent_user, "PUT", f"/cases/{case_id}/milestones/0", {"status": "in-progress"})
    assert resp.status_code == 409
    assert resp.json()["error"] == "Cannot update an approved milestone"


# --- Approve / reject ---


@pytest.mark.asyncio
async def test_approve_requires_completed_milestone(
    client: AsyncClient, client_user: Actor, agent_user: Actor,
) -> None:
    funded = await open_case(client, client_user, agent_user)
    resp = await _approve(client, client_user, funded["case"]["case_id"], 0)
    assert resp.status_code == 409
    assert "in-progress" in resp.json()["error"]


@pytest.mark.asyncio
async def test_approve_releases_escrow_milestone(
    client: AsyncClient, client_user: Actor, agent_user: Actor,
) -> None:
    funded = await open_case(client, client_user, agent_user)
    case_id = funded["case"]["case_id"]
    escrow_id = funded["escrow"]["escrow_id"]

    done = await complete_milestone(client, agent_user, case_id, 0)
    assert done["milestones"][0]["status"] == "completed"
    resp = await signed(client, client_user, "GET", "/notifications")
    assert "milestone:needs_approval" in [n["event"] for n in resp.json()["data"]["items"]]

    resp = await _approve(client, client_user, case_id, 0, "Great work")
    assert resp.status_code == 200
    case = resp.json()["data"]
    first = case["milestones"][0]
    assert first["status"] == "approved"
    assert first["is_paid"] is True
    assert first["client_feedback"] == "Great work"
    assert first["approved_at"] is not None
    assert _active_flags(case) == [False, True]
    assert case["current_milestone"] == 2
    assert case["progress"] == 50
    assert Decimal(case["paid_amount"]) == Decimal("400.00")
    assert case["status"] == "active"

    resp = await signed(client, client_user, "GET", f"/escrow/{escrow_id}")
    escrow = resp.json()["data"]
    assert escrow["status"] == "in_progress"
    assert [m["status"] for m in escrow["milestones"]] == ["completed", "pending"]
    assert escrow["timeline"][-1]["event"] == "milestone_released"
    assert escrow["timeline"][-1]["data"]["case_id"] == case_id

    resp = await signed(client, agent_user, "GET", "/notifications")
    assert "milestone:payment_released" in [n["event"] for n in resp.json()["data"]["items"]]

    resp = await _approve(client, client_user, case_id, 0)
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_only_client_approves(
    client: AsyncClient, client_user: Actor, agent_user: Actor,
) -> None:
    funded = await open_case(client, client_user, agent_user)
    case_id = funded["case"]["case_id"]
    await complete_milestone(client, agent_user, case_id, 0)
    resp = await _approve(client, agent_user, case_id, 0)
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_approving_final_milestone_completes_case_once(
    client: AsyncClient, client_user: Actor, agent_user: Actor,
) -> None:
    funded = await open_case(client, client_user, agent_user, amounts=("100.00", "200.00", "300.00"))
    case_id = funded["case"]["case_id"]

    for index in range(3):
        await complete_milestone(client, agent_user, case_id, index)
        resp = await _approve(client, client_user, case_id, index)
        assert resp.status_code == 200, resp.text

    case = resp.json()["data"]
    assert case["status"] == "completed"
    assert case["progress"] == 100
    assert Decimal(case["paid_amount"]) == Decimal("600.00")
    assert case["actual_completion_date"] is not None
    assert _active_flags(case) == [False, False, True]
    assert case["current_milestone"] == 3
    assert [t["action"] for t in case["timeline"]].count("case_completed") == 1

    resp = await signed(client, client_user, "GET", f"/escrow/{funded['escrow']['escrow_id']}")
    escrow = resp.json()["data"]
    assert escrow["status"] == "completed"
    assert Decimal(escrow["remaining_amount"]) == Decimal("0.00")


@pytest.mark.asyncio
async def test_progress_rounds_half_up(
    client: AsyncClient, client_user: Actor, agent_user: Actor,
) -> None:
    funded = await open_case(client, client_user, agent_user, amounts=("100.00", "100.00", "100.00"))
    case_id = funded["case"]["case_id"]
    await complete_milestone(client, agent_user, case_id, 0)
    first = (await _approve(client, client_user, case_id, 0)).json()["data"]
    assert first["progress"] == 33
    await complete_milestone(client, agent_user, case_id, 1)
    second = (await _approve(client, client_user, case_id, 1)).json()["data"]
    assert second["progress"] == 67


@pytest.mark.asyncio
async def test_reject_milestone(client: AsyncClient, client_user: Actor, agent_user: Actor) -> None:
    funded = await open_case(client, client_user, agent_user)
    case_id = funded["case"]["case_id"]
    path = f"/cases/{case_id}/milestones/0/reject"

    resp = await signed(client, client_user, "PUT", path, {"client_feedback": "Please redo the forms"})
    assert resp.status_code == 409

    await complete_milestone(client, agent_user, case_id, 0)
    resp = await signed(client, client_user, "PUT", path, {"client_feedback": "no"})
    assert resp.status_code == 400

    resp = await signed(client, client_user, "PUT", path, {"client_feedback": "Please redo the forms"})
    assert resp.status_code == 200
    case = resp.json()["data"]
    assert case["milestones"][0]["status"] == "rejected"
    assert case["milestones"][0]["client_feedback"] == "Please redo the forms"
    assert _active_flags(case) == [True, False]
    assert case["timeline"][-1]["action"] == "milestone_rejected"

    # The agent can rework a rejected milestone
    again = await complete_milestone(client, agent_user, case_id, 0)
    assert again["milestones"][0]["status"] == "completed"

    resp = await signed(client, agent_user, "GET", "/notifications")
    assert "case:status_changed" in [n["event"] for n in resp.json()["data"]["items"]]


# --- Notes and documents ---


@pytest.mark.asyncio
async def test_notes_overwrite_per_side(
    client: AsyncClient, client_user: Actor, agent_user: Actor, admin_user: Actor,
) -> None:
    funded = await open_case(client, client_user, agent_user)
    case_id = funded["case"]["case_id"]

    await signed(client, client_user, "POST", f"/cases/{case_id}/notes", {"note": "First note"})
    resp = await signed(client, client_user, "POST", f"/cases/{case_id}/notes", {"note": "Second note"})
    assert resp.status_code == 200
    case = resp.json()["data"]
    assert case["client_notes"] == "Second note"
    assert case["agent_notes"] is None

    resp = await signed(client, agent_user, "POST", f"/cases/{case_id}/notes", {"note": "Agent side"})
    case = resp.json()["data"]
    assert case["client_notes"] == "Second note"
    assert case["agent_notes"] == "Agent side"
    assert [t["action"] for t in case["timeline"]].count("note_added") == 3

    resp = await signed(client, admin_user, "POST", f"/cases/{case_id}/notes", {"note": "Admin"})
    assert resp.status_code == 403

    resp = await signed(client, agent_user, "POST", f"/cases/{case_id}/notes", {"note": ""})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_upload_document(
    client: AsyncClient, client_user: Actor, agent_user: Actor, admin_user: Actor,
) -> None:
    funded = await open_case(client, client_user, agent_user)
    case_id = funded["case"]["case_id"]
    document = {"name": "passport.pdf", "url": "https://files.example.com/passport.pdf", "type": "passport"}

    resp = await signed(client, client_user, "POST", f"/cases/{case_id}/documents", document)
    assert resp.status_code == 201
    case = resp.json()["data"]
    assert len(case["documents"]) == 1
    assert case["documents"][0]["name"] == "passport.pdf"
    assert case["documents"][0]["uploaded_by"] == str(client_user.user_id)
    assert case["timeline"][-1]["action"] == "document_uploaded"

    resp = await signed(client, agent_user, "GET", "/notifications")
    assert "document:new" in [n["event"] for n in resp.json()["data"]["items"]]

    resp = await signed(client, admin_user, "POST", f"/cases/{case_id}/documents", document)
    assert resp.status_code == 403


# --- Disputes ---


@pytest.mark.asyncio
async def test_case_dispute_holds_escrow(
    client: AsyncClient, client_user: Actor, agent_user: Actor, admin_user: Actor,
) -> None:
    funded = await open_case(client, client_user, agent_user)
    case_id = funded["case"]["case_id"]

    resp = await signed(client, client_user, "POST", f"/cases/{case_id}/dispute", DISPUTE)
    assert resp.status_code == 200
    case = resp.json()["data"]
    assert case["status"] == "disputed"

    resp = await signed(client, client_user, "GET", f"/escrow/{funded['escrow']['escrow_id']}")
    assert resp.json()["data"]["status"] == "disputed"

    resp = await signed(client, agent_user, "PUT", f"/cases/{case_id}/milestones/0", {"status": "completed"})
    assert resp.status_code == 409

    resp = await signed(client, admin_user, "POST", f"/cases/{case_id}/dispute", DISPUTE)
    assert resp.status_code == 403

    resp = await signed(client, agent_user, "POST", f"/cases/{case_id}/dispute", DISPUTE)
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_approve_blocked_while_disputed(
    client: AsyncClient, client_user: Actor, agent_user: Actor,
) -> None:
    funded = await open_case(client, client_user, agent_user)
    case_id = funded["case"]["case_id"]
    await complete_milestone(client, agent_user, case_id, 0)
    await signed(client, agent_user, "POST", f"/cases/{case_id}/dispute", DISPUTE)

    resp = await _approve(client, client_user, case_id, 0)
    assert resp.status_code == 409
