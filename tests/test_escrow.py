"""Tests for escrow: fund, release, hold, escalate, resolve, refund, cancel, reads."""

import uuid
from collections.abc import Awaitable, Callable
from decimal import Decimal
from unittest.mock import patch

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tests.conftest import (
    DISPUTE,
    Actor,
    RecordingEmailSender,
    RecordingGateway,
    create_visa_request,
    open_case,
    signed,
    submit_proposal,
)
from visaflow.errors import Conflict
from visaflow.models.case import Case
from visaflow.models.escrow import Escrow, EscrowStatus
from visaflow.models.proposal import Proposal, ProposalStatus
from visaflow.models.user import UserRole
from visaflow.schemas.escrow import FundEscrow
from visaflow.services import escrow as escrow_service
from visaflow.services.notifications import Notifier


async def _fund(client: AsyncClient, owner: Actor, proposal: dict, amount: str | None = None):  # type: ignore[no-untyped-def]
    return await signed(client, owner, "POST", "/escrow/fund", {
        "proposal_id": proposal["proposal_id"],
        "amount": amount or proposal["budget"],
        "payment_method": "stripe",
    })


async def _escrow(client: AsyncClient, actor: Actor, escrow_id: str) -> dict:
    resp = await signed(client, actor, "GET", f"/escrow/{escrow_id}")
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]


async def _case(client: AsyncClient, actor: Actor, case_id: str) -> dict:
    resp = await signed(client, actor, "GET", f"/cases/{case_id}")
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]


async def _events(client: AsyncClient, actor: Actor) -> list[str]:
    resp = await signed(client, actor, "GET", "/notifications", params={"limit": 50})
    return [n["event"] for n in resp.json()["data"]["items"]]


# --- Fund ---


@pytest.mark.asyncio
async def test_fund_escrow(
    client: AsyncClient,
    client_user: Actor,
    agent_user: Actor,
    gateway: RecordingGateway,
    email_sender: RecordingEmailSender,
) -> None:
    request = await create_visa_request(client, client_user)
    proposal = await submit_proposal(client, agent_user, request["request_id"])

    resp = await _fund(client, client_user, proposal)
    assert resp.status_code == 201
    body = resp.json()
    assert body["success"] is True
    escrow, case = body["data"]["escrow"], body["data"]["case"]

    assert escrow["status"] == "deposited"
    assert Decimal(escrow["amount"]) == Decimal("1000.00")
    assert escrow["agent_id"] == str(agent_user.user_id)
    assert escrow["payment_intent_id"].startswith("pi_demo_")
    assert {k: Decimal(v) for k, v in escrow["fees"].items()} == {
        "platform": Decimal("50.00"), "payment": Decimal("29.00"), "total": Decimal("79.00"),
    }
    assert [m["status"] for m in escrow["milestones"]] == ["pending", "pending"]
    assert sum(Decimal(m["amount"]) for m in escrow["milestones"]) == Decimal(escrow["amount"])
    assert [e["event"] for e in escrow["timeline"]] == ["escrow_funded"]
    assert escrow["refund_details"] is None

    assert case["status"] == "active"
    assert case["escrow_id"] == escrow["escrow_id"]
    assert case["priority"] == "high"
    assert [m["status"] for m in case["milestones"]] == ["in-progress", "pending"]
    assert [m["is_active"] for m in case["milestones"]] == [True, False]
    assert case["milestones"][0]["started_at"] is not None
    assert [m["escrow_milestone_id"] for m in case["milestones"]] == [
        m["milestone_id"] for m in escrow["milestones"]
    ]
    assert case["progress"] == 0
    assert case["current_milestone"] == 1
    assert [e["action"] for e in case["timeline"]] == ["case_created"]

    assert gateway.charges == [(Decimal("1000.00"), f"fund:{escrow['escrow_id']}")]

    resp = await signed(client, client_user, "GET", f"/proposals/{proposal['proposal_id']}")
    assert resp.json()["data"]["status"] == "accepted"
    resp = await signed(client, client_user, "GET", f"/visa-requests/{request['request_id']}")
    assert resp.json()["data"]["status"] == "in-progress"

    assert await _events(client, agent_user) == ["escrow:funded"]
    assert [to for to, _, _ in email_sender.sent] == [agent_user.email]


@pytest.mark.asyncio
async def test_fund_missing_proposal(client: AsyncClient, client_user: Actor) -> None:
    resp = await _fund(client, client_user, {"proposal_id": str(uuid.uuid4()), "budget": "10.00"})
    assert resp.status_code == 404
    assert resp.json() == {"success": False, "error": "Proposal not found"}


@pytest.mark.asyncio
async def test_fund_twice_conflict(
    client: AsyncClient, client_user: Actor, agent_user: Actor, gateway: RecordingGateway,
) -> None:
    request = await create_visa_request(client, client_user)
    proposal = await submit_proposal(client, agent_user, request["request_id"])
    assert (await _fund(client, client_user, proposal)).status_code == 201

    resp = await _fund(client, client_user, proposal)
    assert resp.status_code == 409
    assert resp.json()["error"] == "Escrow already exists for this proposal"
    assert len(gateway.charges) == 1


@pytest.mark.asyncio
async def test_fund_by_other_client_forbidden(
    client: AsyncClient,
    make_user: Callable[..., Awaitable[Actor]],
    client_user: Actor,
    agent_user: Actor,
) -> None:
    request = await create_visa_request(client, client_user)
    proposal = await submit_proposal(client, agent_user, request["request_id"])
    stranger = await make_user(UserRole.CLIENT)
    resp = await _fund(client, stranger, proposal)
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_agent_cannot_fund(client: AsyncClient, client_user: Actor, agent_user: Actor) -> None:
    request = await create_visa_request(client, client_user)
    proposal = await submit_proposal(client, agent_user, request["request_id"])
    resp = await _fund(client, agent_user, proposal)
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_fund_rejected_proposal_invalid_state(
    client: AsyncClient, client_user: Actor, agent_user: Actor,
) -> None:
    request = await create_visa_request(client, client_user)
    proposal = await submit_proposal(client, agent_user, request["request_id"])
    await signed(client, client_user, "PUT", f"/proposals/{proposal['proposal_id']}/reject")
    resp = await _fund(client, client_user, proposal)
    assert resp.status_code == 409
    assert "pending" in resp.json()["error"]


@pytest.mark.asyncio
async def test_fund_amount_must_match_milestones(
    client: AsyncClient, client_user: Actor, agent_user: Actor, gateway: RecordingGateway,
) -> None:
    request = await create_visa_request(client, client_user)
    proposal = await submit_proposal(client, agent_user, request["request_id"])
    resp = await _fund(client, client_user, proposal, amount="900.00")
    assert resp.status_code == 400
    assert gateway.charges == []


@pytest.mark.asyncio
async def test_fund_failure_rolls_back_and_refunds_charge(
    client: AsyncClient,
    db_session: AsyncSession,
    notifier: Notifier,
    client_user: Actor,
    agent_user: Actor,
    gateway: RecordingGateway,
) -> None:
    request = await create_visa_request(client, client_user)
    proposal = await submit_proposal(client, agent_user, request["request_id"])
    data = FundEscrow(proposal_id=proposal["proposal_id"], amount=Decimal("1000.00"))

    with patch.object(escrow_service, "_open_escrow", side_effect=RuntimeError("disk full")):
        with pytest.raises(RuntimeError):
            await escrow_service.fund_escrow(db_session, gateway, notifier, client_user.user_id, data)

    assert len(gateway.charges) == 1
    assert len(gateway.refunds) == 1
    intent_id, amount, key = gateway.refunds[0]
    assert amount == Decimal("1000.00")
    assert key == f"fund-compensation:{intent_id}"
    assert (await db_session.execute(select(func.count()).select_from(Escrow))).scalar_one() == 0
    assert (await db_session.execute(select(func.count()).select_from(Case))).scalar_one() == 0
    stored = await db_session.get(Proposal, uuid.UUID(proposal["proposal_id"]))
    assert stored is not None
    assert stored.status == ProposalStatus.PENDING


@pytest.mark.asyncio
async def test_fund_commit_conflict_refunds_charge(
    client: AsyncClient,
    db_session: AsyncSession,
    notifier: Notifier,
    client_user: Actor,
    agent_user: Actor,
    gateway: RecordingGateway,
) -> None:
    request = await create_visa_request(client, client_user)
    proposal = await submit_proposal(client, agent_user, request["request_id"])
    data = FundEscrow(proposal_id=proposal["proposal_id"], amount=Decimal("1000.00"))

    # Rows are flushed and the proposal is modified before the commit fails
    duplicate = IntegrityError("INSERT INTO escrows", {}, Exception("duplicate proposal_id"))
    with patch.object(AsyncSession, "commit", side_effect=duplicate):
        with pytest.raises(Conflict, match="Escrow already exists for this proposal"):
            await escrow_service.fund_escrow(db_session, gateway, notifier, client_user.user_id, data)

    assert len(gateway.refunds) == 1
    assert gateway.refunds[0][1] == Decimal("1000.00")
    assert (await db_session.execute(select(func.count()).select_from(Escrow))).scalar_one() == 0
    stored = await db_session.get(Proposal, uuid.UUID(proposal["proposal_id"]))
    assert stored is not None
    assert stored.status == ProposalStatus.PENDING


@pytest.mark.asyncio
async def test_fund_retry_after_failure_charges_again(
    client: AsyncClient,
    db_session: AsyncSession,
    notifier: Notifier,
    client_user: Actor,
    agent_user: Actor,
    gateway: RecordingGateway,
) -> None:
    request = await create_visa_request(client, client_user)
    proposal = await submit_proposal(client, agent_user, request["request_id"])
    data = FundEscrow(proposal_id=proposal["proposal_id"], amount=Decimal("1000.00"))

    with patch.object(escrow_service, "_open_escrow", side_effect=RuntimeError("disk full")):
        with pytest.raises(RuntimeError):
            await escrow_service.fund_escrow(db_session, gateway, notifier, client_user.user_id, data)
    refunded_intent = gateway.refunds[0][0]

    resp = await _fund(client, client_user, proposal)
    assert resp.status_code == 201
    escrow = resp.json()["data"]["escrow"]
    assert escrow["payment_intent_id"] != refunded_intent
    assert gateway.charges[1][1] == f"fund:{escrow['escrow_id']}"
    assert gateway.charges[0][1] != gateway.charges[1][1]
    assert len(gateway.refunds) == 1


# --- Release ---


@pytest.mark.asyncio
async def test_release_single_milestone(
    client: AsyncClient, client_user: Actor, agent_user: Actor,
) -> None:
    funded = await open_case(client, client_user, agent_user)
    escrow = funded["escrow"]
    first = escrow["milestones"][0]

    resp = await signed(client, client_user, "POST", f"/escrow/{escrow['escrow_id']}/release", {
        "milestone_id": first["milestone_id"], "reason": "Forms look good",
    })
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["status"] == "in_progress"
    assert [m["status"] for m in data["milestones"]] == ["completed", "pending"]
    assert data["milestones"][0]["completed_at"] is not None
    assert Decimal(data["released_amount"]) == Decimal("400.00")
    assert Decimal(data["remaining_amount"]) == Decimal("600.00")
    assert data["version"] > escrow["version"]
    last = data["timeline"][-1]
    assert last["event"] == "milestone_released"
    assert last["description"] == "Forms look good"
    assert last["by"] == str(client_user.user_id)

    case = await _case(client, client_user, funded["case"]["case_id"])
    assert [m["status"] for m in case["milestones"]] == ["approved", "pending"]
    assert [m["is_active"] for m in case["milestones"]] == [False, True]
    assert case["milestones"][0]["approved_at"] is not None
    assert case["progress"] == 50
    assert case["current_milestone"] == 2
    assert Decimal(case["paid_amount"]) == Decimal("400.00")

    events = await _events(client, agent_user)
    assert "escrow:released" in events
    assert "milestone:payment_released" in events
    assert "escrow:released" not in await _events(client, client_user)


@pytest.mark.asyncio
async def test_release_same_milestone_twice_conflict(
    client: AsyncClient, client_user: Actor, agent_user: Actor,
) -> None:
    funded = await open_case(client, client_user, agent_user)
    escrow_id = funded["escrow"]["escrow_id"]
    body = {"milestone_id": funded["escrow"]["milestones"][0]["milestone_id"]}

    assert (await signed(client, client_user, "POST", f"/escrow/{escrow_id}/release", body)).status_code == 200
    resp = await signed(client, client_user, "POST", f"/escrow/{escrow_id}/release", body)
    assert resp.status_code == 409
    assert resp.json()["error"] == "Milestone already completed"

    escrow = await _escrow(client, client_user, escrow_id)
    assert Decimal(escrow["released_amount"]) == Decimal("400.00")


@pytest.mark.asyncio
async def test_release_every_milestone_in_turn(
    client: AsyncClient, client_user: Actor, agent_user: Actor,
) -> None:
    funded = await open_case(client, client_user, agent_user)
    escrow_id = funded["escrow"]["escrow_id"]
    m0, m1 = (m["milestone_id"] for m in funded["escrow"]["milestones"])

    await signed(client, client_user, "POST", f"/escrow/{escrow_id}/release", {"milestone_id": m0})
    resp = await signed(client, client_user, "POST", f"/escrow/{escrow_id}/release", {"milestone_id": m1})
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "completed"
    assert Decimal(resp.json()["data"]["remaining_amount"]) == Decimal("0.00")

    case = await _case(client, client_user, funded["case"]["case_id"])
    assert case["status"] == "completed"
    assert case["progress"] == 100
    assert case["actual_completion_date"] is not None
    assert [t["action"] for t in case["timeline"]].count("case_completed") == 1


@pytest.mark.asyncio
async def test_release_everything(client: AsyncClient, client_user: Actor, agent_user: Actor) -> None:
    funded = await open_case(client, client_user, agent_user, amounts=("100.00", "200.00", "300.00"))
    escrow_id = funded["escrow"]["escrow_id"]

    resp = await signed(client, client_user, "POST", f"/escrow/{escrow_id}/release", {"amount": "600.00"})
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["status"] == "completed"
    assert all(m["status"] == "completed" for m in data["milestones"])
    assert data["timeline"][-1]["event"] == "escrow_released"

    case = await _case(client, client_user, funded["case"]["case_id"])
    assert case["status"] == "completed"
    assert all(m["status"] == "approved" for m in case["milestones"])
    assert sum(m["is_active"] for m in case["milestones"]) == 1


@pytest.mark.asyncio
async def test_release_amount_mismatch(client: AsyncClient, client_user: Actor, agent_user: Actor) -> None:
    funded = await open_case(client, client_user, agent_user)
    escrow = funded["escrow"]
    resp = await signed(client, client_user, "POST", f"/escrow/{escrow['escrow_id']}/release", {
        "milestone_id": escrow["milestones"][0]["milestone_id"], "amount": "450.00",
    })
    assert resp.status_code == 400
    assert (await _escrow(client, client_user, escrow["escrow_id"]))["status"] == "deposited"


@pytest.mark.asyncio
async def test_release_unknown_milestone(client: AsyncClient, client_user: Actor, agent_user: Actor) -> None:
    funded = await open_case(client, client_user, agent_user)
    resp = await signed(
        client, client_user, "POST", f"/escrow/{funded['escrow']['escrow_id']}/release",
        {"milestone_id": str(uuid.uuid4())},
    )
    assert resp.status_code == 404
    assert resp.json()["error"] == "Milestone not found"


@pytest.mark.asyncio
async def test_release_missing_escrow(client: AsyncClient, client_user: Actor) -> None:
    resp = await signed(client, client_user, "POST", f"/escrow/{uuid.uuid4()}/release", {})
    assert resp.status_code == 404
    assert resp.json()["error"] == "Escrow not found"


@pytest.mark.asyncio
async def test_release_by_stranger_forbidden(
    client: AsyncClient,
    make_user: Callable[..., Awaitable[Actor]],
    client_user: Actor,
    agent_user: Actor,
) -> None:
    funded = await open_case(client, client_user, agent_user)
    stranger = await make_user(UserRole.CLIENT)
    resp = await signed(client, stranger, "POST", f"/escrow/{funded['escrow']['escrow_id']}/release", {})
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_admin_release_notifies_both_parties(
    client: AsyncClient, client_user: Actor, agent_user: Actor, admin_user: Actor,
) -> None:
    funded = await open_case(client, client_user, agent_user)
    resp = await signed(client, admin_user, "POST", f"/escrow/{funded['escrow']['escrow_id']}/release", {})
    assert resp.status_code == 200
    assert "escrow:released" in await _events(client, client_user)
    assert "escrow:released" in await _events(client, agent_user)


# --- Hold / disputes ---


@pytest.mark.asyncio
async def test_hold_escrow(
    client: AsyncClient, client_user: Actor, agent_user: Actor, admin_user: Actor,
) -> None:
    funded = await open_case(client, client_user, agent_user)
    escrow_id = funded["escrow"]["escrow_id"]

    resp = await signed(client, client_user, "POST", f"/escrow/{escrow_id}/hold", DISPUTE)
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["status"] == "disputed"
    assert data["dispute"]["status"] == "open"
    assert data["dispute"]["created_by"] == str(client_user.user_id)
    assert data["dispute"]["evidence"] == DISPUTE["evidence"]
    assert data["timeline"][-1]["event"] == "dispute_raised"

    case = await _case(client, client_user, funded["case"]["case_id"])
    assert case["status"] == "disputed"
    assert case["timeline"][-1]["action"] == "dispute_raised"

    assert "escrow:disputed" in await _events(client, agent_user)
    assert "escrow:disputed" in await _events(client, admin_user)

    resp = await signed(client, agent_user, "POST", f"/escrow/{escrow_id}/hold", DISPUTE)
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_hold_validation(client: AsyncClient, client_user: Actor, agent_user: Actor) -> None:
    funded = await open_case(client, client_user, agent_user)
    resp = await signed(
        client, client_user, "POST", f"/escrow/{funded['escrow']['escrow_id']}/hold",
        {**DISPUTE, "description": "too short"},
    )
    assert resp.status_code == 400
    assert "description" in resp.json()["error"]


@pytest.mark.asyncio
async def test_release_blocked_while_disputed(
    client: AsyncClient, client_user: Actor, agent_user: Actor,
) -> None:
    funded = await open_case(client, client_user, agent_user)
    escrow_id = funded["escrow"]["escrow_id"]
    await signed(client, agent_user, "POST", f"/escrow/{escrow_id}/hold", DISPUTE)
    resp = await signed(client, client_user, "POST", f"/escrow/{escrow_id}/release", {})
    assert resp.status_code == 409
    assert "disputed" in resp.json()["error"]


@pytest.mark.asyncio
async def test_escalate_dispute(
    client: AsyncClient, client_user: Actor, agent_user: Actor, admin_user: Actor,
) -> None:
    funded = await open_case(client, client_user, agent_user)
    escrow_id = funded["escrow"]["escrow_id"]
    note = {"note": "No response from the agent in a week"}

    resp = await signed(client, client_user, "POST", f"/escrow/{escrow_id}/escalate", note)
    assert resp.status_code == 409

    await signed(client, client_user, "POST", f"/escrow/{escrow_id}/hold", DISPUTE)
    resp = await signed(client, client_user, "POST", f"/escrow/{escrow_id}/escalate", note)
    assert resp.status_code == 200
    assert resp.json()["data"]["dispute"]["status"] == "escalated"
    assert resp.json()["data"]["timeline"][-1]["event"] == "dispute_escalated"

    resp = await signed(client, client_user, "POST", f"/escrow/{escrow_id}/escalate", note)
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_resolve_requires_admin(client: AsyncClient, client_user: Actor, agent_user: Actor) -> None:
    funded = await open_case(client, client_user, agent_user)
    escrow_id = funded["escrow"]["escrow_id"]
    await signed(client, client_user, "POST", f"/escrow/{escrow_id}/hold", DISPUTE)
    resp = await signed(client, client_user, "POST", f"/escrow/{escrow_id}/resolve", {
        "resolution": "I decide in my own favour", "outcome": "refund",
    })
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_resolve_resume(
    client: AsyncClient, client_user: Actor, agent_user: Actor, admin_user: Actor,
) -> None:
    funded = await open_case(client, client_user, agent_user)
    escrow_id = funded["escrow"]["escrow_id"]
    await signed(client, client_user, "POST", f"/escrow/{escrow_id}/hold", DISPUTE)

    resp = await signed(client, admin_user, "POST", f"/escrow/{escrow_id}/resolve", {
        "resolution": "Agent agreed to redo the forms", "outcome": "resume",
    })
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["status"] == "deposited"
    assert data["dispute"]["status"] == "resolved"
    assert data["dispute"]["outcome"] == "resume"
    assert data["dispute"]["resolved_by"] == str(admin_user.user_id)
    assert data["timeline"][-1]["event"] == "dispute_resolved"

    case = await _case(client, client_user, funded["case"]["case_id"])
    assert case["status"] == "active"
    assert "escrow:dispute_resolved" in await _events(client, agent_user)

    resp = await signed(client, admin_user, "POST", f"/escrow/{escrow_id}/resolve", {
        "resolution": "Resolving a second time", "outcome": "resume",
    })
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_dispute_can_be_raised_again_after_resume(
    client: AsyncClient, client_user: Actor, agent_user: Actor, admin_user: Actor,
) -> None:
    funded = await open_case(client, client_user, agent_user)
    escrow_id = funded["escrow"]["escrow_id"]
    await signed(client, client_user, "POST", f"/escrow/{escrow_id}/hold", DISPUTE)
    await signed(client, admin_user, "POST", f"/escrow/{escrow_id}/resolve", {
        "resolution": "Work continues as planned", "outcome": "resume",
    })

    resp = await signed(client, agent_user, "POST", f"/escrow/{escrow_id}/hold", {
        **DISPUTE, "reason": "Client stopped responding",
    })
    assert resp.status_code == 200
    dispute = resp.json()["data"]["dispute"]
    assert dispute["status"] == "open"
    assert dispute["reason"] == "Client stopped responding"
    assert dispute["created_by"] == str(agent_user.user_id)
    assert dispute["outcome"] is None


@pytest.mark.asyncio
async def test_resolve_release(
    client: AsyncClient, client_user: Actor, agent_user: Actor, admin_user: Actor,
) -> None:
    funded = await open_case(client, client_user, agent_user)
    escrow_id = funded["escrow"]["escrow_id"]
    await signed(client, client_user, "POST", f"/escrow/{escrow_id}/hold", DISPUTE)

    resp = await signed(client, admin_user, "POST", f"/escrow/{escrow_id}/resolve", {
        "resolution": "Work was delivered as agreed", "outcome": "release",
    })
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["status"] == "completed"
    assert Decimal(data["released_amount"]) == Decimal("1000.00")
    assert data["timeline"][-1]["data"]["released_amount"] == "1000.00"

    case = await _case(client, client_user, funded["case"]["case_id"])
    assert case["status"] == "completed"
    assert [t["action"] for t in case["timeline"]].count("case_completed") == 1


@pytest.mark.asyncio
async def test_resolve_refund(
    client: AsyncClient,
    client_user: Actor,
    agent_user: Actor,
    admin_user: Actor,
    gateway: RecordingGateway,
) -> None:
    funded = await open_case(client, client_user, agent_user)
    escrow_id = funded["escrow"]["escrow_id"]
    m0 = funded["escrow"]["milestones"][0]["milestone_id"]
    await signed(client, client_user, "POST", f"/escrow/{escrow_id}/release", {"milestone_id": m0})
    await signed(client, client_user, "POST", f"/escrow/{escrow_id}/hold", DISPUTE)

    resp = await signed(client, admin_user, "POST", f"/escrow/{escrow_id}/resolve", {
        "resolution": "Second half of the work was never delivered", "outcome": "refund",
    })
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["status"] == "refunded"
    assert Decimal(data["refund_details"]["amount"]) == Decimal("600.00")
    assert data["refund_details"]["refund_id"].startswith("re_demo_")
    assert gateway.refunds[-1][1:] == (Decimal("600.00"), f"refund:{escrow_id}")

    case = await _case(client, client_user, funded["case"]["case_id"])
    assert case["status"] == "cancelled"
    assert not any(m["is_active"] for m in case["milestones"])


# --- Refund / cancel ---


@pytest.mark.asyncio
async def test_agent_refunds_remaining(
    client: AsyncClient, client_user: Actor, agent_user: Actor, gateway: RecordingGateway,
) -> None:
    funded = await open_case(client, client_user, agent_user)
    escrow_id = funded["escrow"]["escrow_id"]
    m0 = funded["escrow"]["milestones"][0]["milestone_id"]
    await signed(client, client_user, "POST", f"/escrow/{escrow_id}/release", {"milestone_id": m0})

    resp = await signed(client, client_user, "POST", f"/escrow/{escrow_id}/refund", {"reason": "Client request"})
    assert resp.status_code == 403

    resp = await signed(client, agent_user, "POST", f"/escrow/{escrow_id}/refund", {"reason": "Cannot continue"})
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["status"] == "refunded"
    assert Decimal(data["refund_details"]["amount"]) == Decimal("600.00")
    assert data["refund_details"]["reason"] == "Cannot continue"
    assert data["timeline"][-1]["event"] == "escrow_refunded"
    assert len(gateway.refunds) == 1

    case = await _case(client, client_user, funded["case"]["case_id"])
    assert case["status"] == "cancelled"
    assert "escrow:refunded" in await _events(client, client_user)

    resp = await signed(client, agent_user, "POST", f"/escrow/{escrow_id}/refund", {"reason": "Cannot continue"})
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_refund_closes_open_dispute(
    client: AsyncClient, client_user: Actor, agent_user: Actor,
) -> None:
    funded = await open_case(client, client_user, agent_user)
    escrow_id = funded["escrow"]["escrow_id"]
    await signed(client, client_user, "POST", f"/escrow/{escrow_id}/hold", DISPUTE)
    resp = await signed(client, agent_user, "POST", f"/escrow/{escrow_id}/refund", {"reason": "Fair enough"})
    assert resp.status_code == 200
    dispute = resp.json()["data"]["dispute"]
    assert dispute["status"] == "resolved"
    assert dispute["outcome"] == "refund"


@pytest.mark.asyncio
async def test_cancel_deposited_escrow_refunds_in_full(
    client: AsyncClient, client_user: Actor, agent_user: Actor, gateway: RecordingGateway,
) -> None:
    funded = await open_case(client, client_user, agent_user)
    escrow_id = funded["escrow"]["escrow_id"]

    resp = await signed(client, client_user, "POST", f"/escrow/{escrow_id}/cancel", {"reason": "Changed my plans"})
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["status"] == "cancelled"
    assert Decimal(data["refund_details"]["amount"]) == Decimal("1000.00")
    assert gateway.refunds[-1][2] == f"cancel:{escrow_id}"

    case = await _case(client, client_user, funded["case"]["case_id"])
    assert case["status"] == "cancelled"
    assert "escrow:cancelled" in await _events(client, agent_user)


@pytest.mark.asyncio
async def test_cancel_pending_escrow_skips_refund(
    client: AsyncClient,
    db_session: AsyncSession,
    client_user: Actor,
    agent_user: Actor,
    gateway: RecordingGateway,
) -> None:
    funded = await open_case(client, client_user, agent_user)
    escrow_id = funded["escrow"]["escrow_id"]
    stored = await db_session.get(Escrow, uuid.UUID(escrow_id))
    assert stored is not None
    stored.status = EscrowStatus.PENDING
    stored.payment_intent_id = None
    await db_session.commit()

    resp = await signed(client, agent_user, "POST", f"/escrow/{escrow_id}/cancel", {"reason": "Client withdrew"})
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["status"] == "cancelled"
    assert data["refund_details"] is None
    assert gateway.refunds == []
    case = await _case(client, client_user, funded["case"]["case_id"])
    assert case["status"] == "cancelled"


@pytest.mark.asyncio
async def test_cancel_after_release_invalid(
    client: AsyncClient, client_user: Actor, agent_user: Actor,
) -> None:
    funded = await open_case(client, client_user, agent_user)
    escrow_id = funded["escrow"]["escrow_id"]
    m0 = funded["escrow"]["milestones"][0]["milestone_id"]
    await signed(client, client_user, "POST", f"/escrow/{escrow_id}/release", {"milestone_id": m0})
    resp = await signed(client, client_user, "POST", f"/escrow/{escrow_id}/cancel", {"reason": "Changed my plans"})
    assert resp.status_code == 409


# --- Reads ---


@pytest.mark.asyncio
async def test_escrow_status_view(
    client: AsyncClient,
    make_user: Callable[..., Awaitable[Actor]],
    client_user: Actor,
    agent_user: Actor,
    admin_user: Actor,
) -> None:
    funded = await open_case(client, client_user, agent_user, amounts=("250.00", "250.00", "500.00"))
    escrow_id = funded["escrow"]["escrow_id"]
    m0 = funded["escrow"]["milestones"][0]["milestone_id"]
    await signed(client, client_user, "POST", f"/escrow/{escrow_id}/release", {"milestone_id": m0})

    for actor in (client_user, agent_user, admin_user):
        resp = await signed(client, actor, "GET", f"/escrow/{escrow_id}/status")
        assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["completed_milestones"] == 1
    assert data["total_milestones"] == 3
    assert data["progress"] == pytest.approx(100 / 3)
    assert Decimal(data["released_amount"]) == Decimal("250.00")
    assert Decimal(data["remaining_amount"]) == Decimal("750.00")

    stranger = await make_user(UserRole.AGENT)
    resp = await signed(client, stranger, "GET", f"/escrow/{escrow_id}/status")
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_status_read_has_no_side_effects(
    client: AsyncClient, client_user: Actor, agent_user: Actor,
) -> None:
    funded = await open_case(client, client_user, agent_user)
    escrow_id = funded["escrow"]["escrow_id"]
    before = await _escrow(client, client_user, escrow_id)
    await signed(client, client_user, "GET", f"/escrow/{escrow_id}/status")
    after = await _escrow(client, client_user, escrow_id)
    assert after["version"] == before["version"]
    assert after["timeline"] == before["timeline"]


@pytest.mark.asyncio
async def test_my_transactions_and_admin_listing(
    client: AsyncClient,
    make_user: Callable[..., Awaitable[Actor]],
    client_user: Actor,
    agent_user: Actor,
    admin_user: Actor,
) -> None:
    await open_case(client, client_user, agent_user)
    other_client = await make_user(UserRole.CLIENT)
    await open_case(client, other_client, agent_user)

    resp = await signed(client, client_user, "GET", "/escrow/my-transactions")
    assert resp.json()["data"]["total"] == 1
    resp = await signed(client, agent_user, "GET", "/escrow/my-transactions")
    assert resp.json()["data"]["total"] == 2
    resp = await signed(client, agent_user, "GET", "/escrow/my-transactions", params={"status": "completed"})
    assert resp.json()["data"]["total"] == 0

    resp = await signed(client, admin_user, "GET", "/escrow/all")
    assert resp.status_code == 200
    assert resp.json()["data"]["total"] == 2
