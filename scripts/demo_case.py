#!/usr/bin/env python3
"""
Live E2E Demo: a visa case from request to payout through the VisaFlow API.

Carla: client who needs a Canadian work permit
Arjun: licensed immigration agent

Showcases:
  1. Registration with Ed25519 keys
  2. Visa request and milestone-based proposal
  3. Escrow funding (fees fixed at funding time)
  4. Milestone progress, approval and per-milestone payout
  5. Case completion and the payment summary
  6. A second case that ends in a dispute and an agent refund

Run:
  1. Start the API:  uvicorn visaflow.main:app --port 8080
  2. Run this demo:  python scripts/demo_case.py [base_url]
"""

import json
import sys
from datetime import UTC, datetime, timedelta

import httpx

from visaflow.utils.crypto import build_auth_headers, generate_keypair, generate_nonce

BASE_URL = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8080"

# ─── Colors ───

BOLD = "\033[1m"
DIM = "\033[2m"
GREEN = "\033[92m"
BLUE = "\033[94m"
YELLOW = "\033[93m"
RED = "\033[91m"
CYAN = "\033[96m"
RESET = "\033[0m"


def banner(text: str) -> None:
    print(f"\n{'═' * 64}")
    print(f"  {BOLD}{text}{RESET}")
    print(f"{'═' * 64}")


def step(num: int, text: str) -> None:
    print(f"\n{BOLD}{CYAN}Step {num:2d}{RESET} │ {text}")


def says(name: str, color: str, msg: str) -> None:
    print(f"         {color}{BOLD}{name}{RESET}: {msg}")


def show_json(data: dict, keys: list[str] | None = None, indent: int = 9) -> None:
    filtered = {k: data[k] for k in keys if k in data} if keys else data
    prefix = " " * indent
    for line in json.dumps(filtered, indent=2, default=str).split("\n"):
        print(f"{prefix}{DIM}{line}{RESET}")


def fail(msg: str) -> None:
    print(f"\n{RED}{BOLD}✖ FAILED: {msg}{RESET}")
    sys.exit(1)


def expect(resp: httpx.Response, status: int, context: str) -> dict:
    if resp.status_code != status:
        fail(f"{context}: expected {status}, got {resp.status_code}: {resp.text}")
    return resp.json()["data"]


# ─── Signed user client ───

class UserClient:
    """A marketplace user that signs every request with its Ed25519 key."""

    def __init__(self, name: str, role: str, color: str) -> None:
        self.name = name
        self.role = role
        self.color = color
        self.private_key, self.public_key = generate_keypair()
        self.user_id: str | None = None
        self.http = httpx.Client(base_url=BASE_URL, timeout=30.0)

    def register(self) -> dict:
        slug = self.name.lower()
        data = expect(self.http.post("/users", json={
            "public_key": self.public_key,
            "name": self.name,
            "email": f"{slug}-{generate_nonce()[:8]}@example.com",
            "role": self.role,
        }), 201, f"register {self.name}")
        self.user_id = data["user_id"]
        return data

    def request(self, method: str, path: str, data: dict | None = None) -> httpx.Response:
        body = json.dumps(data).encode() if data is not None else b""
        headers = build_auth_headers(
            self.user_id, self.private_key, method, path, body, nonce=generate_nonce(),  # type: ignore[arg-type]
        )
        if data is not None:
            headers["Content-Type"] = "application/json"
        return self.http.request(method, path, content=body or None, headers=headers)

    def say(self, msg: str) -> None:
        says(self.name, self.color, msg)


def _due(days: int) -> str:
    return (datetime.now(UTC) + timedelta(days=days)).isoformat()


def open_case(carla: UserClient, arjun: UserClient, title: str) -> tuple[dict, dict]:
    request = expect(carla.request("POST", "/visa-requests", {
        "title": title,
        "visa_type": "work-permit",
        "country": "Canada",
        "description": "Software engineer with a job offer in Toronto, needs the LMIA-based permit.",
        "budget": "1000-2500",
        "timeline": "2-3-months",
        "priority": "high",
    }), 201, "create visa request")
    proposal = expect(arjun.request("POST", "/proposals", {
        "request_id": request["request_id"],
        "budget": "1500.00",
        "timeline": "2-3-months",
        "cover_letter": "Regulated consultant, 200+ work permits filed.",
        "proposal_text": "Document review, application preparation, then filing and follow-up.",
        "milestones": [
            {"title": "Document review", "description": "Check every supporting document",
             "amount": "500.00", "due_date": _due(14), "deliverables": ["checklist"]},
            {"title": "File application", "description": "Prepare and submit the application",
             "amount": "1000.00", "due_date": _due(45), "deliverables": ["submission receipt"]},
        ],
    }), 201, "submit proposal")
    funded = expect(carla.request("POST", "/escrow/fund", {
        "proposal_id": proposal["proposal_id"],
        "amount": proposal["budget"],
        "payment_method": "stripe",
    }), 201, "fund escrow")
    return funded["escrow"], funded["case"]


def main() -> None:
    banner("VisaFlow: escrow-backed visa case")

    carla = UserClient("Carla", "client", BLUE)
    arjun = UserClient("Arjun", "agent", GREEN)

    step(1, "Registration")
    for user in (carla, arjun):
        profile = user.register()
        user.say(f"registered as {profile['role']} ({profile['user_id']})")

    fees = expect(carla.http.get("/fees"), 200, "fee schedule")
    show_json(fees)

    step(2, "Visa request, proposal and escrow funding")
    escrow, case = open_case(carla, arjun, "Work permit for Toronto job offer")
    carla.say(f"funded {escrow['amount']} {escrow['currency']} in escrow")
    show_json(escrow, ["escrow_id", "status", "fees", "payment_intent_id"])
    show_json(case, ["case_id", "status", "progress", "current_milestone"])

    step(3, "Agent delivers the first milestone")
    case_id = case["case_id"]
    expect(arjun.request("PUT", f"/cases/{case_id}/milestones/0", {
        "status": "completed",
        "agent_notes": "All documents verified, two translations added.",
        "submitted_files": [{"name": "checklist.pdf", "url": "https://files.example.com/checklist.pdf"}],
    }), 200, "complete milestone 0")
    arjun.say("milestone 1 marked completed")

    step(4, "Client approves, payment is released")
    case = expect(carla.request("PUT", f"/cases/{case_id}/milestones/0/approve", {
        "client_feedback": "Thorough review, thank you.",
    }), 200, "approve milestone 0")
    carla.say(f"approved milestone 1, case progress {case['progress']}%")

    step(5, "Final milestone and case completion")
    expect(arjun.request("PUT", f"/cases/{case_id}/milestones/1", {"status": "completed"}), 200,
           "complete milestone 1")
    case = expect(carla.request("PUT", f"/cases/{case_id}/milestones/1/approve", {}), 200,
                  "approve milestone 1")
    if case["status"] != "completed":
        fail(f"case should be completed, got {case['status']}")
    timeline = expect(carla.request("GET", f"/cases/{case_id}/timeline"), 200, "case timeline")
    show_json(timeline["payment_summary"])
    status = expect(carla.request("GET", f"/escrow/{escrow['escrow_id']}/status"), 200, "escrow status")
    show_json(status, ["status", "progress", "released_amount", "remaining_amount"])

    banner("Second case: dispute and refund")

    step(6, "Fund a new case, then dispute it")
    escrow, case = open_case(carla, arjun, "Work permit renewal for Toronto")
    escrow = expect(carla.request("POST", f"/escrow/{escrow['escrow_id']}/hold", {
        "reason": "unresponsive",
        "description": "No update from the agent for three weeks after funding.",
        "evidence": [],
    }), 200, "hold escrow")
    carla.say(f"escrow is now {escrow['status']}")

    step(7, "Agent refunds the client")
    escrow = expect(arjun.request("POST", f"/escrow/{escrow['escrow_id']}/refund", {
        "reason": "Unable to take the case after all",
    }), 200, "refund escrow")
    arjun.say(f"refunded {escrow['refund_details']['amount']} {escrow['currency']}")
    show_json(escrow, ["status", "refund_details", "dispute"])

    inbox = expect(carla.request("GET", "/notifications"), 200, "notifications")
    carla.say(f"{inbox['unread']} unread notifications")
    for item in inbox["items"][:5]:
        print(f"         {YELLOW}•{RESET} {item['event']}: {item['title']}")

    banner(f"{GREEN}Demo complete{RESET}")


if __name__ == "__main__":
    main()
