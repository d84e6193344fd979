"""Test configuration and fixtures.

Each test gets its own SQLite database file (so pytest-xdist workers never
share state) and its own in-memory fake Redis. The app's DB, Redis, notifier
and payment gateway dependencies are overridden to point at them.
"""

import json
import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from fakeredis import aioredis as fake_aioredis
from httpx import ASGITransport, AsyncClient, Response
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from visaflow.config import settings
from visaflow.database import Base, get_db
from visaflow.main import app
from visaflow.models.user import User, UserRole, UserStatus
from visaflow.redis import get_redis
from visaflow.services.email import LogEmailSender
from visaflow.services.notifications import Notifier, get_notifier
from visaflow.services.payments import (
    DemoPaymentGateway,
    GatewayCharge,
    GatewayRefund,
    get_payment_gateway,
)
from visaflow.utils.crypto import build_auth_headers, generate_keypair


# ---------------------------------------------------------------------------
# Doubles
# ---------------------------------------------------------------------------

class RecordingGateway(DemoPaymentGateway):
    """Demo gateway that remembers every call it served."""

    def __init__(self) -> None:
        self.charges: list[tuple[Decimal, str]] = []
        self.refunds: list[tuple[str, Decimal, str]] = []

    async def charge(
        self, amount: Decimal, currency: str, payment_method: str, idempotency_key: str,
    ) -> GatewayCharge:
        self.charges.append((amount, idempotency_key))
        return await super().charge(amount, currency, payment_method, idempotency_key)

    async def refund(
        self, intent_id: str, amount: Decimal, idempotency_key: str,
    ) -> GatewayRefund:
        self.refunds.append((intent_id, amount, idempotency_key))
        return await super().refund(intent_id, amount, idempotency_key)


class RecordingEmailSender(LogEmailSender):
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    async def send(self, to: str, subject: str, body: str) -> None:
        self.sent.append((to, subject, body))
        await super().send(to, subject, body)


@dataclass
class Actor:
    """A registered user plus the private key used to sign their requests."""
    user_id: uuid.UUID
    private_key: str
    role: UserRole
    email: str = ""


# ---------------------------------------------------------------------------
# Infrastructure fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_settings() -> None:
    """Snapshot settings before each test and restore after to prevent mutation bleed."""
    original = settings.model_dump()
    object.__setattr__(settings, "payment_backend", "demo")
    object.__setattr__(settings, "email_backend", "log")
    yield  # type: ignore[misc]
    for key, value in original.items():
        object.__setattr__(settings, key, value)


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh schema per test.

    With TEST_DATABASE_URL set (e.g. a Postgres test database) tables are created
    there and dropped afterwards; run such suites without -n, they share one schema.
    """
    url = settings.test_database_url or f"sqlite+aiosqlite:///{tmp_path / 'visaflow.db'}"
    engine = create_async_engine(url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    if settings.test_database_url:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def fake_redis() -> AsyncGenerator[fake_aioredis.FakeRedis, None]:
    redis_client = fake_aioredis.FakeRedis()
    yield redis_client
    await redis_client.flushall()
    await redis_client.aclose()


@pytest.fixture
def gateway() -> RecordingGateway:
    return RecordingGateway()


@pytest.fixture
def email_sender() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
def notifier(
    session_factory: async_sessionmaker[AsyncSession],
    fake_redis: fake_aioredis.FakeRedis,
    email_sender: RecordingEmailSender,
) -> Notifier:
    return Notifier(session_factory, fake_redis, email_sender)


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    fake_redis: fake_aioredis.FakeRedis,
    notifier: Notifier,
    gateway: RecordingGateway,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP test client with overridden DB, Redis, notifier and gateway dependencies."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    async def override_get_redis() -> AsyncGenerator[fake_aioredis.FakeRedis, None]:
        yield fake_redis

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_payment_gateway] = lambda: gateway

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

@pytest.fixture
def make_user(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[Actor]]:
    """Factory that inserts a user directly, bypassing the registration rate limit."""

    async def _make(role: UserRole = UserRole.CLIENT, name: str | None = None) -> Actor:
        priv, pub = generate_keypair()
        email = f"{role.value}-{uuid.uuid4().hex[:10]}@example.com"
        user = User(
            user_id=uuid.uuid4(),
            public_key=pub,
            name=name or f"Test {role.value.title()}",
            email=email,
            role=role,
            status=UserStatus.ACTIVE,
        )
        async with session_factory() as session:
            session.add(user)
            await session.commit()
        return Actor(user_id=user.user_id, private_key=priv, role=role, email=email)

    return _make


@pytest_asyncio.fixture
async def client_user(make_user: Callable[..., Awaitable[Actor]]) -> Actor:
    return await make_user(UserRole.CLIENT, "Carla Client")


@pytest_asyncio.fixture
async def agent_user(make_user: Callable[..., Awaitable[Actor]]) -> Actor:
    return await make_user(UserRole.AGENT, "Arjun Agent")


@pytest_asyncio.fixture
async def admin_user(make_user: Callable[..., Awaitable[Actor]]) -> Actor:
    return await make_user(UserRole.ADMIN, "Ada Admin")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def encode_body(body: dict | list | None) -> bytes:
    if body is None:
        return b""
    return json.dumps(body, separators=(",", ":"), default=str).encode()


async def signed(
    client: AsyncClient,
    actor: Actor,
    method: str,
    path: str,
    body: dict | list | None = None,
    params: dict | None = None,
) -> Response:
    """Send a request signed with the actor's key."""
    content = encode_body(body)
    headers = build_auth_headers(actor.user_id, actor.private_key, method, path, content)
    if body is not None:
        headers["Content-Type"] = "application/json"
    return await client.request(
        method, path, content=content or None, headers=headers, params=params,
    )


def make_visa_request_data(**overrides: Any) -> dict:
    data = {
        "title": "Skilled worker permit for Canada",
        "visa_type": "work-permit",
        "country": "Canada",
        "description": "Need help preparing and filing a skilled worker application.",
        "budget": "1000-2500",
        "timeline": "1-month",
        "priority": "high",
    }
    data.update(overrides)
    return data


def make_proposal_data(request_id: str, amounts: tuple[str, ...] = ("400.00", "600.00")) -> dict:
    milestones = [
        {
            "title": f"Milestone {i}",
            "description": f"Deliverable set number {i}",
            "amount": amount,
            "due_date": f"2030-0{i}-15T00:00:00+00:00",
            "deliverables": [f"document-{i}"],
        }
        for i, amount in enumerate(amounts, start=1)
    ]
    budget = sum((Decimal(a) for a in amounts), Decimal("0"))
    return {
        "request_id": request_id,
        "budget": str(budget),
        "timeline": "1-month",
        "cover_letter": "Licensed consultant with ten years of experience.",
        "proposal_text": "I will prepare, review and file your application.",
        "milestones": milestones,
    }


async def create_visa_request(client: AsyncClient, owner: Actor, **overrides: Any) -> dict:
    resp = await signed(client, owner, "POST", "/visa-requests", make_visa_request_data(**overrides))
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


async def submit_proposal(
    client: AsyncClient,
    agent: Actor,
    request_id: str,
    amounts: tuple[str, ...] = ("400.00", "600.00"),
) -> dict:
    resp = await signed(client, agent, "POST", "/proposals", make_proposal_data(request_id, amounts))
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


async def open_case(
    client: AsyncClient,
    owner: Actor,
    agent: Actor,
    amounts: tuple[str, ...] = ("400.00", "600.00"),
) -> dict:
    """Visa request, proposal and funded escrow. Returns ``{escrow, case}``."""
    request = await create_visa_request(client, owner)
    proposal = await submit_proposal(client, agent, request["request_id"], amounts)
    resp = await signed(client, owner, "POST", "/escrow/fund", {
        "proposal_id": proposal["proposal_id"],
        "amount": proposal["budget"],
        "payment_method": "stripe",
    })
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


async def complete_milestone(client: AsyncClient, agent: Actor, case_id: str, index: int) -> dict:
    resp = await signed(
        client, agent, "PUT", f"/cases/{case_id}/milestones/{index}", {"status": "completed"},
    )
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]


DISPUTE = {
    "reason": "Quality of the work",
    "description": "The submitted documents are incomplete and contain errors.",
    "evidence": ["https://files.example.com/evidence-1.pdf"],
}
