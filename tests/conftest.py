"""Test configuration and fixtures.

Each test gets its own in-memory SQLite database (aiosqlite) with the full
schema created from the models, a fake payment gateway that records every
call, and bearer tokens signed by a fixed test Identity Provider key.
"""

import json
import uuid
from collections.abc import AsyncGenerator
from decimal import Decimal
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from nacl.encoding import HexEncoder
from nacl.signing import SigningKey
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from marketplace.auth.rate_limit import check_rate_limit
from marketplace.config import settings
from marketplace.database import Base, get_db
from marketplace.errors import ExternalServiceError
from marketplace.main import app
from marketplace.models.user import PayoutStatus, User, UserRole
from marketplace.services.gateway import (
    ConnectedAccount,
    GatewayEvent,
    PaymentGateway,
    PaymentIntentResult,
    PayoutResult,
    RefundResult,
    TransferResult,
    get_gateway,
)
from marketplace.utils.crypto import issue_token

# Fixed so the key pair is identical however this module is imported.
IDP_PRIVATE_KEY = "1f" * 32
IDP_PUBLIC_KEY = (
    SigningKey(IDP_PRIVATE_KEY.encode(), encoder=HexEncoder).verify_key.encode(encoder=HexEncoder).decode()
)

WEBHOOK_SIGNATURE = "fake-signature"


# ---------------------------------------------------------------------------
# Fake payment gateway
# ---------------------------------------------------------------------------

class FakeGateway(PaymentGateway):
    """Records every call; set ``fail_with`` to make the next calls raise."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.fail_with: ExternalServiceError | None = None
        self.accounts: dict[str, ConnectedAccount] = {}

    def _record(self, operation: str, **kwargs: Any) -> int:
        if self.fail_with is not None:
            raise self.fail_with
        self.calls.append((operation, kwargs))
        return len(self.calls)

    def calls_to(self, operation: str) -> list[dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == operation]

    async def create_payment_intent(
        self, amount_minor: int, currency: str, metadata: dict[str, str], idempotency_key: str
    ) -> PaymentIntentResult:
        n = self._record(
            "create_payment_intent",
            amount_minor=amount_minor, currency=currency, metadata=metadata,
            idempotency_key=idempotency_key,
        )
        return PaymentIntentResult(id=f"pi_{n}", client_secret=f"pi_{n}_secret", status="requires_payment_method")

    async def create_transfer(
        self, amount_minor, currency, destination_account, idempotency_key, metadata=None
    ) -> TransferResult:
        n = self._record(
            "create_transfer",
            amount_minor=amount_minor, currency=currency, destination_account=destination_account,
            idempotency_key=idempotency_key, metadata=metadata,
        )
        return TransferResult(id=f"tr_{n}", amount_minor=amount_minor)

    async def create_payout(
        self, amount_minor, currency, destination_account, idempotency_key, metadata=None
    ) -> PayoutResult:
        n = self._record(
            "create_payout",
            amount_minor=amount_minor, currency=currency, destination_account=destination_account,
            idempotency_key=idempotency_key, metadata=metadata,
        )
        return PayoutResult(id=f"po_{n}", amount_minor=amount_minor)

    async def create_refund(
        self, payment_intent_id, amount_minor, reason, idempotency_key
    ) -> RefundResult:
        n = self._record(
            "create_refund",
            payment_intent_id=payment_intent_id, amount_minor=amount_minor, reason=reason,
            idempotency_key=idempotency_key,
        )
        return RefundResult(id=f"re_{n}", amount_minor=amount_minor or 0, status="succeeded")

    def verify_webhook(self, raw_body: bytes, signature: str, secret: str) -> GatewayEvent:
        if signature != WEBHOOK_SIGNATURE:
            raise ExternalServiceError("Invalid webhook signature")
        payload = json.loads(raw_body)
        return GatewayEvent(id=payload["id"], type=payload["type"], data=payload.get("data", {}))

    async def create_connected_account(self, email: str | None) -> str:
        n = self._record("create_connected_account", email=email)
        account_id = f"acct_{n}"
        self.accounts[account_id] = ConnectedAccount(
            id=account_id, details_submitted=False, payouts_enabled=False
        )
        return account_id

    async def create_onboarding_link(self, account_id: str) -> str:
        self._record("create_onboarding_link", account_id=account_id)
        return f"https://connect.example.com/setup/{account_id}"

    async def retrieve_account(self, account_id: str) -> ConnectedAccount:
        self._record("retrieve_account", account_id=account_id)
        return self.accounts[account_id]


# ---------------------------------------------------------------------------
# Per-test fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_settings() -> None:
    """Snapshot settings before each test and restore after to prevent mutation bleed."""
    original = settings.model_dump()
    object.__setattr__(settings, "identity_provider_public_key", IDP_PUBLIC_KEY)
    object.__setattr__(settings, "stripe_webhook_secret", "whsec_test")
    object.__setattr__(settings, "payout_method", "transfer")
    yield  # type: ignore[misc]
    for key, value in original.items():
        object.__setattr__(settings, key, value)


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory database per test; StaticPool keeps the single connection alive."""
    test_engine = create_async_engine(
        settings.test_database_url,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest_asyncio.fixture
async def db_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    session = AsyncSession(bind=engine, expire_on_commit=False)
    yield session
    await session.close()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    gateway: FakeGateway,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP test client with the database, gateway and rate limiter overridden."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        try:
            yield db_session
        except Exception:
            await db_session.rollback()
            raise

    async def no_rate_limit() -> None:
        return None

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[check_rate_limit] = no_rate_limit

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Users and tokens
# ---------------------------------------------------------------------------

async def create_user(
    db: AsyncSession,
    role: UserRole,
    payout_account_id: str | None = None,
    payout_status: PayoutStatus = PayoutStatus.NONE,
) -> User:
    user = User(
        user_id=uuid.uuid4(),
        role=role,
        display_name=f"Test {role.value}",
        email=f"{role.value}-{uuid.uuid4().hex[:8]}@example.com",
        payout_account_id=payout_account_id,
        payout_status=payout_status,
    )
    db.add(user)
    await db.commit()
    # Detached so a later rollback in the shared session cannot expire it.
    db.expunge(user)
    return user


def make_token(user_id: uuid.UUID, role: UserRole, ttl_seconds: int = 3600) -> str:
    return issue_token(
        IDP_PRIVATE_KEY, {"sub": str(user_id), "role": role.value}, ttl_seconds=ttl_seconds
    )


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user.user_id, user.role)}"}


@pytest_asyncio.fixture
async def employer(db_session: AsyncSession) -> User:
    return await create_user(db_session, UserRole.EMPLOYER)


@pytest_asyncio.fixture
async def freelancer(db_session: AsyncSession) -> User:
    """Freelancer with an active payout account."""
    return await create_user(
        db_session, UserRole.FREELANCER, payout_account_id="acct_freelancer",
        payout_status=PayoutStatus.ACTIVE,
    )


@pytest_asyncio.fixture
async def admin(db_session: AsyncSession) -> User:
    return await create_user(db_session, UserRole.ADMIN)


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------

def make_project_data(*amounts: str, budget: str | None = None) -> dict:
    """Project payload with one milestone per amount; budget defaults to their sum."""
    amounts = amounts or ("1000.00",)
    total = sum((Decimal(a) for a in amounts), Decimal("0.00"))
    return {
        "title": "Build a landing page",
        "description": "Responsive landing page with a signup form",
        "category": "web",
        "budget": budget if budget is not None else str(total),
        "required_skills": ["html", "css"],
        "milestones": [
            {"title": f"Milestone {i + 1}", "amount": amount}
            for i, amount in enumerate(amounts)
        ],
    }


def funding_event(payment_intent_id: str, project_id: uuid.UUID, amount_minor: int, event_id: str | None = None) -> dict:
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:12]}",
        "type": "payment_intent.succeeded",
        "data": {
            "object": {
                "id": payment_intent_id,
                "amount": amount_minor,
                "amount_received": amount_minor,
                "metadata": {"type": "escrow", "project_id": str(project_id)},
            }
        },
    }


# ---------------------------------------------------------------------------
# Flow helpers
# ---------------------------------------------------------------------------

async def post_project(client: AsyncClient, employer: User, *amounts: str) -> dict:
    resp = await client.post("/projects", json=make_project_data(*amounts), headers=auth_headers(employer))
    assert resp.status_code == 201, resp.text
    return resp.json()


async def assign(client: AsyncClient, employer: User, freelancer: User, project: dict) -> dict:
    """Freelancer applies and the employer approves. Returns the approval body."""
    pid = project["project_id"]
    resp = await client.post(
        f"/projects/{pid}/applications",
        json={"proposal": "I have built dozens of these."},
        headers=auth_headers(freelancer),
    )
    assert resp.status_code == 201, resp.text
    application_id = resp.json()["application_id"]
    resp = await client.post(
        f"/projects/{pid}/applications/{application_id}/approve", headers=auth_headers(employer)
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


async def send_event(client: AsyncClient, event: dict, signature: str = WEBHOOK_SIGNATURE):
    return await client.post(
        "/webhooks/payments",
        content=json.dumps(event),
        headers={"Stripe-Signature": signature, "Content-Type": "application/json"},
    )


async def fund(client: AsyncClient, project: dict, escrow: dict) -> None:
    amount_minor = int(Decimal(escrow["amount"]) * 100)
    event = funding_event(escrow["payment_intent_id"], uuid.UUID(project["project_id"]), amount_minor)
    resp = await send_event(client, event)
    assert resp.status_code == 200, resp.text


async def funded_project(
    client: AsyncClient, employer: User, freelancer: User, *amounts: str
) -> tuple[dict, dict]:
    """Project assigned to ``freelancer`` with a funded escrow. Returns (project, escrow)."""
    project = await post_project(client, employer, *amounts)
    approval = await assign(client, employer, freelancer, project)
    await fund(client, project, approval["escrow"])
    resp = await client.get(f"/projects/{project['project_id']}/escrow", headers=auth_headers(employer))
    assert resp.status_code == 200
    assert resp.json()["status"] == "funded"
    return approval["project"], resp.json()


async def deliver(client: AsyncClient, employer: User, freelancer: User, milestone_id: str) -> None:
    """Submit and approve one milestone."""
    resp = await client.post(
        f"/milestones/{milestone_id}/submit",
        json={"description": "Done", "attachments": ["https://files.example.com/site.zip"]},
        headers=auth_headers(freelancer),
    )
    assert resp.status_code == 200, resp.text
    resp = await client.post(f"/milestones/{milestone_id}/approve", headers=auth_headers(employer))
    assert resp.status_code == 200, resp.text
