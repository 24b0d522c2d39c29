"""Tests for the payment processor webhook endpoint."""

import uuid
from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.models.payment_event import PaymentEvent
from marketplace.models.user import PayoutStatus, UserRole
from tests.conftest import assign, auth_headers, create_user, funding_event, post_project, send_event


async def _assigned(client: AsyncClient, employer, freelancer) -> tuple[dict, dict]:
    project = await post_project(client, employer)
    approval = await assign(client, employer, freelancer, project)
    return approval["project"], approval["escrow"]


def _minor(escrow: dict) -> int:
    return int(Decimal(escrow["amount"]) * 100)


@pytest.mark.asyncio
async def test_funding_event_marks_escrow_funded(client: AsyncClient, employer, freelancer) -> None:
    project, escrow = await _assigned(client, employer, freelancer)
    event = funding_event(escrow["payment_intent_id"], uuid.UUID(project["project_id"]), _minor(escrow))

    resp = await send_event(client, event)
    assert resp.status_code == 200
    assert resp.json() == {
        "received": True,
        "event_id": event["id"],
        "status": "processed",
        "duplicate": False,
    }

    resp = await client.get(f"/projects/{project['project_id']}/escrow", headers=auth_headers(employer))
    assert resp.json()["status"] == "funded"
    assert resp.json()["funded_at"] is not None


@pytest.mark.asyncio
async def test_duplicate_delivery_is_acknowledged_once(client: AsyncClient, employer, freelancer) -> None:
    project, escrow = await _assigned(client, employer, freelancer)
    event = funding_event(
        escrow["payment_intent_id"], uuid.UUID(project["project_id"]), _minor(escrow), event_id="evt_dup"
    )

    first = await send_event(client, event)
    second = await send_event(client, event)
    assert first.json()["duplicate"] is False
    assert second.status_code == 200
    assert second.json()["duplicate"] is True
    assert second.json()["status"] == "processed"

    resp = await client.get(f"/escrow/{escrow['escrow_id']}/audit", headers=auth_headers(employer))
    assert [e["action"] for e in resp.json()].count("funded") == 1


@pytest.mark.asyncio
async def test_new_event_for_funded_escrow_is_a_noop(client: AsyncClient, employer, freelancer) -> None:
    project, escrow = await _assigned(client, employer, freelancer)
    pid = uuid.UUID(project["project_id"])
    await send_event(client, funding_event(escrow["payment_intent_id"], pid, _minor(escrow)))

    resp = await send_event(client, funding_event(escrow["payment_intent_id"], pid, _minor(escrow)))
    assert resp.status_code == 200
    assert resp.json()["duplicate"] is False

    resp = await client.get(f"/escrow/{escrow['escrow_id']}/audit", headers=auth_headers(employer))
    assert [e["action"] for e in resp.json()].count("funded") == 1


@pytest.mark.asyncio
async def test_invalid_signature_rejected(client: AsyncClient, db_session: AsyncSession, employer, freelancer) -> None:
    project, escrow = await _assigned(client, employer, freelancer)
    event = funding_event(escrow["payment_intent_id"], uuid.UUID(project["project_id"]), _minor(escrow))

    resp = await send_event(client, event, signature="t=1,v1=forged")
    assert resp.status_code == 400

    result = await db_session.execute(select(PaymentEvent).where(PaymentEvent.event_id == event["id"]))
    assert result.scalar_one_or_none() is None
    resp = await client.get(f"/projects/{project['project_id']}/escrow", headers=auth_headers(employer))
    assert resp.json()["status"] == "pending"


@pytest.mark.asyncio
async def test_missing_signature_header_rejected(client: AsyncClient) -> None:
    resp = await client.post("/webhooks/payments", json={"id": "evt_1", "type": "payment_intent.succeeded"})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_non_escrow_payment_intent_ignored(client: AsyncClient) -> None:
    event = {
        "id": "evt_other",
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": "pi_unrelated", "amount_received": 500, "metadata": {}}},
    }
    resp = await send_event(client, event)
    assert resp.status_code == 200
    assert resp.json()["status"] == "ignored"


@pytest.mark.asyncio
async def test_unknown_event_type_ignored(client: AsyncClient) -> None:
    resp = await send_event(client, {"id": "evt_charge", "type": "charge.captured", "data": {"object": {}}})
    assert resp.status_code == 200
    assert resp.json()["status"] == "ignored"


@pytest.mark.asyncio
async def test_funding_for_unknown_escrow_is_logged_noop(client: AsyncClient) -> None:
    event = funding_event("pi_missing", uuid.uuid4(), 1000)
    resp = await send_event(client, event)
    assert resp.status_code == 200
    assert resp.json()["status"] == "processed"


@pytest.mark.asyncio
async def test_payment_failed_leaves_escrow_pending(client: AsyncClient, employer, freelancer) -> None:
    project, escrow = await _assigned(client, employer, freelancer)
    event = {
        "id": "evt_failed",
        "type": "payment_intent.payment_failed",
        "data": {
            "object": {
                "id": escrow["payment_intent_id"],
                "last_payment_error": {"message": "Your card was declined."},
                "metadata": {"type": "escrow", "project_id": project["project_id"]},
            }
        },
    }
    resp = await send_event(client, event)
    assert resp.json()["status"] == "processed"

    resp = await client.get(f"/projects/{project['project_id']}/escrow", headers=auth_headers(employer))
    assert resp.json()["status"] == "pending"


@pytest.mark.asyncio
async def test_funds_for_cancelled_escrow_are_refunded(
    client: AsyncClient, employer, freelancer, admin, gateway
) -> None:
    project, escrow = await _assigned(client, employer, freelancer)
    pid = project["project_id"]
    resp = await client.post(f"/projects/{pid}/cancel", headers=auth_headers(employer))
    assert resp.status_code == 200

    resp = await send_event(client, funding_event(escrow["payment_intent_id"], uuid.UUID(pid), _minor(escrow)))
    assert resp.status_code == 200
    # A second delivery under another event id queues nothing new.
    resp = await send_event(client, funding_event(escrow["payment_intent_id"], uuid.UUID(pid), _minor(escrow)))
    assert resp.status_code == 200

    resp = await client.get(f"/projects/{pid}/escrow", headers=auth_headers(employer))
    assert resp.json()["status"] == "cancelled"

    resp = await client.get("/reconciliation", headers=auth_headers(admin))
    [record] = resp.json()
    assert record["kind"] == "late_funding"
    assert record["processor_reference"] == escrow["payment_intent_id"]
    assert Decimal(record["amount"]) == Decimal(escrow["amount"])
    assert gateway.calls_to("create_refund") == []

    resp = await client.post(f"/reconciliation/{record['record_id']}/apply", headers=auth_headers(admin))
    assert resp.status_code == 200
    assert resp.json()["status"] == "resolved"
    [refund] = gateway.calls_to("create_refund")
    assert refund["payment_intent_id"] == escrow["payment_intent_id"]
    assert refund["amount_minor"] is None
    assert refund["idempotency_key"] == f"refund:{escrow['escrow_id']}:late-funding"

    resp = await client.post(f"/reconciliation/{record['record_id']}/apply", headers=auth_headers(admin))
    assert resp.status_code == 200
    assert len(gateway.calls_to("create_refund")) == 1

    resp = await client.get(f"/escrow/{escrow['escrow_id']}/audit", headers=auth_headers(employer))
    [late] = [e for e in resp.json() if e["action"] == "refunded"]
    assert late["metadata"]["late_funding"] is True
    assert late["metadata"]["refund_id"] == "re_2"
    resp = await client.get(f"/projects/{pid}/escrow", headers=auth_headers(employer))
    assert resp.json()["status"] == "cancelled"


@pytest.mark.asyncio
async def test_account_updated_activates_payout_account(client: AsyncClient, db_session: AsyncSession) -> None:
    user = await create_user(
        db_session, UserRole.FREELANCER, payout_account_id="acct_onboarding", payout_status=PayoutStatus.PENDING
    )
    event = {
        "id": "evt_acct",
        "type": "account.updated",
        "data": {"object": {"id": "acct_onboarding", "details_submitted": True, "payouts_enabled": True}},
    }
    resp = await send_event(client, event)
    assert resp.json()["status"] == "processed"

    resp = await client.get("/users/me", headers=auth_headers(user))
    assert resp.json()["payout_status"] == "active"
