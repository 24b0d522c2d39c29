"""Tests for recovering from a ledger write that fails after the processor moved money."""

import uuid
from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.errors import ConsistencyError
from marketplace.models.reconciliation import ReconciliationKind, ReconciliationStatus
from marketplace.services import escrow as escrow_service
from marketplace.services import reconciliation as reconciliation_service
from tests.conftest import auth_headers, deliver, funded_project


def _fail_next_commit(monkeypatch: pytest.MonkeyPatch) -> None:
    """The next commit raises as if the connection dropped; later commits go through."""
    real_commit = AsyncSession.commit
    state = {"failed": False}

    async def flaky_commit(self: AsyncSession) -> None:
        if not state["failed"]:
            state["failed"] = True
            raise OperationalError("COMMIT", {}, Exception("connection lost"))
        await real_commit(self)

    monkeypatch.setattr(AsyncSession, "commit", flaky_commit)


@pytest.mark.asyncio
async def test_release_with_failed_commit_is_flagged_and_reconciled(
    client: AsyncClient, db_session: AsyncSession, employer, freelancer, admin, gateway, monkeypatch
) -> None:
    project, escrow = await funded_project(client, employer, freelancer)
    pid = project["project_id"]
    mid = project["milestones"][0]["milestone_id"]
    await deliver(client, employer, freelancer, mid)

    _fail_next_commit(monkeypatch)
    with pytest.raises(ConsistencyError) as excinfo:
        await escrow_service.release_milestone(
            db_session, uuid.UUID(escrow["escrow_id"]), uuid.UUID(mid), employer.user_id, gateway
        )
    record_id = excinfo.value.reconciliation_id
    assert record_id is not None
    assert len(gateway.calls_to("create_transfer")) == 1

    # The transfer happened but the ledger still shows the milestone unpaid.
    resp = await client.get(f"/projects/{pid}", headers=auth_headers(employer))
    assert resp.json()["milestones"][0]["status"] == "approved"
    resp = await client.get(f"/projects/{pid}/escrow", headers=auth_headers(employer))
    assert resp.json()["status"] == "funded"
    assert Decimal(resp.json()["released_amount"]) == Decimal("0.00")

    resp = await client.get("/reconciliation", headers=auth_headers(admin))
    assert resp.status_code == 200
    [record] = resp.json()
    assert record["record_id"] == str(record_id)
    assert record["kind"] == "release"
    assert record["status"] == "open"
    assert record["milestone_id"] == mid
    assert record["processor_reference"].startswith("tr_")
    assert "connection lost" in record["error"]

    resp = await client.post(f"/reconciliation/{record_id}/apply", headers=auth_headers(admin))
    assert resp.status_code == 200
    assert resp.json()["status"] == "resolved"
    assert resp.json()["resolved_at"] is not None

    resp = await client.get(f"/projects/{pid}", headers=auth_headers(employer))
    assert resp.json()["status"] == "completed"
    assert resp.json()["milestones"][0]["status"] == "paid"
    resp = await client.get(f"/projects/{pid}/escrow", headers=auth_headers(employer))
    body = resp.json()
    assert body["status"] == "released"
    assert body["entries"][0]["transfer_id"] == record["processor_reference"]

    # Applying again changes nothing and moves no money.
    resp = await client.post(f"/reconciliation/{record_id}/apply", headers=auth_headers(admin))
    assert resp.status_code == 200
    resp = await client.get(f"/escrow/{escrow['escrow_id']}/audit", headers=auth_headers(employer))
    assert [e["action"] for e in resp.json()].count("released") == 1
    assert len(gateway.calls_to("create_transfer")) == 1

    resp = await client.get("/reconciliation", headers=auth_headers(admin))
    assert resp.json() == []


@pytest.mark.asyncio
async def test_refund_with_failed_commit_is_reconciled_once(
    client: AsyncClient, db_session: AsyncSession, employer, freelancer, admin, gateway, monkeypatch
) -> None:
    project, escrow = await funded_project(client, employer, freelancer)
    escrow_id = uuid.UUID(escrow["escrow_id"])

    _fail_next_commit(monkeypatch)
    with pytest.raises(ConsistencyError) as excinfo:
        await escrow_service.refund_escrow(
            db_session, escrow_id, "Scope reduced", gateway, amount=Decimal("250.00"), actor_id=admin.user_id
        )
    record_id = excinfo.value.reconciliation_id

    [open_record] = await reconciliation_service.list_open(db_session)
    assert open_record.kind == ReconciliationKind.REFUND
    assert open_record.amount == Decimal("250.00")
    refund_reference = open_record.processor_reference

    record = await reconciliation_service.reconcile(db_session, record_id)
    assert record.status == ReconciliationStatus.RESOLVED
    record = await reconciliation_service.reconcile(db_session, record_id)
    assert record.status == ReconciliationStatus.RESOLVED

    resp = await client.get(f"/projects/{project['project_id']}/escrow", headers=auth_headers(employer))
    body = resp.json()
    assert body["status"] == "funded"
    assert Decimal(body["refunded_amount"]) == Decimal("250.00")
    assert Decimal(body["held_amount"]) == Decimal("750.00")
    assert [r["processor_refund_id"] for r in body["refunds"]] == [refund_reference]
    assert len(gateway.calls_to("create_refund")) == 1


@pytest.mark.asyncio
async def test_reconciliation_is_admin_only(client: AsyncClient, employer) -> None:
    resp = await client.get("/reconciliation", headers=auth_headers(employer))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_unknown_reconciliation_record(client: AsyncClient, admin) -> None:
    resp = await client.post(
        "/reconciliation/00000000-0000-0000-0000-000000000000/apply", headers=auth_headers(admin)
    )
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_open_record_freezes_other_money_movement(
    client: AsyncClient, db_session: AsyncSession, employer, freelancer, admin, gateway, monkeypatch
) -> None:
    project, escrow = await funded_project(client, employer, freelancer)
    pid = project["project_id"]
    mid = project["milestones"][0]["milestone_id"]
    await deliver(client, employer, freelancer, mid)

    _fail_next_commit(monkeypatch)
    with pytest.raises(ConsistencyError) as excinfo:
        await escrow_service.release_milestone(
            db_session, uuid.UUID(escrow["escrow_id"]), uuid.UUID(mid), employer.user_id, gateway
        )
    record_id = excinfo.value.reconciliation_id

    # The transferred funds still look held locally; nothing may move them again.
    resp = await client.post(f"/escrow/{escrow['escrow_id']}/refund", json={}, headers=auth_headers(admin))
    assert resp.status_code == 409
    assert str(record_id) in resp.json()["detail"]
    resp = await client.post(f"/projects/{pid}/reject", json={"reason": "Changed plans"}, headers=auth_headers(employer))
    assert resp.status_code == 409
    resp = await client.post(
        f"/escrow/{escrow['escrow_id']}/milestones/{mid}/release", headers=auth_headers(employer)
    )
    assert resp.status_code == 409
    assert gateway.calls_to("create_refund") == []
    assert len(gateway.calls_to("create_transfer")) == 1

    resp = await client.post(f"/reconciliation/{record_id}/apply", headers=auth_headers(admin))
    assert resp.json()["status"] == "resolved"
    resp = await client.get(f"/projects/{pid}/escrow", headers=auth_headers(employer))
    body = resp.json()
    assert body["status"] == "released"
    assert Decimal(body["released_amount"]) == Decimal("1000.00")
    assert Decimal(body["refunded_amount"]) == Decimal("0.00")


@pytest.mark.asyncio
async def test_record_contradicted_by_ledger_stays_open(
    client: AsyncClient, db_session: AsyncSession, employer, freelancer, admin, gateway
) -> None:
    project, escrow = await funded_project(client, employer, freelancer)
    mid = project["milestones"][0]["milestone_id"]
    await deliver(client, employer, freelancer, mid)
    resp = await client.post(
        f"/escrow/{escrow['escrow_id']}/milestones/{mid}/release", headers=auth_headers(employer)
    )
    assert resp.status_code == 200
    paid_transfer = resp.json()["entries"][0]["transfer_id"]

    # A second transfer for the same milestone that the ledger never recorded.
    record_id = await reconciliation_service.flag(
        db_session,
        ReconciliationKind.RELEASE,
        project_id=uuid.UUID(project["project_id"]),
        escrow_id=uuid.UUID(escrow["escrow_id"]),
        processor_reference="tr_stray",
        amount=Decimal("1000.00"),
        milestone_id=uuid.UUID(mid),
    )

    resp = await client.post(f"/reconciliation/{record_id}/apply", headers=auth_headers(admin))
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "open"
    assert body["resolved_at"] is None
    assert "manual review" in body["error"]

    resp = await client.get(f"/projects/{project['project_id']}/escrow", headers=auth_headers(employer))
    assert resp.json()["entries"][0]["transfer_id"] == paid_transfer
    assert Decimal(resp.json()["released_amount"]) == Decimal("1000.00")
    resp = await client.get("/reconciliation", headers=auth_headers(admin))
    assert [r["record_id"] for r in resp.json()] == [str(record_id)]
