"""Tests for payment reporting: escrow listing, statistics, participant history."""

from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.models.user import UserRole
from tests.conftest import (
    assign,
    auth_headers,
    create_user,
    deliver,
    funded_project,
    post_project,
)


async def _release(client: AsyncClient, employer, escrow: dict, milestone_id: str) -> dict:
    resp = await client.post(
        f"/escrow/{escrow['escrow_id']}/milestones/{milestone_id}/release", headers=auth_headers(employer)
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


@pytest.mark.asyncio
async def test_admin_lists_all_escrows(client: AsyncClient, employer, freelancer, admin) -> None:
    funded, funded_escrow = await funded_project(client, employer, freelancer)
    pending = await post_project(client, employer, "250.00")
    await assign(client, employer, freelancer, pending)

    resp = await client.get("/escrow", headers=auth_headers(admin))
    assert resp.status_code == 200
    rows = {r["project_id"]: r for r in resp.json()}
    assert set(rows) == {funded["project_id"], pending["project_id"]}
    row = rows[funded["project_id"]]
    assert row["escrow_id"] == funded_escrow["escrow_id"]
    assert row["project_title"] == "Build a landing page"
    assert row["employer_id"] == str(employer.user_id)
    assert row["freelancer_id"] == str(freelancer.user_id)
    assert row["status"] == "funded"
    assert Decimal(row["held_amount"]) == Decimal("1000.00")
    assert "client_secret" not in row

    resp = await client.get("/escrow", params={"status": "pending"}, headers=auth_headers(admin))
    [row] = resp.json()
    assert row["project_id"] == pending["project_id"]
    assert Decimal(row["amount"]) == Decimal("250.00")


@pytest.mark.asyncio
async def test_reports_are_admin_only(client: AsyncClient, employer, freelancer) -> None:
    await funded_project(client, employer, freelancer)
    for user in (employer, freelancer):
        assert (await client.get("/escrow", headers=auth_headers(user))).status_code == 403
        assert (await client.get("/escrow/statistics", headers=auth_headers(user))).status_code == 403


@pytest.mark.asyncio
async def test_payment_statistics_grouped_by_status(client: AsyncClient, employer, freelancer, admin) -> None:
    project, escrow = await funded_project(client, employer, freelancer, "400.00", "600.00")
    first = project["milestones"][0]["milestone_id"]
    await deliver(client, employer, freelancer, first)
    await _release(client, employer, escrow, first)
    pending = await post_project(client, employer, "250.00")
    await assign(client, employer, freelancer, pending)

    resp = await client.get("/escrow/statistics", headers=auth_headers(admin))
    assert resp.status_code == 200
    body = resp.json()
    by_status = {s["status"]: s for s in body["by_status"]}
    assert set(by_status) == {"pending", "funded"}
    funded = by_status["funded"]
    assert funded["count"] == 1
    assert Decimal(funded["total_amount"]) == Decimal("1000.00")
    assert Decimal(funded["released_amount"]) == Decimal("400.00")
    assert Decimal(funded["held_amount"]) == Decimal("600.00")
    assert by_status["pending"]["count"] == 1
    assert Decimal(by_status["pending"]["total_amount"]) == Decimal("250.00")
    assert body["total_projects"] == 2
    assert body["total_employers"] == 1
    assert body["total_freelancers"] == 1


@pytest.mark.asyncio
async def test_escrow_details_by_id(
    client: AsyncClient, db_session: AsyncSession, employer, freelancer, admin
) -> None:
    _, escrow = await funded_project(client, employer, freelancer)
    url = f"/escrow/{escrow['escrow_id']}"

    resp = await client.get(url, headers=auth_headers(employer))
    assert resp.status_code == 200
    assert resp.json()["status"] == "funded"
    assert resp.json()["client_secret"] is not None
    resp = await client.get(url, headers=auth_headers(admin))
    assert resp.status_code == 200
    assert resp.json()["client_secret"] is None

    outsider = await create_user(db_session, UserRole.FREELANCER)
    resp = await client.get(url, headers=auth_headers(outsider))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_participants_see_releases_and_refunds(
    client: AsyncClient, db_session: AsyncSession, employer, freelancer, admin
) -> None:
    project, escrow = await funded_project(client, employer, freelancer, "400.00", "600.00")
    first = project["milestones"][0]["milestone_id"]
    await deliver(client, employer, freelancer, first)
    released = await _release(client, employer, escrow, first)
    resp = await client.post(
        f"/escrow/{escrow['escrow_id']}/refund",
        json={"amount": "100.00", "reason": "Scope reduced"},
        headers=auth_headers(admin),
    )
    assert resp.status_code == 200
    refund_id = resp.json()["refunds"][0]["processor_refund_id"]

    for user in (employer, freelancer):
        resp = await client.get("/users/me/payments", headers=auth_headers(user))
        assert resp.status_code == 200
        refund, release = resp.json()
        assert refund["kind"] == "refund"
        assert refund["reference"] == refund_id
        assert refund["milestone_id"] is None
        assert Decimal(refund["amount"]) == Decimal("100.00")
        assert release["kind"] == "release"
        assert release["milestone_id"] == first
        assert release["reference"] == released["entries"][0]["transfer_id"]
        assert Decimal(release["amount"]) == Decimal("400.00")
        assert release["project_title"] == "Build a landing page"

    outsider = await create_user(db_session, UserRole.EMPLOYER)
    resp = await client.get("/users/me/payments", headers=auth_headers(outsider))
    assert resp.json() == []


@pytest.mark.asyncio
async def test_payment_history_filtered_by_project(client: AsyncClient, employer, freelancer, admin) -> None:
    one, one_escrow = await funded_project(client, employer, freelancer)
    two, two_escrow = await funded_project(client, employer, freelancer)
    for escrow in (one_escrow, two_escrow):
        resp = await client.post(f"/escrow/{escrow['escrow_id']}/refund", json={}, headers=auth_headers(admin))
        assert resp.status_code == 200

    resp = await client.get("/users/me/payments", headers=auth_headers(employer))
    assert len(resp.json()) == 2
    resp = await client.get(
        "/users/me/payments", params={"project_id": two["project_id"]}, headers=auth_headers(employer)
    )
    [entry] = resp.json()
    assert entry["project_id"] == two["project_id"]
    assert entry["escrow_id"] == two_escrow["escrow_id"]
    assert Decimal(entry["amount"]) == Decimal("1000.00")
