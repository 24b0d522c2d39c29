"""Read-only payment reporting: escrow listing, statistics, participant history."""

import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.models.escrow import (
    Escrow,
    EscrowMilestone,
    EscrowMilestoneStatus,
    EscrowRefund,
    EscrowStatus,
)
from marketplace.models.project import Project
from marketplace.models.user import User, UserRole
from marketplace.utils.money import quantize


@dataclass
class EscrowListing:
    escrow: Escrow
    project_title: str
    employer_id: uuid.UUID
    freelancer_id: uuid.UUID | None


@dataclass
class StatusTotals:
    status: EscrowStatus
    count: int
    total_amount: Decimal
    released_amount: Decimal
    refunded_amount: Decimal

    @property
    def held_amount(self) -> Decimal:
        return self.total_amount - self.released_amount - self.refunded_amount


@dataclass
class PaymentStatistics:
    by_status: list[StatusTotals]
    total_projects: int
    total_employers: int
    total_freelancers: int


@dataclass
class PaymentHistoryItem:
    kind: str
    project_id: uuid.UUID
    project_title: str
    escrow_id: uuid.UUID
    milestone_id: uuid.UUID | None
    amount: Decimal
    reference: str | None
    occurred_at: datetime


async def list_escrows(
    db: AsyncSession, status: EscrowStatus | None = None
) -> list[EscrowListing]:
    """Every escrow with its project's title and parties, newest first."""
    query = (
        select(Escrow, Project.title, Project.employer_id, Project.freelancer_id)
        .join(Project, Project.project_id == Escrow.project_id)
        .order_by(Escrow.created_at.desc())
    )
    if status is not None:
        query = query.where(Escrow.status == status)
    result = await db.execute(query)
    return [
        EscrowListing(escrow=escrow, project_title=title, employer_id=employer_id, freelancer_id=freelancer_id)
        for escrow, title, employer_id, freelancer_id in result.all()
    ]


async def _count(db: AsyncSession, query) -> int:  # type: ignore[no-untyped-def]
    result = await db.execute(query)
    return result.scalar() or 0


async def payment_statistics(db: AsyncSession) -> PaymentStatistics:
    """Escrow totals grouped by status, plus marketplace head counts."""
    zero = Decimal("0.00")
    result = await db.execute(
        select(
            Escrow.status,
            func.count(),
            func.coalesce(func.sum(Escrow.amount), zero),
            func.coalesce(func.sum(Escrow.released_amount), zero),
            func.coalesce(func.sum(Escrow.refunded_amount), zero),
        )
        .group_by(Escrow.status)
    )
    by_status = [
        StatusTotals(
            status=status,
            count=count,
            total_amount=quantize(total),
            released_amount=quantize(released),
            refunded_amount=quantize(refunded),
        )
        for status, count, total, released, refunded in result.all()
    ]
    by_status.sort(key=lambda s: list(EscrowStatus).index(s.status))

    return PaymentStatistics(
        by_status=by_status,
        total_projects=await _count(db, select(func.count()).select_from(Project)),
        total_employers=await _count(
            db, select(func.count()).select_from(User).where(User.role == UserRole.EMPLOYER)
        ),
        total_freelancers=await _count(
            db, select(func.count()).select_from(User).where(User.role == UserRole.FREELANCER)
        ),
    )


async def payment_history(
    db: AsyncSession, user_id: uuid.UUID, project_id: uuid.UUID | None = None
) -> list[PaymentHistoryItem]:
    """Releases and refunds on projects where the user is employer or freelancer, newest first."""
    party = or_(Project.employer_id == user_id, Project.freelancer_id == user_id)
    scope = [party] if project_id is None else [party, Project.project_id == project_id]

    releases = await db.execute(
        select(EscrowMilestone, Escrow.project_id, Project.title)
        .join(Escrow, Escrow.escrow_id == EscrowMilestone.escrow_id)
        .join(Project, Project.project_id == Escrow.project_id)
        .where(EscrowMilestone.status == EscrowMilestoneStatus.RELEASED, *scope)
    )
    items = [
        PaymentHistoryItem(
            kind="release",
            project_id=pid,
            project_title=title,
            escrow_id=entry.escrow_id,
            milestone_id=entry.milestone_id,
            amount=entry.amount,
            reference=entry.transfer_id,
            occurred_at=entry.release_date,
        )
        for entry, pid, title in releases.all()
    ]

    refunds = await db.execute(
        select(EscrowRefund, Escrow.project_id, Project.title)
        .join(Escrow, Escrow.escrow_id == EscrowRefund.escrow_id)
        .join(Project, Project.project_id == Escrow.project_id)
        .where(*scope)
    )
    items.extend(
        PaymentHistoryItem(
            kind="refund",
            project_id=pid,
            project_title=title,
            escrow_id=refund.escrow_id,
            milestone_id=None,
            amount=refund.amount,
            reference=refund.processor_refund_id,
            occurred_at=refund.created_at,
        )
        for refund, pid, title in refunds.all()
    )

    items.sort(key=lambda i: i.occurred_at, reverse=True)
    return items
