"""Escrow endpoints: release, refund, audit trail and administrator reporting."""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.auth.middleware import Principal, get_principal
from marketplace.auth.rate_limit import check_rate_limit
from marketplace.database import get_db
from marketplace.errors import AuthorizationError
from marketplace.models.escrow import EscrowStatus
from marketplace.schemas.escrow import (
    AuditLogEntry,
    EscrowResponse,
    EscrowSummary,
    PaymentStatisticsResponse,
    RefundRequest,
)
from marketplace.services import escrow as escrow_service
from marketplace.services import payments as payment_service
from marketplace.services.aggregate import load_project
from marketplace.services.gateway import PaymentGateway, get_gateway

router = APIRouter(prefix="/escrow", tags=["escrow"])


def _assert_admin(auth: Principal) -> None:
    if not auth.is_admin:
        raise AuthorizationError("Only an administrator can view payment reports")


@router.get("", response_model=list[EscrowSummary], dependencies=[Depends(check_rate_limit)])
async def list_escrows(
    status: EscrowStatus | None = None,
    auth: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> list[EscrowSummary]:
    """All escrows with their project and parties, newest first."""
    _assert_admin(auth)
    listings = await payment_service.list_escrows(db, status)
    return [
        EscrowSummary(
            escrow_id=item.escrow.escrow_id,
            project_id=item.escrow.project_id,
            project_title=item.project_title,
            employer_id=item.employer_id,
            freelancer_id=item.freelancer_id,
            amount=item.escrow.amount,
            currency=item.escrow.currency,
            status=item.escrow.status.value,
            released_amount=item.escrow.released_amount,
            refunded_amount=item.escrow.refunded_amount,
            held_amount=item.escrow.held_amount,
            created_at=item.escrow.created_at,
            funded_at=item.escrow.funded_at,
        )
        for item in listings
    ]


@router.get("/statistics", response_model=PaymentStatisticsResponse, dependencies=[Depends(check_rate_limit)])
async def get_payment_statistics(
    auth: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> PaymentStatisticsResponse:
    _assert_admin(auth)
    stats = await payment_service.payment_statistics(db)
    return PaymentStatisticsResponse.model_validate(stats)


@router.get("/{escrow_id}", response_model=EscrowResponse, dependencies=[Depends(check_rate_limit)])
async def get_escrow(
    escrow_id: uuid.UUID,
    auth: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> EscrowResponse:
    """Full escrow details for a participant or administrator."""
    escrow = await escrow_service.get_escrow(db, escrow_id)
    project = await load_project(db, escrow.project_id)
    if not project.is_participant(auth.user_id) and not auth.is_admin:
        raise AuthorizationError("Not a party to this escrow")
    return EscrowResponse.for_viewer(escrow, auth.user_id, project.employer_id)


@router.post("/{escrow_id}/milestones/{milestone_id}/release", response_model=EscrowResponse, dependencies=[Depends(check_rate_limit)])
async def release_milestone(
    escrow_id: uuid.UUID,
    milestone_id: uuid.UUID,
    auth: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> EscrowResponse:
    """Pay an approved milestone to the freelancer's payout account."""
    escrow = await escrow_service.release_milestone(db, escrow_id, milestone_id, auth.user_id, gateway)
    project = await load_project(db, escrow.project_id)
    return EscrowResponse.for_viewer(escrow, auth.user_id, project.employer_id)


@router.post("/{escrow_id}/refund", response_model=EscrowResponse, dependencies=[Depends(check_rate_limit)])
async def refund_escrow(
    escrow_id: uuid.UUID,
    data: RefundRequest,
    auth: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> EscrowResponse:
    """Administrator refunds held funds to the employer, fully or in part."""
    if not auth.is_admin:
        raise AuthorizationError("Only an administrator can refund escrow directly")
    escrow = await escrow_service.refund_escrow(
        db, escrow_id, data.reason, gateway, amount=data.amount, actor_id=auth.user_id
    )
    project = await load_project(db, escrow.project_id)
    return EscrowResponse.for_viewer(escrow, auth.user_id, project.employer_id)


@router.get("/{escrow_id}/audit", response_model=list[AuditLogEntry], dependencies=[Depends(check_rate_limit)])
async def get_audit_log(
    escrow_id: uuid.UUID,
    auth: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> list[AuditLogEntry]:
    escrow = await escrow_service.get_escrow(db, escrow_id)
    project = await load_project(db, escrow.project_id)
    if not project.is_participant(auth.user_id) and not auth.is_admin:
        raise AuthorizationError("Not a party to this escrow")
    entries = await escrow_service.list_audit_log(db, escrow_id)
    return [AuditLogEntry.model_validate(e) for e in entries]
