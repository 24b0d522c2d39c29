"""Dispute endpoints."""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.auth.middleware import Principal, get_principal
from marketplace.auth.rate_limit import check_rate_limit
from marketplace.database import get_db
from marketplace.errors import AuthorizationError
from marketplace.models.dispute import DisputeStatus
from marketplace.schemas.dispute import (
    DisputeCreate,
    DisputeDismissal,
    DisputeMessageCreate,
    DisputeResolution,
    DisputeResponse,
)
from marketplace.services import dispute as dispute_service
from marketplace.services.aggregate import load_project
from marketplace.services.gateway import PaymentGateway, get_gateway

router = APIRouter(prefix="/disputes", tags=["disputes"])


@router.post("", response_model=DisputeResponse, status_code=201, dependencies=[Depends(check_rate_limit)])
async def raise_dispute(
    data: DisputeCreate,
    auth: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> DisputeResponse:
    """Employer or assigned freelancer disputes an active project. Freezes releases and refunds."""
    dispute = await dispute_service.raise_dispute(db, auth.user_id, data)
    return DisputeResponse.model_validate(dispute)


@router.get("", response_model=list[DisputeResponse], dependencies=[Depends(check_rate_limit)])
async def list_disputes(
    status: DisputeStatus | None = Query(None),
    project_id: uuid.UUID | None = Query(None),
    auth: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> list[DisputeResponse]:
    """Administrators see every dispute; anyone else only those on their own projects."""
    participant_id = None if auth.is_admin else auth.user_id
    disputes = await dispute_service.list_disputes(
        db, status=status, project_id=project_id, participant_id=participant_id
    )
    return [DisputeResponse.model_validate(d) for d in disputes]


@router.get("/{dispute_id}", response_model=DisputeResponse, dependencies=[Depends(check_rate_limit)])
async def get_dispute(
    dispute_id: uuid.UUID,
    auth: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> DisputeResponse:
    dispute = await dispute_service.get_dispute(db, dispute_id)
    if not auth.is_admin:
        project = await load_project(db, dispute.project_id)
        if not project.is_participant(auth.user_id):
            raise AuthorizationError("Not a party to this dispute")
    return DisputeResponse.model_validate(dispute)


@router.post("/{dispute_id}/messages", response_model=DisputeResponse, dependencies=[Depends(check_rate_limit)])
async def add_message(
    dispute_id: uuid.UUID,
    data: DisputeMessageCreate,
    auth: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> DisputeResponse:
    dispute = await dispute_service.add_message(db, dispute_id, auth.user_id, data)
    return DisputeResponse.model_validate(dispute)


@router.post("/{dispute_id}/review", response_model=DisputeResponse, dependencies=[Depends(check_rate_limit)])
async def start_review(
    dispute_id: uuid.UUID,
    auth: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> DisputeResponse:
    dispute = await dispute_service.start_review(db, dispute_id, auth.user_id)
    return DisputeResponse.model_validate(dispute)


@router.post("/{dispute_id}/dismiss", response_model=DisputeResponse, dependencies=[Depends(check_rate_limit)])
async def dismiss_dispute(
    dispute_id: uuid.UUID,
    data: DisputeDismissal | None = None,
    auth: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> DisputeResponse:
    """Reject the dispute; the project returns to its prior status."""
    notes = data.notes if data is not None else None
    dispute = await dispute_service.dismiss(db, dispute_id, auth.user_id, notes)
    return DisputeResponse.model_validate(dispute)


@router.post("/{dispute_id}/resolve", response_model=DisputeResponse, dependencies=[Depends(check_rate_limit)])
async def resolve_dispute(
    dispute_id: uuid.UUID,
    data: DisputeResolution,
    auth: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> DisputeResponse:
    """Administrator decides the dispute. Refunds and settlements happen here."""
    dispute = await dispute_service.resolve(db, dispute_id, auth.user_id, data, gateway)
    return DisputeResponse.model_validate(dispute)
