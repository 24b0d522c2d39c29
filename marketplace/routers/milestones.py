"""Milestone work endpoints: submit, approve, reject."""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.auth.middleware import Principal, get_principal
from marketplace.auth.rate_limit import check_rate_limit
from marketplace.database import get_db
from marketplace.schemas.project import MilestoneRejection, MilestoneResponse, MilestoneSubmission
from marketplace.services import milestone as milestone_service

router = APIRouter(prefix="/milestones", tags=["milestones"])


@router.post("/{milestone_id}/submit", response_model=MilestoneResponse, dependencies=[Depends(check_rate_limit)])
async def submit_milestone(
    milestone_id: uuid.UUID,
    data: MilestoneSubmission,
    auth: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> MilestoneResponse:
    """Assigned freelancer submits (or resubmits) work."""
    milestone = await milestone_service.submit(db, milestone_id, auth.user_id, data)
    return MilestoneResponse.model_validate(milestone)


@router.post("/{milestone_id}/approve", response_model=MilestoneResponse, dependencies=[Depends(check_rate_limit)])
async def approve_milestone(
    milestone_id: uuid.UUID,
    auth: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> MilestoneResponse:
    """Employer accepts the work. Payment is a separate release call."""
    milestone = await milestone_service.approve(db, milestone_id, auth.user_id)
    return MilestoneResponse.model_validate(milestone)


@router.post("/{milestone_id}/reject", response_model=MilestoneResponse, dependencies=[Depends(check_rate_limit)])
async def reject_milestone(
    milestone_id: uuid.UUID,
    data: MilestoneRejection,
    auth: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> MilestoneResponse:
    milestone = await milestone_service.reject(db, milestone_id, auth.user_id, data.reason)
    return MilestoneResponse.model_validate(milestone)
