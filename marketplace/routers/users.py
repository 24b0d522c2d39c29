"""Current user, payout account and payment history endpoints."""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.auth.middleware import Principal, get_principal
from marketplace.auth.rate_limit import check_rate_limit
from marketplace.database import get_db
from marketplace.schemas.escrow import PaymentHistoryEntry
from marketplace.schemas.user import PayoutOnboarding, UserResponse
from marketplace.services import payments as payment_service
from marketplace.services import users as user_service
from marketplace.services.gateway import PaymentGateway, get_gateway

router = APIRouter(prefix="/users", tags=["users"])


@router.get("/me", response_model=UserResponse, dependencies=[Depends(check_rate_limit)])
async def get_me(auth: Principal = Depends(get_principal)) -> UserResponse:
    return UserResponse.model_validate(auth.user)


@router.post("/me/payout-account", response_model=PayoutOnboarding, dependencies=[Depends(check_rate_limit)])
async def start_payout_onboarding(
    auth: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> PayoutOnboarding:
    """Create the freelancer's connected account and return the processor's onboarding link."""
    user, url = await user_service.start_payout_onboarding(db, auth.user_id, gateway)
    return PayoutOnboarding(
        payout_account_id=user.payout_account_id,
        payout_status=user.payout_status.value,
        onboarding_url=url,
    )


@router.post("/me/payout-account/refresh", response_model=UserResponse, dependencies=[Depends(check_rate_limit)])
async def refresh_payout_status(
    auth: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> UserResponse:
    user = await user_service.refresh_payout_status(db, auth.user_id, gateway)
    return UserResponse.model_validate(user)


@router.get("/me/payments", response_model=list[PaymentHistoryEntry], dependencies=[Depends(check_rate_limit)])
async def get_payment_history(
    project_id: uuid.UUID | None = None,
    auth: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> list[PaymentHistoryEntry]:
    """Releases and refunds on the caller's projects, newest first."""
    items = await payment_service.payment_history(db, auth.user_id, project_id)
    return [PaymentHistoryEntry.model_validate(i) for i in items]
