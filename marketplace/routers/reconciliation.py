"""Administrator endpoints for processor/ledger reconciliation records."""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.auth.middleware import Principal, get_principal
from marketplace.auth.rate_limit import check_rate_limit
from marketplace.database import get_db
from marketplace.errors import AuthorizationError
from marketplace.schemas.reconciliation import ReconciliationResponse
from marketplace.services import reconciliation as reconciliation_service
from marketplace.services.gateway import PaymentGateway, get_gateway

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])


def _assert_admin(auth: Principal) -> None:
    if not auth.is_admin:
        raise AuthorizationError("Only an administrator can manage reconciliation")


@router.get("", response_model=list[ReconciliationResponse], dependencies=[Depends(check_rate_limit)])
async def list_open_records(
    auth: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> list[ReconciliationResponse]:
    _assert_admin(auth)
    records = await reconciliation_service.list_open(db)
    return [ReconciliationResponse.model_validate(r) for r in records]


@router.post("/{record_id}/apply", response_model=ReconciliationResponse, dependencies=[Depends(check_rate_limit)])
async def apply_record(
    record_id: uuid.UUID,
    auth: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> ReconciliationResponse:
    """Apply the local write a processor side effect is missing. Idempotent."""
    _assert_admin(auth)
    record = await reconciliation_service.reconcile(db, record_id, gateway)
    return ReconciliationResponse.model_validate(record)
