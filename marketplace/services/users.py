"""User projection and payout account onboarding."""

import logging
import uuid

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.errors import AuthorizationError, StateError
from marketplace.models.user import PayoutStatus, User, UserRole
from marketplace.services.aggregate import get_user
from marketplace.services.gateway import PaymentGateway

logger = logging.getLogger(__name__)


async def get_or_create_user(
    db: AsyncSession,
    user_id: uuid.UUID,
    role: UserRole,
    display_name: str | None = None,
    email: str | None = None,
) -> User:
    """Upsert the local projection of an authenticated principal."""
    user = await get_user(db, user_id)
    if user is not None:
        if user.role != role:
            # The Identity Provider is authoritative for roles.
            user.role = role
            await db.commit()
        return user

    user = User(
        user_id=user_id,
        role=role,
        display_name=display_name,
        email=email,
        payout_status=PayoutStatus.NONE,
    )
    db.add(user)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        user = await get_user(db, user_id)
    return user


async def _freelancer(db: AsyncSession, user_id: uuid.UUID) -> User:
    user = await get_user(db, user_id)
    if user is None or user.role != UserRole.FREELANCER:
        raise AuthorizationError("Only freelancers have payout accounts")
    return user


async def start_payout_onboarding(
    db: AsyncSession, user_id: uuid.UUID, gateway: PaymentGateway
) -> tuple[User, str]:
    """Create the connected account if needed and return an onboarding link."""
    user = await _freelancer(db, user_id)
    if user.payout_account_id is None:
        account_id = await gateway.create_connected_account(user.email)
        user.payout_account_id = account_id
        user.payout_status = PayoutStatus.PENDING
        await db.commit()
        logger.info("Created payout account %s for user %s", account_id, user_id)
    elif user.payout_status == PayoutStatus.ACTIVE:
        raise StateError("Payout account is already active")

    url = await gateway.create_onboarding_link(user.payout_account_id)
    return user, url


async def refresh_payout_status(
    db: AsyncSession, user_id: uuid.UUID, gateway: PaymentGateway
) -> User:
    """Read the connected account from the processor and update the local status."""
    user = await _freelancer(db, user_id)
    if user.payout_account_id is None:
        raise StateError("No payout account has been created yet")
    account = await gateway.retrieve_account(user.payout_account_id)
    ready = account.details_submitted and account.payouts_enabled
    user.payout_status = PayoutStatus.ACTIVE if ready else PayoutStatus.PENDING
    await db.commit()
    return user
