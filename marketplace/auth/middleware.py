"""Bearer token verification dependency for FastAPI.

Tokens are issued and signed (Ed25519) by the external Identity Provider.
The marketplace verifies them against the provider's public key and keeps a
local projection of each user so that roles and payout accounts can be
checked inside transactions.
"""

import logging
import uuid

from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.config import settings
from marketplace.database import get_db
from marketplace.models.user import User, UserRole
from marketplace.services.users import get_or_create_user
from marketplace.utils.crypto import InvalidToken, verify_token

logger = logging.getLogger(__name__)


class Principal:
    """Container for the verified caller."""

    def __init__(self, user_id: uuid.UUID, role: UserRole, user: User) -> None:
        self.user_id = user_id
        self.role = role
        self.user = user

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        raise HTTPException(status_code=403, detail="Missing authentication headers")
    if not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=403, detail="Invalid authorization scheme")
    token = auth_header[7:].strip()
    if not token:
        raise HTTPException(status_code=403, detail="Malformed authorization header")
    return token


async def get_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Principal:
    """Verify the bearer token and upsert the local user projection."""
    token = _bearer_token(request)
    if not settings.identity_provider_public_key:
        logger.error("identity_provider_public_key is not configured")
        raise HTTPException(status_code=403, detail="Authentication is not configured")

    try:
        claims = verify_token(
            settings.identity_provider_public_key, token, max_age_seconds=settings.token_max_age_seconds
        )
    except InvalidToken as exc:
        raise HTTPException(status_code=403, detail=str(exc))

    try:
        user_id = uuid.UUID(str(claims["sub"]))
        role = UserRole(claims["role"])
    except (KeyError, ValueError):
        raise HTTPException(status_code=403, detail="Token is missing a valid subject or role")

    user = await get_or_create_user(
        db, user_id, role, display_name=claims.get("name"), email=claims.get("email")
    )
    return Principal(user_id=user_id, role=role, user=user)
