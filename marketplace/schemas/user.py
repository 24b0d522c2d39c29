"""Pydantic v2 schemas for users and payout accounts."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, field_validator


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: uuid.UUID
    role: str
    display_name: str | None
    email: str | None
    payout_account_id: str | None
    payout_status: str
    created_at: datetime

    @field_validator("role", "payout_status", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)


class PayoutOnboarding(BaseModel):
    payout_account_id: str
    payout_status: str
    onboarding_url: str
