"""Pydantic v2 schemas for reconciliation records."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, field_validator


class ReconciliationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    record_id: uuid.UUID
    kind: str
    status: str
    project_id: uuid.UUID
    escrow_id: uuid.UUID
    milestone_id: uuid.UUID | None
    dispute_id: uuid.UUID | None
    processor_reference: str
    amount: Decimal
    error: str | None
    created_at: datetime
    resolved_at: datetime | None

    @field_validator("kind", "status", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)
