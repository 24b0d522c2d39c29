"""Pydantic v2 schemas for disputes."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from marketplace.models.dispute import DisputeCategory, DisputeDecision


class DisputeCreate(BaseModel):
    project_id: uuid.UUID
    milestone_id: uuid.UUID | None = None
    category: DisputeCategory
    description: str = Field(..., min_length=1, max_length=10_000)
    evidence: list[str] = Field(default_factory=list, max_length=20)


class DisputeMessageCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=10_000)
    attachments: list[str] = Field(default_factory=list, max_length=20)


class DisputeResolution(BaseModel):
    """Admin resolution. ``refund_amount`` defaults per decision when omitted."""
    decision: DisputeDecision
    refund_amount: Decimal | None = Field(None, ge=0, max_digits=12, decimal_places=2)
    notes: str | None = Field(None, max_length=10_000)


class DisputeDismissal(BaseModel):
    notes: str | None = Field(None, max_length=10_000)


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    dispute_id: uuid.UUID
    project_id: uuid.UUID
    milestone_id: uuid.UUID | None
    raised_by: uuid.UUID
    category: str
    description: str
    evidence: list[str]
    messages: list[dict]
    status: str
    decision: str | None
    refund_amount: Decimal | None
    resolution_notes: str | None
    resolved_by: uuid.UUID | None
    resolved_at: datetime | None
    created_at: datetime

    @field_validator("category", "status", "decision", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> str | None:
        if v is None:
            return None
        if hasattr(v, "value"):
            return v.value
        return str(v)
