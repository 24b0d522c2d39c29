"""Pydantic v2 schemas for Escrow."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EscrowMilestoneResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    milestone_id: uuid.UUID
    amount: Decimal
    status: str
    release_date: datetime | None
    approved_by: uuid.UUID | None
    approved_at: datetime | None
    transfer_id: str | None

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)


class EscrowRefundResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    processor_refund_id: str
    amount: Decimal
    reason: str | None
    created_at: datetime


class EscrowResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    escrow_id: uuid.UUID
    project_id: uuid.UUID
    amount: Decimal
    currency: str
    status: str
    payment_intent_id: str | None
    client_secret: str | None
    released_amount: Decimal
    refunded_amount: Decimal
    held_amount: Decimal
    funded_at: datetime | None
    released_at: datetime | None
    refunded_at: datetime | None
    entries: list[EscrowMilestoneResponse]
    refunds: list[EscrowRefundResponse]

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)

    @classmethod
    def for_viewer(cls, escrow: object, viewer_id: uuid.UUID, employer_id: uuid.UUID) -> "EscrowResponse":
        """Only the paying employer gets the payment intent's client secret."""
        response = cls.model_validate(escrow)
        if viewer_id != employer_id:
            response.client_secret = None
        return response


class RefundRequest(BaseModel):
    """Omit ``amount`` to refund everything still held."""
    amount: Decimal | None = Field(None, gt=0, max_digits=12, decimal_places=2)
    reason: str | None = Field(None, max_length=1024)


class AuditLogEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    escrow_audit_id: uuid.UUID
    action: str
    actor_id: uuid.UUID | None
    amount: Decimal
    timestamp: datetime
    metadata: dict | None = Field(None, validation_alias="metadata_")

    @field_validator("action", mode="before")
    @classmethod
    def serialize_action(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)


class EscrowSummary(BaseModel):
    """One row of the administrator's escrow listing."""
    escrow_id: uuid.UUID
    project_id: uuid.UUID
    project_title: str
    employer_id: uuid.UUID
    freelancer_id: uuid.UUID | None
    amount: Decimal
    currency: str
    status: str
    released_amount: Decimal
    refunded_amount: Decimal
    held_amount: Decimal
    created_at: datetime
    funded_at: datetime | None


class StatusTotalsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    status: str
    count: int
    total_amount: Decimal
    released_amount: Decimal
    refunded_amount: Decimal
    held_amount: Decimal

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)


class PaymentStatisticsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    by_status: list[StatusTotalsResponse]
    total_projects: int
    total_employers: int
    total_freelancers: int


class PaymentHistoryEntry(BaseModel):
    """A release to the freelancer or a refund to the employer."""
    model_config = ConfigDict(from_attributes=True)

    kind: str
    project_id: uuid.UUID
    project_title: str
    escrow_id: uuid.UUID
    milestone_id: uuid.UUID | None
    amount: Decimal
    reference: str | None
    occurred_at: datetime
