"""Pydantic v2 schemas for projects, milestones and applications."""

import uuid
from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from marketplace.schemas.escrow import EscrowResponse


def _status_value(v: object) -> str:
    if hasattr(v, "value"):
        return v.value
    return str(v)


class MilestoneCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: str | None = Field(None, max_length=4096)
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    due_date: date | None = None


class MilestoneUpdate(BaseModel):
    title: str | None = Field(None, min_length=1, max_length=200)
    description: str | None = Field(None, max_length=4096)
    amount: Decimal | None = Field(None, gt=0, max_digits=12, decimal_places=2)
    due_date: date | None = None


class ProjectCreate(BaseModel):
    """Employer posts a project. Milestone amounts must add up to the budget."""
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=10_000)
    category: str | None = Field(None, max_length=64)
    budget: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    deadline: date | None = None
    required_skills: list[str] = Field(default_factory=list, max_length=50)
    milestones: list[MilestoneCreate] = Field(..., min_length=1)

    @field_validator("required_skills")
    @classmethod
    def dedupe_skills(cls, v: list[str]) -> list[str]:
        seen: list[str] = []
        for skill in v:
            skill = skill.strip()
            if skill and skill not in seen:
                seen.append(skill)
        return seen


class MilestoneSubmission(BaseModel):
    description: str = Field(..., min_length=1, max_length=10_000)
    attachments: list[str] = Field(default_factory=list, max_length=20)

    @field_validator("attachments")
    @classmethod
    def validate_urls(cls, v: list[str]) -> list[str]:
        for url in v:
            if not url.startswith(("https://", "http://")):
                raise ValueError("Attachments must be object store URLs")
        return v


class MilestoneRejection(BaseModel):
    reason: str = Field(..., min_length=1, max_length=4096)


class ApplicationCreate(BaseModel):
    proposal: str = Field(..., min_length=1, max_length=10_000)
    resume_url: str | None = Field(None, max_length=2048)

    @field_validator("resume_url")
    @classmethod
    def validate_resume_url(cls, v: str | None) -> str | None:
        if v is not None and not v.startswith(("https://", "http://")):
            raise ValueError("resume_url must be an object store URL")
        return v


class ProjectRejection(BaseModel):
    reason: str = Field(..., min_length=1, max_length=4096)


class ProjectCancellation(BaseModel):
    reason: str | None = Field(None, max_length=4096)


class MilestoneResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    milestone_id: uuid.UUID
    project_id: uuid.UUID
    position: int
    title: str
    description: str | None
    amount: Decimal
    due_date: date | None
    status: str
    submission_description: str | None
    submission_attachments: list[str] | None
    submitted_at: datetime | None
    feedback: str | None
    reviewed_at: datetime | None
    payment_id: str | None

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        return _status_value(v)


class ApplicationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    application_id: uuid.UUID
    project_id: uuid.UUID
    applicant_id: uuid.UUID
    proposal: str
    resume_url: str | None
    status: str
    created_at: datetime

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        return _status_value(v)


class ProjectResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    project_id: uuid.UUID
    employer_id: uuid.UUID
    freelancer_id: uuid.UUID | None
    title: str
    description: str
    category: str | None
    budget: Decimal
    currency: str
    deadline: date | None
    required_skills: list[str]
    status: str
    total_paid: Decimal
    rejection_reason: str | None
    rejected_at: datetime | None
    rejected_by: uuid.UUID | None
    created_at: datetime
    milestones: list[MilestoneResponse]

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        return _status_value(v)


class ApplicationApproval(BaseModel):
    """Result of approving an application. ``escrow_error`` is set when the
    freelancer was assigned but the escrow could not be created yet."""
    project: ProjectResponse
    escrow: EscrowResponse | None
    escrow_error: str | None = None
