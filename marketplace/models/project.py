"""Project aggregate: project, milestones and applications."""

import enum
import uuid
from datetime import UTC, date, datetime
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    Date,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from marketplace.database import Base, JSONType, UTCDateTime


class ProjectStatus(enum.Enum):
    OPEN = "open"
    ACTIVE = "active"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    DISPUTED = "disputed"


# Valid project transitions. DISPUTED may also return to its prior status
# when an administrator dismisses the dispute.
PROJECT_TRANSITIONS: dict[ProjectStatus, set[ProjectStatus]] = {
    ProjectStatus.OPEN: {ProjectStatus.ACTIVE, ProjectStatus.CANCELLED},
    ProjectStatus.ACTIVE: {
        ProjectStatus.IN_PROGRESS,
        ProjectStatus.COMPLETED,
        ProjectStatus.DISPUTED,
        ProjectStatus.REJECTED,
        ProjectStatus.CANCELLED,
    },
    ProjectStatus.IN_PROGRESS: {
        ProjectStatus.COMPLETED,
        ProjectStatus.DISPUTED,
        ProjectStatus.REJECTED,
    },
    ProjectStatus.DISPUTED: {
        ProjectStatus.COMPLETED,
        ProjectStatus.CANCELLED,
        ProjectStatus.ACTIVE,
        ProjectStatus.IN_PROGRESS,
    },
    ProjectStatus.COMPLETED: set(),
    ProjectStatus.CANCELLED: set(),
    ProjectStatus.REJECTED: set(),
}

# Statuses in which contracted work (and money movement) may proceed.
WORKING_STATUSES = frozenset({ProjectStatus.ACTIVE, ProjectStatus.IN_PROGRESS})


class MilestoneStatus(enum.Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"
    DISPUTED = "disputed"


MILESTONE_TRANSITIONS: dict[MilestoneStatus, set[MilestoneStatus]] = {
    MilestoneStatus.PENDING: {MilestoneStatus.SUBMITTED},
    MilestoneStatus.SUBMITTED: {
        MilestoneStatus.APPROVED,
        MilestoneStatus.REJECTED,
        MilestoneStatus.DISPUTED,
    },
    MilestoneStatus.APPROVED: {MilestoneStatus.PAID, MilestoneStatus.DISPUTED},
    MilestoneStatus.REJECTED: {MilestoneStatus.SUBMITTED, MilestoneStatus.DISPUTED},
    MilestoneStatus.PAID: set(),
    # Leaving DISPUTED restores the recorded prior status.
    MilestoneStatus.DISPUTED: {
        MilestoneStatus.SUBMITTED,
        MilestoneStatus.APPROVED,
        MilestoneStatus.REJECTED,
    },
}


class ApplicationStatus(enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Project(Base):
    __tablename__ = "projects"
    __table_args__ = (
        CheckConstraint("budget > 0", name="ck_projects_budget_positive"),
        CheckConstraint("total_paid >= 0 AND total_paid <= budget", name="ck_projects_total_paid_range"),
    )

    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    employer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False
    )
    freelancer_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str | None] = mapped_column(String(64), nullable=True)
    budget: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    deadline: Mapped[date | None] = mapped_column(Date, nullable=True)
    required_skills: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    status: Mapped[ProjectStatus] = mapped_column(
        Enum(ProjectStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=ProjectStatus.OPEN,
    )
    total_paid: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    rejected_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    milestones = relationship(
        "Milestone",
        back_populates="project",
        order_by="Milestone.position",
        lazy="selectin",
        cascade="all, delete-orphan",
    )
    applications = relationship(
        "Application",
        back_populates="project",
        order_by="Application.created_at",
        lazy="selectin",
        cascade="all, delete-orphan",
    )
    escrow = relationship(
        "Escrow", back_populates="project", uselist=False, lazy="selectin"
    )

    def is_participant(self, user_id: uuid.UUID) -> bool:
        return user_id in (self.employer_id, self.freelancer_id)

    def milestone(self, milestone_id: uuid.UUID) -> "Milestone | None":
        for m in self.milestones:
            if m.milestone_id == milestone_id:
                return m
        return None


class Milestone(Base):
    """Work facet of a milestone. Its money facet is ``EscrowMilestone``,
    which shares the same ``milestone_id``."""

    __tablename__ = "milestones"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_milestones_amount_positive"),
    )

    milestone_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("projects.project_id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[MilestoneStatus] = mapped_column(
        Enum(MilestoneStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=MilestoneStatus.PENDING,
    )
    submission_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    submission_attachments: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    feedback: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    payment_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    project = relationship("Project", back_populates="milestones")
    escrow_entry = relationship(
        "EscrowMilestone", back_populates="milestone", uselist=False, lazy="selectin"
    )


class Application(Base):
    __tablename__ = "applications"
    __table_args__ = (
        UniqueConstraint("project_id", "applicant_id", name="uq_application_project_applicant"),
    )

    application_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("projects.project_id", ondelete="CASCADE"), nullable=False, index=True
    )
    applicant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False
    )
    proposal: Mapped[str] = mapped_column(Text, nullable=False)
    resume_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    status: Mapped[ApplicationStatus] = mapped_column(
        Enum(ApplicationStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=ApplicationStatus.PENDING,
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )

    project = relationship("Project", back_populates="applications")
