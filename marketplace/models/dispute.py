"""Dispute model."""

import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import Enum, ForeignKey, Index, Numeric, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from marketplace.database import Base, JSONType, UTCDateTime


class DisputeCategory(enum.Enum):
    QUALITY = "quality"
    PAYMENT = "payment"
    DEADLINE = "deadline"
    OTHER = "other"


class DisputeStatus(enum.Enum):
    OPEN = "open"
    IN_REVIEW = "in_review"
    RESOLVED = "resolved"
    REJECTED = "rejected"


class DisputeDecision(enum.Enum):
    EMPLOYER_FAVOR = "employer_favor"
    FREELANCER_FAVOR = "freelancer_favor"
    COMPROMISE = "compromise"
    REFUND = "refund"


class Dispute(Base):
    __tablename__ = "disputes"
    __table_args__ = (
        # At most one unresolved dispute per project.
        Index(
            "uq_disputes_one_active_per_project",
            "project_id",
            unique=True,
            postgresql_where=text("status IN ('open', 'in_review')"),
            sqlite_where=text("status IN ('open', 'in_review')"),
        ),
    )

    dispute_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("projects.project_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    milestone_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("milestones.milestone_id", ondelete="RESTRICT"), nullable=True
    )
    raised_by: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False
    )
    category: Mapped[DisputeCategory] = mapped_column(
        Enum(DisputeCategory, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    description: Mapped[str] = mapped_column(Text, nullable=False)
    evidence: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    messages: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    status: Mapped[DisputeStatus] = mapped_column(
        Enum(DisputeStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=DisputeStatus.OPEN,
    )
    # Statuses to restore if the dispute is dismissed.
    project_prior_status: Mapped[str] = mapped_column(String(32), nullable=False)
    milestone_prior_status: Mapped[str | None] = mapped_column(String(32), nullable=True)

    decision: Mapped[DisputeDecision | None] = mapped_column(
        Enum(DisputeDecision, values_callable=lambda x: [e.value for e in x]),
        nullable=True,
    )
    refund_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    # Processor references of money already moved by a resolution in progress.
    refund_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    settlement_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    @property
    def is_active(self) -> bool:
        return self.status in (DisputeStatus.OPEN, DisputeStatus.IN_REVIEW)
