"""Escrow ledger models: escrow, per-milestone entries, refunds and audit log."""

import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, Enum, ForeignKey, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from marketplace.database import Base, JSONType, UTCDateTime


class EscrowStatus(enum.Enum):
    PENDING = "pending"
    FUNDED = "funded"
    RELEASED = "released"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class EscrowMilestoneStatus(enum.Enum):
    PENDING = "pending"
    RELEASED = "released"
    REFUNDED = "refunded"


class EscrowAction(enum.Enum):
    CREATED = "created"
    FUNDED = "funded"
    RELEASED = "released"
    REFUNDED = "refunded"
    DISPUTED = "disputed"
    RESOLVED = "resolved"
    SETTLED = "settled"
    CANCELLED = "cancelled"


class Escrow(Base):
    __tablename__ = "escrows"
    __table_args__ = (
        CheckConstraint(
            "released_amount >= 0 AND refunded_amount >= 0 AND released_amount + refunded_amount <= amount",
            name="ck_escrows_conservation",
        ),
    )

    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("projects.project_id", ondelete="RESTRICT"), unique=True, nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    status: Mapped[EscrowStatus] = mapped_column(
        Enum(EscrowStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=EscrowStatus.PENDING,
    )
    payment_intent_id: Mapped[str | None] = mapped_column(
        String(128), unique=True, nullable=True
    )
    client_secret: Mapped[str | None] = mapped_column(String(256), nullable=True)
    released_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    refunded_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )
    funded_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    project = relationship("Project", back_populates="escrow")
    entries = relationship(
        "EscrowMilestone",
        back_populates="escrow",
        lazy="selectin",
        order_by="EscrowMilestone.position",
    )
    refunds = relationship(
        "EscrowRefund",
        back_populates="escrow",
        lazy="selectin",
        order_by="EscrowRefund.created_at",
    )

    @property
    def held_amount(self) -> Decimal:
        return self.amount - self.released_amount - self.refunded_amount

    def entry(self, milestone_id: uuid.UUID) -> "EscrowMilestone | None":
        for e in self.entries:
            if e.milestone_id == milestone_id:
                return e
        return None

    def pending_entries(self) -> list["EscrowMilestone"]:
        return [e for e in self.entries if e.status == EscrowMilestoneStatus.PENDING]


class EscrowMilestone(Base):
    """Money facet of a milestone; primary key is the milestone's own id."""

    __tablename__ = "escrow_milestones"

    milestone_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("milestones.milestone_id", ondelete="RESTRICT"), primary_key=True
    )
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escrows.escrow_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(nullable=False, default=0)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[EscrowMilestoneStatus] = mapped_column(
        Enum(EscrowMilestoneStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=EscrowMilestoneStatus.PENDING,
    )
    release_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    approved_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    transfer_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    escrow = relationship("Escrow", back_populates="entries")
    milestone = relationship("Milestone", back_populates="escrow_entry")


class EscrowRefund(Base):
    """Refund history for an escrow (full and partial)."""

    __tablename__ = "escrow_refunds"

    refund_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escrows.escrow_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    processor_refund_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )

    escrow = relationship("Escrow", back_populates="refunds")


class EscrowAuditLog(Base):
    """Append-only audit log. Never update or delete rows."""
    __tablename__ = "escrow_audit_log"

    escrow_audit_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escrows.escrow_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    action: Mapped[EscrowAction] = mapped_column(
        Enum(EscrowAction, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    actor_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)
