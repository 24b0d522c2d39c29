"""Reconciliation records for money moved at the processor without a matching local write."""

import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import Enum, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from marketplace.database import Base, UTCDateTime


class ReconciliationKind(enum.Enum):
    RELEASE = "release"
    REFUND = "refund"
    SETTLEMENT = "settlement"
    LATE_FUNDING = "late_funding"


class ReconciliationStatus(enum.Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class ReconciliationRecord(Base):
    __tablename__ = "reconciliation_records"

    record_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    kind: Mapped[ReconciliationKind] = mapped_column(
        Enum(ReconciliationKind, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    status: Mapped[ReconciliationStatus] = mapped_column(
        Enum(ReconciliationStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=ReconciliationStatus.OPEN,
    )
    project_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    escrow_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    milestone_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    dispute_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    processor_reference: Mapped[str] = mapped_column(String(128), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    actor_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
