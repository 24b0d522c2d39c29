"""Inbound payment processor event log. One row per processor event id."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import Enum, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from marketplace.database import Base, JSONType, UTCDateTime


class PaymentEventStatus(enum.Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    IGNORED = "ignored"
    FAILED = "failed"


class PaymentEvent(Base):
    __tablename__ = "payment_events"

    payment_event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    event_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False)
    status: Mapped[PaymentEventStatus] = mapped_column(
        Enum(PaymentEventStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=PaymentEventStatus.RECEIVED,
    )
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
