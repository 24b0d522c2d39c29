"""Local projection of Identity Provider users."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import Enum, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from marketplace.database import Base, UTCDateTime


class UserRole(enum.Enum):
    EMPLOYER = "employer"
    FREELANCER = "freelancer"
    ADMIN = "admin"


class PayoutStatus(enum.Enum):
    NONE = "none"
    PENDING = "pending"
    ACTIVE = "active"


class User(Base):
    __tablename__ = "users"

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    display_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    # Connected account at the payment processor; gates receiving funds.
    payout_account_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    payout_status: Mapped[PayoutStatus] = mapped_column(
        Enum(PayoutStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=PayoutStatus.NONE,
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )

    @property
    def can_receive_funds(self) -> bool:
        return self.payout_status == PayoutStatus.ACTIVE and bool(self.payout_account_id)
