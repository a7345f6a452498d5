from decimal import Decimal
from sqlalchemy import String, Integer, DateTime, Numeric, Boolean, Text
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime, timezone
from app.db.session import Base


class BookingStatus:
    PENDING = "PENDING"
    WAITLISTED = "WAITLISTED"
    RESERVED = "RESERVED"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"

    ALL = frozenset({PENDING, WAITLISTED, RESERVED, CONFIRMED, FAILED, EXPIRED, CANCELLED, REFUNDED})
    TERMINAL = frozenset({CONFIRMED, CANCELLED, REFUNDED})
    # States from which payment terms may be (re)locked
    LOCKABLE = frozenset({PENDING, FAILED, EXPIRED})
    # States a verification may move out of
    AWAITING_PAYMENT = frozenset({PENDING, RESERVED})


class PaymentToken:
    USDC = "USDC"
    USDT = "USDT"

    ALL = frozenset({USDC, USDT})


class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(36), index=True)  # owner
    stay_id: Mapped[str] = mapped_column(String(36), index=True, default="")
    selected_room_id: Mapped[str | None] = mapped_column(String(36), index=True, nullable=True)

    status: Mapped[str] = mapped_column(String(20), index=True, default=BookingStatus.PENDING)

    # Locked payment terms (null until locked)
    payment_token: Mapped[str | None] = mapped_column(String(10), nullable=True)  # USDC|USDT
    payment_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 6), nullable=True)
    amount_base_units: Mapped[str | None] = mapped_column(String(80), nullable=True)
    chain_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    tx_hash: Mapped[str | None] = mapped_column(String(66), index=True, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Two-installment bookings
    requires_reservation: Mapped[bool] = mapped_column(Boolean, default=False)
    reservation_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 6), nullable=True)
    remaining_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 6), nullable=True)
    reservation_paid: Mapped[bool] = mapped_column(Boolean, default=False)
    remaining_paid: Mapped[bool] = mapped_column(Boolean, default=False)
    reservation_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    remaining_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)

    # On-chain audit fields
    sender_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    receiver_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    block_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    gas_used: Mapped[str | None] = mapped_column(String(40), nullable=True)
    gas_fee_usd: Mapped[Decimal | None] = mapped_column(Numeric(18, 6), nullable=True)
    total_paid: Mapped[Decimal | None] = mapped_column(Numeric(18, 6), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    @property
    def is_locked(self) -> bool:
        return self.payment_token is not None and self.payment_amount is not None
