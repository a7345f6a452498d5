from decimal import Decimal
from sqlalchemy import String, Integer, DateTime, Numeric
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime, timezone
from app.db.session import Base

class Payment(Base):
    """An on-chain transfer accepted as evidence for one booking leg."""
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    booking_id: Mapped[str] = mapped_column(String(36), index=True)
    # One transaction hash can settle exactly one booking leg
    tx_hash: Mapped[str] = mapped_column(String(66), unique=True, index=True)
    chain_id: Mapped[int] = mapped_column(Integer)
    leg: Mapped[str] = mapped_column(String(20), default="full")  # full, reservation, remaining
    token: Mapped[str] = mapped_column(String(10))
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 6))
    amount_base_units: Mapped[str] = mapped_column(String(80))
    sender_address: Mapped[str] = mapped_column(String(42), default="")
    block_number: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
