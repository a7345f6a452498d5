from decimal import Decimal
from sqlalchemy import String, DateTime, Numeric
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime, timezone
from app.db.session import Base

class Room(Base):
    __tablename__ = "rooms"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    stay_id: Mapped[str] = mapped_column(String(36), index=True, default="")
    name: Mapped[str] = mapped_column(String(200), default="")
    # Per-unit prices the locked amount is derived from; null means "not priced"
    price_usdc: Mapped[Decimal | None] = mapped_column(Numeric(18, 6), nullable=True)
    price_usdt: Mapped[Decimal | None] = mapped_column(Numeric(18, 6), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def price_for(self, token: str) -> Decimal | None:
        if token == "USDC":
            return self.price_usdc
        if token == "USDT":
            return self.price_usdt
        return None
