from datetime import datetime, timezone
import logging
from sqlalchemy.orm import Session
from sqlalchemy.exc import ProgrammingError
from app.db.session import SessionLocal
from app.models.booking import Booking, BookingStatus
from app.services.booking_state import expire_booking
from app.services.email_service import process_pending_emails

logger = logging.getLogger(__name__)


def verify_payment(engine, booking_id: str, tx_hash: str, chain_id: int, is_remaining_payment: bool = False) -> dict:
    result = engine.verify_payment(booking_id, tx_hash, chain_id, is_remaining_payment=is_remaining_payment)
    logger.info(f"Verification of {tx_hash} for booking {booking_id}: {result.outcome} {result.reason}".rstrip())
    return {
        "bookingId": result.booking_id,
        "outcome": result.outcome,
        "reason": result.reason,
        "status": result.status,
        "attempts": result.attempts,
    }


def expire_overdue_bookings(session_factory=SessionLocal) -> dict:
    """PENDING bookings past their payment window move to EXPIRED (and become re-lockable)."""
    db: Session = session_factory()
    try:
        now = datetime.now(timezone.utc)
        try:
            overdue = db.query(Booking.id).filter(
                Booking.status == BookingStatus.PENDING,
                Booking.expires_at != None,
                Booking.expires_at < now,
            ).all()
        except ProgrammingError:
            # DB not migrated yet; don't crash the worker.
            db.rollback()
            return {"skipped": True, "reason": "missing_tables"}
        expired = 0
        for (booking_id,) in overdue:
            # CAS: a booking confirmed in the meantime is left alone
            if expire_booking(db, booking_id):
                expired += 1
        return {"expired": expired}
    finally:
        db.close()


def process_email_queue(limit: int = 50, session_factory=SessionLocal) -> dict:
    """Process queued/failed emails (retry send). Run periodically via Celery beat."""
    db: Session = session_factory()
    try:
        try:
            return process_pending_emails(db, limit=limit)
        except ProgrammingError:
            db.rollback()
            return {"skipped": True, "reason": "missing_tables"}
    finally:
        db.close()
