"""Booking lifecycle: the allowed transitions and the compare-and-swap write.

Every status change goes through ``transition``, which issues a single
``UPDATE ... WHERE id = :id AND status IN (:expected)``. If another worker moved
the booking first the update matches no row and the caller gets ``False``
instead of overwriting a decision it never saw.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.models.booking import Booking, BookingStatus
from app.services.activity_service import log_activity

logger = logging.getLogger(__name__)

S = BookingStatus

_ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    S.PENDING: {S.PENDING, S.RESERVED, S.CONFIRMED, S.FAILED, S.EXPIRED, S.CANCELLED},
    S.WAITLISTED: {S.PENDING, S.EXPIRED, S.CANCELLED},
    S.RESERVED: {S.CONFIRMED, S.FAILED, S.CANCELLED, S.REFUNDED},
    # Re-lock returns a failed/expired booking to PENDING
    S.FAILED: {S.PENDING, S.CANCELLED},
    S.EXPIRED: {S.PENDING, S.CANCELLED},
    S.CONFIRMED: {S.REFUNDED},
    S.CANCELLED: set(),
    S.REFUNDED: set(),
}


class InvalidTransitionError(ValueError):
    """Raised when an invalid booking state transition is requested."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Invalid booking state transition: {current} -> {target}")
        self.current = current
        self.target = target


def validate_transition(current: str, target: str) -> None:
    allowed = _ALLOWED_TRANSITIONS.get(current, set())
    if target not in allowed:
        raise InvalidTransitionError(current=current, target=target)


def is_terminal(status: str) -> bool:
    return status in S.TERMINAL


def transition(
    db: Session,
    booking_id: str,
    expected: str | tuple[str, ...] | frozenset[str],
    target: str,
    *,
    action: str,
    details: dict | None = None,
    values: dict | None = None,
    conditions: tuple = (),
    user_id: str | None = None,
) -> bool:
    """Move ``booking_id`` to ``target`` only if its status is still one of ``expected``.

    ``values`` are written in the same UPDATE and ``conditions`` are extra WHERE
    clauses. An activity entry is appended for the attempt either way; the
    caller owns the commit.
    """
    expected_set = {expected} if isinstance(expected, str) else set(expected)
    for current in expected_set:
        validate_transition(current, target)

    now = datetime.now(timezone.utc)
    stmt = (
        update(Booking)
        .where(Booking.id == booking_id, Booking.status.in_(expected_set), *conditions)
        .values(status=target, updated_at=now, **(values or {}))
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    if result.rowcount != 1:
        current = db.query(Booking.status).filter(Booking.id == booking_id).scalar()
        logger.warning(f"Booking {booking_id}: {sorted(expected_set)} -> {target} lost the race (now {current})")
        log_activity(db, booking_id, "status_conflict", {
            "attempted": action,
            "expected": sorted(expected_set),
            "target": target,
            "current": current,
            **(details or {}),
        }, user_id=user_id)
        return False

    log_activity(db, booking_id, action, {"status": target, **(details or {})}, user_id=user_id)
    logger.info(f"Booking {booking_id} -> {target} ({action})")
    return True


def _operator_transition(db: Session, booking_id: str, expected, target: str, action: str, details: dict | None) -> bool:
    ok = transition(db, booking_id, expected, target, action=action, details=details)
    db.commit()
    return ok


def expire_booking(db: Session, booking_id: str) -> bool:
    return _operator_transition(db, booking_id, S.PENDING, S.EXPIRED, "payment_expired", {"reason": "expired"})


def cancel_booking(db: Session, booking_id: str, reason: str = "") -> bool:
    return _operator_transition(
        db, booking_id, (S.PENDING, S.WAITLISTED, S.RESERVED, S.FAILED, S.EXPIRED),
        S.CANCELLED, "booking_cancelled", {"reason": reason},
    )


def mark_refunded(db: Session, booking_id: str, reason: str = "") -> bool:
    """CONFIRMED/RESERVED -> REFUNDED. A second call finds REFUNDED and is a no-op."""
    return _operator_transition(
        db, booking_id, (S.CONFIRMED, S.RESERVED), S.REFUNDED, "booking_refunded", {"reason": reason},
    )
