import logging
import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.core.chains import ChainRegistry, UnsupportedChainError
from app.models.booking import Booking, BookingStatus, PaymentToken
from app.models.payment import Payment
from app.services.activity_service import log_activity
from app.services.booking_state import is_terminal, transition
from app.services.transfer_events import to_base_units

logger = logging.getLogger(__name__)

TX_HASH_RE = re.compile(r"^0x[a-fA-F0-9]{64}$")


class PaymentRequestError(Exception):
    def __init__(self, status_code: int, detail: str, code: str = ""):
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail
        self.code = code


class PaymentLockError(PaymentRequestError):
    pass


class PaymentSubmissionError(PaymentRequestError):
    pass


def as_utc(dt: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def is_expired(b: Booking, now: datetime | None = None) -> bool:
    exp = as_utc(b.expires_at)
    return exp is not None and exp < (now or datetime.now(timezone.utc))


def _to_decimal(amount) -> Decimal:
    try:
        return Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise PaymentLockError(400, "Invalid paymentAmount.")


def lock_payment(db: Session, registry: ChainRegistry, booking_id: str, payment_token: str, payment_amount, chain_id: int) -> Booking:
    """Fix token, amount and chain on a booking before any transfer is broadcast."""
    if payment_token not in PaymentToken.ALL:
        raise PaymentLockError(400, "Invalid paymentToken. Must be USDC or USDT.")
    amount = _to_decimal(payment_amount)
    if not amount.is_finite() or amount <= 0:
        raise PaymentLockError(400, "Invalid paymentAmount.")
    try:
        chain = registry.get(chain_id)
    except UnsupportedChainError:
        raise PaymentLockError(400, f"Unsupported chain ID: {chain_id}")
    if not registry.is_supported(chain_id, payment_token):
        raise PaymentLockError(400, f"Token {payment_token} not supported on chain {chain.name}")

    b = db.get(Booking, booking_id)
    if not b:
        raise PaymentLockError(404, "Booking not found")
    if is_terminal(b.status):
        raise PaymentLockError(409, f"Cannot lock payment. Booking is already {b.status}", code="BOOKING_CLOSED")
    if b.status not in BookingStatus.LOCKABLE:
        raise PaymentLockError(409, f"Cannot lock payment. Booking status is: {b.status}")
    if is_expired(b):
        raise PaymentLockError(409, "Booking payment window has expired")

    if b.status == BookingStatus.PENDING and b.is_locked:
        same_terms = (
            b.payment_token == payment_token
            and b.chain_id == chain_id
            and Decimal(b.payment_amount) == amount
        )
        if same_terms:
            logger.info(f"Booking {booking_id}: payment details already locked")
            return b
        raise PaymentLockError(409, "Payment details are already locked for this booking", code="ALREADY_LOCKED")

    token = registry.token(chain_id, payment_token)
    base_units = str(to_base_units(amount, token.decimals))
    previous = b.status
    conditions = (Booking.payment_token.is_(None),) if previous == BookingStatus.PENDING else ()
    ok = transition(
        db, booking_id, previous, BookingStatus.PENDING,
        action="payment_locked",
        details={"token": payment_token, "amount": amount, "amountBaseUnits": base_units, "chainId": chain_id, "previousStatus": previous},
        values={
            "payment_token": payment_token,
            "payment_amount": amount,
            "amount_base_units": base_units,
            "chain_id": chain_id,
            "tx_hash": None,
            "confirmed_at": None,
            "failure_reason": None,
        },
        conditions=conditions,
        user_id=b.user_id,
    )
    db.commit()
    if not ok:
        raise PaymentLockError(409, "Booking changed while locking payment; reload and retry", code="CONFLICT")
    db.refresh(b)
    logger.info(f"Booking {booking_id}: locked {amount} {payment_token} ({base_units} base units) on chain {chain_id}")
    return b


def transaction_used_elsewhere(db: Session, tx_hash: str, booking_id: str) -> bool:
    """True when the hash already settled (or confirmed) a different booking."""
    tx_hash = tx_hash.lower()
    payment = db.query(Payment).filter(Payment.tx_hash == tx_hash, Payment.booking_id != booking_id).first()
    if payment:
        return True
    other = (
        db.query(Booking.id)
        .filter(
            Booking.id != booking_id,
            Booking.status == BookingStatus.CONFIRMED,
            or_(Booking.tx_hash == tx_hash, Booking.reservation_tx_hash == tx_hash, Booking.remaining_tx_hash == tx_hash),
        )
        .first()
    )
    return other is not None


def submit_payment(db: Session, registry: ChainRegistry, booking_id: str, tx_hash: str, chain_id: int, is_remaining_payment: bool = False) -> Booking:
    """Record the client's transaction hash; verification is dispatched by the caller."""
    if not TX_HASH_RE.match(tx_hash or ""):
        raise PaymentSubmissionError(400, "Invalid transaction hash format")
    tx_hash = tx_hash.lower()

    if transaction_used_elsewhere(db, tx_hash, booking_id):
        logger.warning(f"Transaction replay attempt detected: {tx_hash} for booking {booking_id}")
        raise PaymentSubmissionError(409, "This transaction has already been used for another booking", code="TRANSACTION_ALREADY_USED")
    if db.query(Payment.id).filter(Payment.tx_hash == tx_hash, Payment.booking_id == booking_id).first():
        logger.warning(f"Transaction {tx_hash} resubmitted for booking {booking_id}; it already settled a payment")
        raise PaymentSubmissionError(409, "This transaction has already been used for this booking", code="TRANSACTION_ALREADY_USED")

    b = db.get(Booking, booking_id)
    if not b:
        raise PaymentSubmissionError(404, "Booking not found")

    allowed = (BookingStatus.PENDING, BookingStatus.RESERVED) if is_remaining_payment else (BookingStatus.PENDING,)
    if b.status not in allowed:
        raise PaymentSubmissionError(409, f"Cannot submit payment. Booking status is: {b.status}")
    if is_remaining_payment:
        if not b.requires_reservation:
            raise PaymentSubmissionError(400, "Booking has no remaining installment")
        if not b.reservation_paid:
            raise PaymentSubmissionError(409, "Reservation payment has not been confirmed yet")
        if b.remaining_paid:
            raise PaymentSubmissionError(409, "Remaining payment already confirmed")
    elif b.requires_reservation and b.reservation_paid:
        raise PaymentSubmissionError(409, "Reservation already paid; submit the remaining payment")

    if not b.is_locked:
        raise PaymentSubmissionError(400, "Payment details were not locked. Please retry or contact support.")
    if b.chain_id != chain_id:
        raise PaymentSubmissionError(400, f"Chain {chain_id} does not match the locked chain {b.chain_id}")
    try:
        registry.get(chain_id)
    except UnsupportedChainError:
        raise PaymentSubmissionError(400, f"Unsupported chain ID: {chain_id}")

    b.tx_hash = tx_hash
    if b.requires_reservation:
        if is_remaining_payment:
            b.remaining_tx_hash = tx_hash
        else:
            b.reservation_tx_hash = tx_hash
    b.updated_at = datetime.now(timezone.utc)
    log_activity(db, b.id, "payment_submitted", {
        "txHash": tx_hash,
        "chainId": chain_id,
        "token": b.payment_token,
        "amount": b.payment_amount,
        "isRemainingPayment": is_remaining_payment,
    }, user_id=b.user_id)
    db.commit()
    db.refresh(b)
    return b
