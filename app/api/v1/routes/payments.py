from __future__ import annotations
import logging
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.api.deps import get_chain_registry, get_verification_dispatcher
from app.core.chains import ChainRegistry
from app.schemas.payments import LockPaymentRequest, LockPaymentResponse, LockedDetails, SubmitPaymentRequest, SubmitPaymentResponse
from app.services.payment_service import PaymentRequestError, lock_payment, submit_payment

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments"])


def _http_error(e: PaymentRequestError) -> HTTPException:
    detail = {"error": e.detail, "code": e.code} if e.code else e.detail
    return HTTPException(status_code=e.status_code, detail=detail)


@router.post("/bookings/lock-payment", response_model=LockPaymentResponse)
def lock_payment_details(body: LockPaymentRequest, db: Session = Depends(get_db), registry: ChainRegistry = Depends(get_chain_registry)):
    """Lock token, amount and chain right before the client broadcasts the transfer."""
    logger.info(f"Lock payment request: booking={body.bookingId} {body.paymentAmount} {body.paymentToken} chain={body.chainId}")
    try:
        b = lock_payment(db, registry, body.bookingId, body.paymentToken, body.paymentAmount, body.chainId)
    except PaymentRequestError as e:
        raise _http_error(e)
    return LockPaymentResponse(
        message="Payment details locked successfully",
        lockedDetails=LockedDetails(
            bookingId=b.id,
            paymentToken=b.payment_token,
            paymentAmount=b.payment_amount,
            amountBaseUnits=b.amount_base_units or "",
            chainId=b.chain_id,
        ),
    )


@router.post("/payments/submit-payment", response_model=SubmitPaymentResponse)
def submit_payment_tx(
    body: SubmitPaymentRequest,
    db: Session = Depends(get_db),
    registry: ChainRegistry = Depends(get_chain_registry),
    dispatch=Depends(get_verification_dispatcher),
):
    """Record the transaction hash and verify it in the background; the client polls the booking."""
    try:
        b = submit_payment(db, registry, body.bookingId, body.txHash, body.chainId, body.isRemainingPayment)
    except PaymentRequestError as e:
        raise _http_error(e)
    dispatch(b.id, b.tx_hash, body.chainId, body.isRemainingPayment)
    logger.info(f"Payment submission saved for booking {b.id}; verification dispatched")
    return SubmitPaymentResponse(bookingId=b.id)
