from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from app.db.session import get_db
from app.api.deps import get_chain_registry
from app.core.chains import ChainRegistry, UnsupportedChainError
from app.models.booking import Booking
from app.schemas.booking import BookingPaymentOut

router = APIRouter(tags=["bookings"])


def _explorer_url(registry: ChainRegistry, b: Booking) -> str | None:
    if not (b.tx_hash and b.chain_id):
        return None
    try:
        return f"{registry.get(b.chain_id).block_explorer_url}/tx/{b.tx_hash}"
    except UnsupportedChainError:
        return None


@router.get("/bookings/{booking_id}", response_model=BookingPaymentOut)
def get_booking_payment(booking_id: str, db: Session = Depends(get_db), registry: ChainRegistry = Depends(get_chain_registry)):
    b = db.get(Booking, booking_id)
    if not b:
        raise HTTPException(status_code=404, detail="Booking not found")
    return BookingPaymentOut(
        bookingId=b.id,
        status=b.status,
        paymentToken=b.payment_token,
        paymentAmount=b.payment_amount,
        amountBaseUnits=b.amount_base_units,
        chainId=b.chain_id,
        chainName=registry.chain_name(b.chain_id) if b.chain_id else None,
        txHash=b.tx_hash,
        expiresAt=b.expires_at.isoformat() if b.expires_at else None,
        confirmedAt=b.confirmed_at.isoformat() if b.confirmed_at else None,
        failureReason=b.failure_reason,
        requiresReservation=bool(b.requires_reservation),
        reservationAmount=b.reservation_amount,
        remainingAmount=b.remaining_amount,
        reservationPaid=bool(b.reservation_paid),
        remainingPaid=bool(b.remaining_paid),
        senderAddress=b.sender_address,
        receiverAddress=b.receiver_address,
        blockNumber=b.block_number,
        gasUsed=b.gas_used,
        gasFeeUSD=b.gas_fee_usd,
        totalPaid=b.total_paid,
        explorerUrl=_explorer_url(registry, b),
    )
