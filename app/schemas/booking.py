from decimal import Decimal
from pydantic import BaseModel
from typing import Optional


class BookingPaymentOut(BaseModel):
    bookingId: str
    status: str
    paymentToken: Optional[str] = None
    paymentAmount: Optional[Decimal] = None
    amountBaseUnits: Optional[str] = None
    chainId: Optional[int] = None
    chainName: Optional[str] = None
    txHash: Optional[str] = None
    expiresAt: Optional[str] = None
    confirmedAt: Optional[str] = None
    failureReason: Optional[str] = None

    requiresReservation: bool = False
    reservationAmount: Optional[Decimal] = None
    remainingAmount: Optional[Decimal] = None
    reservationPaid: bool = False
    remainingPaid: bool = False

    senderAddress: Optional[str] = None
    receiverAddress: Optional[str] = None
    blockNumber: Optional[int] = None
    gasUsed: Optional[str] = None
    gasFeeUSD: Optional[Decimal] = None
    totalPaid: Optional[Decimal] = None
    explorerUrl: Optional[str] = None
