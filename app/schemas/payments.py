from decimal import Decimal
from pydantic import BaseModel


class LockPaymentRequest(BaseModel):
    bookingId: str
    paymentToken: str  # USDC|USDT
    paymentAmount: Decimal
    chainId: int


class LockedDetails(BaseModel):
    bookingId: str
    paymentToken: str
    paymentAmount: Decimal
    amountBaseUnits: str
    chainId: int


class LockPaymentResponse(BaseModel):
    success: bool = True
    message: str
    lockedDetails: LockedDetails


class SubmitPaymentRequest(BaseModel):
    bookingId: str
    txHash: str
    chainId: int
    isRemainingPayment: bool = False


class SubmitPaymentResponse(BaseModel):
    success: bool = True
    bookingId: str
    status: str = "verifying"
    message: str = "Transaction submitted for verification"
