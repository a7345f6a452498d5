"""On-chain payment verification.

``VerificationEngine.verify_payment`` polls the ledger for a transaction receipt,
matches the stablecoin Transfer to the treasury against the booking's locked
terms and moves the booking to its outcome exactly once.

Failure classes are kept apart in the activity log:

* ``config``          - the booking or deployment cannot be verified as configured
* ``onchain``         - the ledger answered and the answer is wrong (never retried)
* ``infrastructure``  - the ledger could not be asked (retried, then FAILED)
* ``timeout``         - the transaction never showed up within the retry budget
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
import uuid

from sqlalchemy.exc import IntegrityError

from app.core.chains import ChainConfig, ChainRegistry, ConfigurationError, TokenConfig, UnsupportedChainError
from app.models.booking import Booking, BookingStatus
from app.models.payment import Payment
from app.models.room import Room
from app.models.user import User
from app.services.activity_service import log_activity
from app.services.booking_state import is_terminal, transition
from app.services.chain_client import ChainClientPool, ChainUnsupportedError, RpcError, TransactionReceipt
from app.services.email_service import PaymentNotice
from app.services.payment_service import transaction_used_elsewhere
from app.services.price_feed import PriceFeedCache
from app.services.transfer_events import decode_transfer, from_base_units, is_transfer_log, to_base_units

logger = logging.getLogger(__name__)

WEI_PER_NATIVE = Decimal(10) ** 18


class Outcome:
    CONFIRMED = "confirmed"
    RESERVED = "reserved"
    ALREADY_CONFIRMED = "already_confirmed"
    FAILED = "failed"
    NOT_FOUND = "not_found"
    ABORTED = "aborted"


class Reason:
    NOT_LOCKED = "payment not locked"
    ROOM_PRICE_MISSING = "room price not configured"
    LOCKED_AMOUNT_MISMATCH = "locked amount mismatch"
    INSTALLMENTS_MISCONFIGURED = "installment amounts not configured"
    CHAIN_MISMATCH = "chain mismatch"
    UNSUPPORTED_CHAIN = "unsupported chain"
    TX_ALREADY_USED = "transaction already used"
    REVERTED = "transaction reverted"
    NO_TRANSFER_EVENTS = "no transfer events"
    WRONG_RECIPIENT = "wrong recipient"
    ONCHAIN_AMOUNT_MISMATCH = "on-chain amount mismatch"
    TIMEOUT = "timeout"
    INFRASTRUCTURE = "infrastructure error"


class Leg:
    FULL = "full"
    RESERVATION = "reservation"
    REMAINING = "remaining"


@dataclass
class VerificationResult:
    outcome: str
    booking_id: str
    reason: str = ""
    attempts: int = 0
    status: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome in (Outcome.CONFIRMED, Outcome.RESERVED, Outcome.ALREADY_CONFIRMED)


@dataclass(frozen=True)
class _Terms:
    booking_id: str
    user_id: str
    leg: str
    expected_status: tuple[str, ...]
    chain: ChainConfig
    token: TokenConfig
    locked_amount: Decimal
    expected_amount: Decimal
    expected_base_units: int
    previous_total_paid: Decimal = Decimal(0)


class _Failure(Exception):
    def __init__(self, reason: str, category: str, details: dict | None = None):
        super().__init__(reason)
        self.reason = reason
        self.category = category
        self.details = details or {}


@dataclass
class _Attempt:
    kind: str = ""
    error: str = ""
    history: list = field(default_factory=list)


def _leg_settled(b: Booking, leg: str) -> bool:
    if b.status == BookingStatus.CONFIRMED:
        return True
    if leg == Leg.RESERVATION:
        return bool(b.reservation_paid)
    if leg == Leg.REMAINING:
        return bool(b.remaining_paid)
    return False


class VerificationEngine:
    def __init__(
        self,
        session_factory,
        registry: ChainRegistry,
        clients: ChainClientPool,
        price_feed: PriceFeedCache,
        notifier=None,
        *,
        max_retries: int = 10,
        retry_delay: float = 3.0,
        amount_epsilon: Decimal = Decimal("0.01"),
        sleep=time.sleep,
    ):
        self._session_factory = session_factory
        self.registry = registry
        self.clients = clients
        self.price_feed = price_feed
        self.notifier = notifier
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.amount_epsilon = Decimal(str(amount_epsilon))
        self._sleep = sleep

    def verify_payment(
        self,
        booking_id: str,
        tx_hash: str,
        chain_id: int,
        max_retries: int | None = None,
        retry_delay: float | None = None,
        is_remaining_payment: bool = False,
    ) -> VerificationResult:
        """Verify ``tx_hash`` as payment for ``booking_id``. Never raises."""
        max_retries = self.max_retries if max_retries is None else max(1, int(max_retries))
        retry_delay = self.retry_delay if retry_delay is None else retry_delay
        tx_hash = (tx_hash or "").lower()
        try:
            return self._verify(booking_id, tx_hash, chain_id, max_retries, retry_delay, is_remaining_payment)
        except Exception as e:
            logger.exception(f"[Verification] Unexpected error for booking {booking_id}")
            try:
                return self._fail_booking(booking_id, None, tx_hash, chain_id, _Failure(Reason.INFRASTRUCTURE, "infrastructure", {"error": str(e)}))
            except Exception:
                logger.exception(f"[Verification] Could not record failure for booking {booking_id}")
                return VerificationResult(Outcome.FAILED, booking_id, reason=Reason.INFRASTRUCTURE)

    # -- preconditions -----------------------------------------------------

    def _verify(self, booking_id, tx_hash, chain_id, max_retries, retry_delay, is_remaining) -> VerificationResult:
        logger.info(f"[Verification] Booking {booking_id} tx {tx_hash} on chain {chain_id} ({self.registry.chain_name(chain_id)})")
        with self._session_factory() as db:
            b = db.get(Booking, booking_id)
            if b is None:
                logger.error(f"[Verification] Booking {booking_id} not found")
                return VerificationResult(Outcome.NOT_FOUND, booking_id, reason="booking not found")

            leg = Leg.FULL
            if b.requires_reservation:
                leg = Leg.REMAINING if is_remaining else Leg.RESERVATION

            if _leg_settled(b, leg):
                logger.info(f"[Verification] Booking {booking_id} already confirmed, skipping")
                return VerificationResult(Outcome.ALREADY_CONFIRMED, booking_id, status=b.status)

            if is_terminal(b.status):
                logger.warning(f"[Verification] Booking {booking_id} is {b.status}; status is final, not verifying")
                return VerificationResult(Outcome.ABORTED, booking_id, reason=f"booking is {b.status}", status=b.status)

            expected_status = (BookingStatus.PENDING, BookingStatus.RESERVED) if leg == Leg.REMAINING else (BookingStatus.PENDING,)
            if b.status not in expected_status:
                logger.warning(f"[Verification] Booking {booking_id} is {b.status}; not verifying")
                return VerificationResult(Outcome.ABORTED, booking_id, reason=f"booking is {b.status}", status=b.status)

            settled = db.query(Payment).filter(Payment.tx_hash == tx_hash, Payment.booking_id == b.id).first()
            if settled is not None:
                # The hash already paid another leg of this booking; that leg stands
                logger.warning(f"[Verification] Booking {booking_id}: tx {tx_hash} already settled its {settled.leg} leg")
                log_activity(db, b.id, "verification_aborted", {
                    "reason": Reason.TX_ALREADY_USED,
                    "txHash": tx_hash,
                    "leg": leg,
                    "settledLeg": settled.leg,
                    "status": b.status,
                }, user_id=b.user_id)
                db.commit()
                return VerificationResult(Outcome.ABORTED, booking_id, reason=Reason.TX_ALREADY_USED, status=b.status)

            failure = None
            try:
                terms = self._resolve_terms(db, b, leg, expected_status, tx_hash, chain_id)
            except _Failure as e:
                failure = e

        if failure is not None:
            logger.error(f"[Verification] Booking {booking_id}: {failure.reason}")
            return self._fail_booking(booking_id, expected_status, tx_hash, chain_id, failure)
        return self._poll(terms, tx_hash, max_retries, retry_delay)

    def _resolve_terms(self, db, b: Booking, leg: str, expected_status, tx_hash: str, chain_id: int) -> _Terms:
        if not b.is_locked:
            raise _Failure(Reason.NOT_LOCKED, "config")

        locked = Decimal(b.payment_amount)
        room = db.get(Room, b.selected_room_id) if b.selected_room_id else None
        room_price = room.price_for(b.payment_token) if room else None
        if room_price is None:
            raise _Failure(Reason.ROOM_PRICE_MISSING, "config", {"roomId": b.selected_room_id, "token": b.payment_token})
        room_price = Decimal(room_price)

        if abs(locked - room_price) > self.amount_epsilon:
            logger.error(f"[Verification] Amount mismatch! Expected: {room_price}, Locked: {locked}")
            raise _Failure(Reason.LOCKED_AMOUNT_MISMATCH, "config", {"expected": room_price, "locked": locked})

        expected_amount = room_price
        previous_total = Decimal(0)
        if leg != Leg.FULL:
            reservation = b.reservation_amount
            remaining = b.remaining_amount
            if reservation is None or remaining is None or abs(Decimal(reservation) + Decimal(remaining) - locked) > self.amount_epsilon:
                raise _Failure(Reason.INSTALLMENTS_MISCONFIGURED, "config", {"reservation": reservation, "remaining": remaining, "locked": locked})
            expected_amount = Decimal(reservation) if leg == Leg.RESERVATION else Decimal(remaining)
            if leg == Leg.REMAINING:
                previous_total = Decimal(b.total_paid or reservation)

        if b.chain_id != chain_id:
            raise _Failure(Reason.CHAIN_MISMATCH, "config", {"lockedChainId": b.chain_id})
        try:
            chain = self.registry.get(chain_id)
            token = self.registry.token(chain_id, b.payment_token)
            self.clients.get(chain_id)
        except (UnsupportedChainError, ChainUnsupportedError, ConfigurationError) as e:
            raise _Failure(Reason.UNSUPPORTED_CHAIN, "config", {"error": str(e)})

        if transaction_used_elsewhere(db, tx_hash, b.id):
            raise _Failure(Reason.TX_ALREADY_USED, "config", {"txHash": tx_hash})

        return _Terms(
            booking_id=b.id,
            user_id=b.user_id,
            leg=leg,
            expected_status=expected_status,
            chain=chain,
            token=token,
            locked_amount=locked,
            expected_amount=expected_amount,
            expected_base_units=to_base_units(expected_amount, token.decimals),
            previous_total_paid=previous_total,
        )

    # -- retry loop --------------------------------------------------------

    def _poll(self, terms: _Terms, tx_hash: str, max_retries: int, retry_delay: float) -> VerificationResult:
        client = self.clients.get(terms.chain.chain_id)
        last = _Attempt()
        for attempt in range(1, max_retries + 1):
            logger.info(f"[Verification] Attempt {attempt}/{max_retries} for booking {terms.booking_id}")
            stop = self._still_waiting(terms)
            if stop is not None:
                stop.attempts = attempt - 1
                return stop

            try:
                receipt = client.get_transaction_receipt(tx_hash)
                if receipt is None:
                    last.kind, last.error = "timeout", "transaction not mined yet"
                else:
                    result = self._evaluate(terms, tx_hash, client, receipt)
                    result.attempts = attempt
                    return result
            except _Failure as failure:
                result = self._fail_booking(terms.booking_id, terms.expected_status, tx_hash, terms.chain.chain_id, failure, terms)
                result.attempts = attempt
                return result
            except RpcError as e:
                last.kind, last.error = "infrastructure", str(e)
            except Exception as e:
                logger.exception(f"[Verification] Error on attempt {attempt}")
                last.kind, last.error = "infrastructure", str(e)

            last.history.append(last.kind)
            logger.warning(f"[Verification] Attempt {attempt}/{max_retries} for booking {terms.booking_id}: {last.error}")
            with self._session_factory() as db:
                log_activity(db, terms.booking_id, "verification_retry", {
                    "attempt": attempt,
                    "maxRetries": max_retries,
                    "category": last.kind,
                    "error": last.error,
                    "txHash": tx_hash,
                    "chainId": terms.chain.chain_id,
                }, user_id=terms.user_id)
                db.commit()
            if attempt < max_retries:
                self._sleep(retry_delay)

        reason = Reason.TIMEOUT if last.kind == "timeout" else Reason.INFRASTRUCTURE
        logger.error(f"[Verification] All {max_retries} attempts exhausted for booking {terms.booking_id}: {reason}")
        failure = _Failure(reason, last.kind or "timeout", {
            "attempts": max_retries,
            "lastError": last.error,
            "infrastructureErrors": last.history.count("infrastructure"),
        })
        result = self._fail_booking(terms.booking_id, terms.expected_status, tx_hash, terms.chain.chain_id, failure, terms)
        result.attempts = max_retries
        return result

    def _still_waiting(self, terms: _Terms) -> VerificationResult | None:
        """Re-read the booking; stop if another actor settled, expired or cancelled it."""
        with self._session_factory() as db:
            b = db.get(Booking, terms.booking_id)
            if b is None:
                return VerificationResult(Outcome.NOT_FOUND, terms.booking_id, reason="booking not found")
            if _leg_settled(b, terms.leg):
                return VerificationResult(Outcome.ALREADY_CONFIRMED, terms.booking_id, status=b.status)
            if b.status not in terms.expected_status:
                logger.warning(f"[Verification] Booking {terms.booking_id} moved to {b.status}; aborting")
                log_activity(db, terms.booking_id, "verification_aborted", {"status": b.status}, user_id=terms.user_id)
                db.commit()
                return VerificationResult(Outcome.ABORTED, terms.booking_id, reason=f"booking is {b.status}", status=b.status)
        return None

    # -- matching ----------------------------------------------------------

    def _evaluate(self, terms: _Terms, tx_hash: str, client, receipt: TransactionReceipt) -> VerificationResult:
        logger.info(f"[Verification] Receipt block {receipt.block_number}, success={receipt.succeeded}, {len(receipt.logs)} logs")
        if not receipt.succeeded:
            raise _Failure(Reason.REVERTED, "onchain", {"blockNumber": receipt.block_number})

        token_address = terms.token.contract_address.lower()
        transfer_logs = [log for log in receipt.logs if is_transfer_log(log, token_address)]
        if not transfer_logs:
            raise _Failure(Reason.NO_TRANSFER_EVENTS, "onchain", {"tokenAddress": terms.token.contract_address})

        treasury = self.registry.treasury_address
        recipients = []
        for log in transfer_logs:
            try:
                transfer = decode_transfer(log)
            except Exception as e:
                logger.warning(f"[Verification] Skipping undecodable Transfer log: {e}")
                continue
            recipients.append(transfer.to_address)
            if transfer.to_address != treasury:
                continue

            if transfer.value != terms.expected_base_units:
                logger.error(f"[Verification] Amount mismatch on-chain: {transfer.value} != {terms.expected_base_units}")
                raise _Failure(Reason.ONCHAIN_AMOUNT_MISMATCH, "onchain", {
                    "onChain": from_base_units(transfer.value, terms.token.decimals),
                    "onChainBaseUnits": str(transfer.value),
                    "expected": terms.expected_amount,
                    "expectedBaseUnits": str(terms.expected_base_units),
                })

            tx = client.get_transaction(tx_hash)
            sender = tx.from_address if tx else transfer.from_address
            gas_price = (tx.gas_price if tx else 0) or receipt.effective_gas_price
            return self._confirm(terms, tx_hash, receipt, sender, gas_price)

        raise _Failure(Reason.WRONG_RECIPIENT, "onchain", {"expectedTreasury": treasury, "recipients": recipients})

    def _gas_fee_usd(self, terms: _Terms, gas_used: int, gas_price: int) -> Decimal | None:
        """Reporting only; None when no usable figure can be computed."""
        symbol = terms.chain.native_currency_symbol
        try:
            fee_native = Decimal(gas_used * gas_price) / WEI_PER_NATIVE
            native_usd = Decimal(str(self.price_feed.get_native_price(symbol)))
            return (fee_native * native_usd).quantize(Decimal("0.000001"))
        except Exception as e:
            logger.warning(f"[Verification] Gas fee for booking {terms.booking_id} not recorded ({symbol} price): {e!r}")
            return None

    # -- outcomes ----------------------------------------------------------

    def _confirm(self, terms: _Terms, tx_hash: str, receipt: TransactionReceipt, sender: str, gas_price: int) -> VerificationResult:
        gas_fee_usd = self._gas_fee_usd(terms, receipt.gas_used, gas_price)
        now = datetime.now(timezone.utc)
        values = {
            "tx_hash": tx_hash,
            "block_number": receipt.block_number,
            "sender_address": sender,
            "receiver_address": self.registry.treasury_address,
            "gas_used": str(receipt.gas_used),
            "gas_fee_usd": gas_fee_usd,
            "failure_reason": None,
        }
        conditions = ()
        if terms.leg == Leg.FULL:
            target, action = BookingStatus.CONFIRMED, "payment_confirmed"
            values.update(confirmed_at=now, total_paid=terms.locked_amount)
        elif terms.leg == Leg.RESERVATION:
            target, action = BookingStatus.RESERVED, "reservation_confirmed"
            values.update(reservation_paid=True, reservation_tx_hash=tx_hash, total_paid=terms.expected_amount)
            conditions = (Booking.reservation_paid.is_(False),)
        else:
            target, action = BookingStatus.CONFIRMED, "payment_confirmed"
            values.update(
                remaining_paid=True, remaining_tx_hash=tx_hash, confirmed_at=now,
                total_paid=terms.previous_total_paid + terms.expected_amount,
            )
            conditions = (Booking.reservation_paid.is_(True), Booking.remaining_paid.is_(False))

        details = {
            "txHash": tx_hash,
            "chainId": terms.chain.chain_id,
            "leg": terms.leg,
            "amount": terms.expected_amount,
            "token": terms.token.symbol,
            "blockNumber": receipt.block_number,
            "gasUsed": str(receipt.gas_used),
            "gasFeeUSD": gas_fee_usd,
        }
        claimed_elsewhere, ok = False, False
        with self._session_factory() as db:
            try:
                ok = transition(
                    db, terms.booking_id, terms.expected_status, target,
                    action=action, details=details, values=values, conditions=conditions, user_id=terms.user_id,
                )
                if ok:
                    db.add(Payment(
                        id=str(uuid.uuid4()),
                        booking_id=terms.booking_id,
                        tx_hash=tx_hash,
                        chain_id=terms.chain.chain_id,
                        leg=terms.leg,
                        token=terms.token.symbol,
                        amount=terms.expected_amount,
                        amount_base_units=str(terms.expected_base_units),
                        sender_address=sender,
                        block_number=receipt.block_number,
                    ))
                    db.flush()
                db.commit()
            except IntegrityError:
                # Another booking claimed this hash between our check and our write
                db.rollback()
                claimed_elsewhere = True

            if not claimed_elsewhere and not ok:
                return self._lost_race(db, terms)

        if claimed_elsewhere:
            return self._fail_booking(terms.booking_id, terms.expected_status, tx_hash, terms.chain.chain_id,
                                      _Failure(Reason.TX_ALREADY_USED, "config", {"txHash": tx_hash}), terms)

        logger.info(f"[Verification] Payment verified for booking {terms.booking_id}: {terms.expected_amount} {terms.token.symbol} ({terms.leg})")
        self._notify("payment_confirmed", terms.booking_id, tx_hash, terms.chain, terms.expected_amount, terms.token.symbol, leg=terms.leg)
        outcome = Outcome.RESERVED if target == BookingStatus.RESERVED else Outcome.CONFIRMED
        return VerificationResult(outcome, terms.booking_id, status=target)

    def _lost_race(self, db, terms: _Terms) -> VerificationResult:
        db.expire_all()
        b = db.get(Booking, terms.booking_id)
        if b is not None and _leg_settled(b, terms.leg):
            return VerificationResult(Outcome.ALREADY_CONFIRMED, terms.booking_id, status=b.status)
        status = b.status if b else None
        return VerificationResult(Outcome.ABORTED, terms.booking_id, reason=f"booking is {status}", status=status)

    def _fail_booking(self, booking_id: str, expected_status, tx_hash: str, chain_id: int, failure: _Failure, terms: _Terms | None = None) -> VerificationResult:
        details = {"reason": failure.reason, "category": failure.category, "txHash": tx_hash, "chainId": chain_id, **failure.details}
        with self._session_factory() as db:
            b = db.get(Booking, booking_id)
            if b is None:
                return VerificationResult(Outcome.NOT_FOUND, booking_id, reason="booking not found")
            if expected_status is None:
                expected_status = tuple(BookingStatus.AWAITING_PAYMENT)
            ok = transition(
                db, booking_id, expected_status, BookingStatus.FAILED,
                action="payment_failed", details=details, values={"failure_reason": failure.reason}, user_id=b.user_id,
            )
            db.commit()
            if not ok:
                return self._lost_race(db, terms) if terms else VerificationResult(Outcome.ABORTED, booking_id, reason=failure.reason)
            amount, token = b.payment_amount, b.payment_token

        logger.error(f"[Verification] Booking {booking_id} FAILED: {failure.reason} ({failure.category})")
        chain = None
        try:
            chain = self.registry.get(chain_id)
        except UnsupportedChainError:
            pass
        self._notify("payment_failed", booking_id, tx_hash, chain, amount, token, reason=failure.reason, chain_id=chain_id)
        return VerificationResult(Outcome.FAILED, booking_id, reason=failure.reason, status=BookingStatus.FAILED)

    def _notify(self, kind: str, booking_id: str, tx_hash: str, chain: ChainConfig | None, amount, token, reason: str = "", leg: str = Leg.FULL, chain_id: int | None = None):
        """Fire-and-forget; a notifier failure is recorded but never changes the outcome."""
        if self.notifier is None:
            return
        try:
            with self._session_factory() as db:
                b = db.get(Booking, booking_id)
                user = db.get(User, b.user_id) if b else None
                recipient = user.email if user else None
            if not recipient:
                logger.warning(f"[Verification] Cannot send {kind} email for booking {booking_id}: no recipient")
                return
            notice = PaymentNotice(
                recipient=recipient,
                booking_id=booking_id,
                amount=amount,
                token=token,
                tx_hash=tx_hash,
                chain_id=chain.chain_id if chain else chain_id,
                chain_name=chain.name if chain else self.registry.chain_name(chain_id),
                reason=reason,
                leg=leg,
            )
            getattr(self.notifier, kind)(notice)
        except Exception as e:
            logger.exception(f"[Verification] Failed to send {kind} email for booking {booking_id}")
            try:
                with self._session_factory() as db:
                    log_activity(db, booking_id, "email_failed", {"error": str(e), "type": kind})
                    db.commit()
            except Exception:
                logger.exception(f"[Verification] Could not record email failure for booking {booking_id}")


def build_verification_engine(settings, session_factory, registry: ChainRegistry | None = None) -> VerificationEngine:
    from app.core.chains import build_chain_registry
    from app.services.email_service import EmailNotifier
    from app.services.price_feed import build_price_feed

    registry = registry or build_chain_registry(settings)
    return VerificationEngine(
        session_factory,
        registry,
        ChainClientPool.from_registry(registry, timeout=settings.RPC_TIMEOUT_SECONDS),
        build_price_feed(settings, symbols={chain.native_currency_symbol for chain in registry}),
        EmailNotifier(session_factory),
        max_retries=settings.VERIFY_MAX_RETRIES,
        retry_delay=settings.VERIFY_RETRY_DELAY_SECONDS,
        amount_epsilon=settings.PAYMENT_AMOUNT_EPSILON,
    )
