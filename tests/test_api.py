from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from app.api.deps import get_chain_registry, get_verification_dispatcher
from app.db.session import get_db
from app.main import app
from app.models.booking import BookingStatus
from conftest import load_booking, record_payment, tx_hash


@pytest.fixture()
def dispatched():
    return []


@pytest.fixture()
def client(session_factory, registry, dispatched):
    def _db():
        s = session_factory()
        try:
            yield s
        finally:
            s.close()

    def _dispatch(booking_id, h, chain_id, is_remaining_payment=False):
        dispatched.append((booking_id, h, chain_id, is_remaining_payment))

    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[get_chain_registry] = lambda: registry
    app.dependency_overrides[get_verification_dispatcher] = lambda: _dispatch
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()


def _lock(client, booking_id, token="USDC", amount=150, chain_id=56):
    return client.post("/api/v1/bookings/lock-payment", json={
        "bookingId": booking_id,
        "paymentToken": token,
        "paymentAmount": amount,
        "chainId": chain_id,
    })


def _submit(client, booking_id, h, chain_id=56, remaining=False):
    return client.post("/api/v1/payments/submit-payment", json={
        "bookingId": booking_id,
        "txHash": h,
        "chainId": chain_id,
        "isRemainingPayment": remaining,
    })


def test_health_lists_chains(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["chains"] == [56, 8453, 42161]


def test_lock_payment(client, make_booking, session_factory):
    booking_id = make_booking(locked=False)

    r = _lock(client, booking_id)

    assert r.status_code == 200, r.text
    body = r.json()
    assert body["success"] is True
    locked = body["lockedDetails"]
    assert locked["paymentToken"] == "USDC"
    assert Decimal(str(locked["paymentAmount"])) == Decimal("150")
    assert locked["amountBaseUnits"] == str(150 * 10**18)
    assert locked["chainId"] == 56
    assert load_booking(session_factory, booking_id).payment_token == "USDC"


def test_lock_six_decimal_chain(client, make_booking):
    booking_id = make_booking(locked=False)

    r = _lock(client, booking_id, amount="99.5", chain_id=42161)

    assert r.status_code == 200, r.text
    assert r.json()["lockedDetails"]["amountBaseUnits"] == "99500000"


@pytest.mark.parametrize("token,amount,chain_id", [
    ("DAI", 150, 56),
    ("USDC", 0, 56),
    ("USDC", -5, 56),
    ("USDC", 150, 1),
    ("USDT", 150, 8453),
])
def test_lock_rejects_bad_terms(client, make_booking, token, amount, chain_id):
    booking_id = make_booking(locked=False)

    r = _lock(client, booking_id, token=token, amount=amount, chain_id=chain_id)

    assert r.status_code == 400


def test_lock_unknown_booking(client):
    assert _lock(client, "missing").status_code == 404


def test_lock_is_idempotent_for_same_terms(client, make_booking):
    booking_id = make_booking(locked=False)

    assert _lock(client, booking_id).status_code == 200
    assert _lock(client, booking_id).status_code == 200


def test_relock_with_different_terms_is_rejected(client, make_booking):
    booking_id = make_booking(locked=False)
    assert _lock(client, booking_id).status_code == 200

    r = _lock(client, booking_id, amount=1)

    assert r.status_code == 409
    assert r.json()["detail"]["code"] == "ALREADY_LOCKED"


@pytest.mark.parametrize("status", [BookingStatus.CONFIRMED, BookingStatus.CANCELLED, BookingStatus.REFUNDED])
def test_lock_closed_booking_is_rejected(client, make_booking, status):
    booking_id = make_booking(locked=False, status=status)

    r = _lock(client, booking_id)

    assert r.status_code == 409
    assert r.json()["detail"]["code"] == "BOOKING_CLOSED"


def test_lock_expired_window_is_rejected(client, make_booking):
    booking_id = make_booking(locked=False, expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))
    assert _lock(client, booking_id).status_code == 409


def test_failed_booking_can_be_relocked(client, make_booking, session_factory):
    booking_id = make_booking(status=BookingStatus.FAILED, failure_reason="wrong recipient")

    r = _lock(client, booking_id)

    assert r.status_code == 200, r.text
    b = load_booking(session_factory, booking_id)
    assert b.status == BookingStatus.PENDING
    assert b.failure_reason is None


def test_submit_payment_dispatches_verification(client, make_booking, session_factory, dispatched):
    booking_id = make_booking()
    h = "0x" + "AB" * 32

    r = _submit(client, booking_id, h)

    assert r.status_code == 200, r.text
    assert r.json()["status"] == "verifying"
    assert dispatched == [(booking_id, h.lower(), 56, False)]
    assert load_booking(session_factory, booking_id).tx_hash == h.lower()


def test_submit_rejects_malformed_hash(client, make_booking, dispatched):
    booking_id = make_booking()

    r = _submit(client, booking_id, "0x1234")

    assert r.status_code == 400
    assert dispatched == []


def test_submit_requires_locked_terms(client, make_booking):
    booking_id = make_booking(locked=False)
    assert _submit(client, booking_id, tx_hash(1)).status_code == 400


def test_submit_rejects_chain_other_than_locked(client, make_booking):
    booking_id = make_booking(chain_id=42161)
    assert _submit(client, booking_id, tx_hash(2), chain_id=56).status_code == 400


def test_submit_rejects_hash_used_by_confirmed_booking(client, make_booking, dispatched):
    h = tx_hash(3)
    make_booking(status=BookingStatus.CONFIRMED, tx_hash=h)
    booking_id = make_booking(email="second@example.com")

    r = _submit(client, booking_id, h)

    assert r.status_code == 409
    assert r.json()["detail"]["code"] == "TRANSACTION_ALREADY_USED"
    assert dispatched == []


def test_remaining_payment_requires_paid_reservation(client, make_booking):
    booking_id = make_booking(
        requires_reservation=True, reservation_amount=Decimal("50"), remaining_amount=Decimal("100"),
    )
    assert _submit(client, booking_id, tx_hash(4), remaining=True).status_code == 409


def test_resubmitting_reservation_hash_as_remaining_is_rejected(client, make_booking, session_factory, dispatched):
    h = tx_hash(6)
    booking_id = make_booking(
        status=BookingStatus.RESERVED, tx_hash=h, requires_reservation=True, reservation_paid=True,
        reservation_tx_hash=h, reservation_amount=Decimal("50"), remaining_amount=Decimal("100"),
    )
    record_payment(session_factory, booking_id, h, leg="reservation", amount=Decimal("50"))

    r = _submit(client, booking_id, h, remaining=True)

    assert r.status_code == 409
    assert r.json()["detail"]["code"] == "TRANSACTION_ALREADY_USED"
    assert dispatched == []
    b = load_booking(session_factory, booking_id)
    assert b.status == BookingStatus.RESERVED
    assert b.remaining_tx_hash is None


def test_get_booking_payment_state(client, make_booking):
    h = tx_hash(5)
    booking_id = make_booking(tx_hash=h)

    r = client.get(f"/api/v1/bookings/{booking_id}")

    assert r.status_code == 200
    body = r.json()
    assert body["status"] == BookingStatus.PENDING
    assert body["chainName"] == "BNB Smart Chain"
    assert body["explorerUrl"] == f"https://bscscan.com/tx/{h}"


def test_get_unknown_booking(client):
    assert client.get("/api/v1/bookings/missing").status_code == 404
