"""Shared fixtures for the payment verification tests.

Key principles:
- Every test gets its own in-memory SQLite database (StaticPool, one connection).
- The ledger is a scripted fake; no test talks to a real RPC node or price API.
- Retry sleeps are recorded instead of slept.
"""

import os

# Settings are read at import time by app.core.config; set them before any app import.
TREASURY = "0x1111111111111111111111111111111111111111"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENV"] = "test"
os.environ["TREASURY_ADDRESS"] = TREASURY
os.environ["ALCHEMY_API_KEY_ARBITRUM"] = "test-arbitrum-key"
os.environ["ALCHEMY_API_KEY_BNB"] = "test-bnb-key"
os.environ["ALCHEMY_API_KEY_BASE"] = "test-base-key"

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

from app.core.chains import build_chain_registry
from app.core.config import Settings
from app.db.session import Base, make_engine
from app.models.activity_log import ActivityLog
from app.models.booking import Booking
from app.models.email_log import EmailLog  # noqa: F401
from app.models.payment import Payment
from app.models.room import Room
from app.models.user import User
from app.services.chain_client import ChainClientPool, LogEntry, Transaction, TransactionReceipt
from app.services.price_feed import PriceFeedCache
from app.services.transfer_events import TRANSFER_EVENT_TOPIC
from app.services.verification_service import VerificationEngine

BSC_USDC = "0x8AC76a51cc950d9822D68b83fE1Ad97B32Cd580d"
SENDER = "0x2222222222222222222222222222222222222222"
STRANGER = "0x3333333333333333333333333333333333333333"


def tx_hash(n: int) -> str:
    return "0x" + f"{n:064x}"


def _topic(address: str) -> str:
    return "0x" + "0" * 24 + address[2:].lower()


def transfer_log(to_address: str, value: int, token_address: str = BSC_USDC, from_address: str = SENDER) -> LogEntry:
    return LogEntry(
        address=token_address.lower(),
        topics=[TRANSFER_EVENT_TOPIC, _topic(from_address), _topic(to_address)],
        data="0x" + f"{value:064x}",
    )


def receipt(h: str, logs: list, succeeded: bool = True, gas_used: int = 21000) -> TransactionReceipt:
    return TransactionReceipt(
        tx_hash=h,
        succeeded=succeeded,
        block_number=4242,
        gas_used=gas_used,
        effective_gas_price=1_000_000_000,
        logs=logs,
    )


class FakeChainClient:
    """Scripted ledger: each receipt lookup consumes the next scripted answer.

    An answer is a TransactionReceipt, None (not mined yet) or an exception to raise.
    The last answer repeats once the script runs out.
    """

    def __init__(self, chain_id: int = 56):
        self.chain_id = chain_id
        self.scripts: dict[str, list] = {}
        self.transactions: dict[str, Transaction] = {}
        self.receipt_calls: list[str] = []

    def script(self, h: str, *answers) -> None:
        self.scripts[h.lower()] = list(answers)

    def get_transaction_receipt(self, h: str):
        self.receipt_calls.append(h)
        answers = self.scripts.get(h.lower(), [None])
        answer = answers.pop(0) if len(answers) > 1 else answers[0]
        if isinstance(answer, Exception):
            raise answer
        return answer

    def get_transaction(self, h: str):
        return self.transactions.get(h.lower(), Transaction(h, SENDER, BSC_USDC.lower(), 3_000_000_000))


class StaticPriceSource:
    name = "static"

    def __init__(self, prices: dict):
        self.prices = prices
        self.calls = 0

    def fetch(self, symbol: str) -> float:
        self.calls += 1
        return self.prices[symbol]


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[tuple[str, object]] = []

    def payment_confirmed(self, notice):
        if self.fail:
            raise RuntimeError("smtp down")
        self.sent.append(("payment_confirmed", notice))

    def payment_failed(self, notice):
        if self.fail:
            raise RuntimeError("smtp down")
        self.sent.append(("payment_failed", notice))


@pytest.fixture()
def test_settings() -> Settings:
    return Settings(
        DATABASE_URL="sqlite://",
        ENV="test",
        TREASURY_ADDRESS=TREASURY,
        ALCHEMY_API_KEY_ARBITRUM="test-arbitrum-key",
        ALCHEMY_API_KEY_BNB="test-bnb-key",
        ALCHEMY_API_KEY_BASE="test-base-key",
    )


@pytest.fixture()
def registry(test_settings):
    return build_chain_registry(test_settings)


@pytest.fixture()
def session_factory():
    """Fresh in-memory database per test."""
    engine = make_engine("sqlite://")
    Base.metadata.create_all(engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    try:
        yield factory
    finally:
        engine.dispose()


@pytest.fixture()
def db(session_factory):
    s = session_factory()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture()
def chain_client():
    return FakeChainClient(56)


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def sleeps():
    return []


@pytest.fixture()
def price_feed():
    return PriceFeedCache([StaticPriceSource({"BNB": 600.0, "ETH": 3000.0})])


@pytest.fixture()
def verifier(session_factory, registry, chain_client, price_feed, notifier, sleeps):
    return VerificationEngine(
        session_factory,
        registry,
        ChainClientPool({56: chain_client, 42161: FakeChainClient(42161), 8453: FakeChainClient(8453)}),
        price_feed,
        notifier,
        max_retries=3,
        retry_delay=0.5,
        sleep=sleeps.append,
    )


@pytest.fixture()
def make_booking(db):
    """Create user + room + booking; payment terms are locked unless locked=False."""

    def _make(
        price=Decimal("150"),
        token="USDC",
        chain_id=56,
        locked=True,
        locked_amount=None,
        status="PENDING",
        email="guest@example.com",
        expires_at=None,
        **extra,
    ) -> str:
        user = User(id=str(uuid.uuid4()), email=email, full_name="Guest")
        room = Room(id=str(uuid.uuid4()), stay_id="stay-1", name="Sea view", price_usdc=price, price_usdt=price)
        booking = Booking(
            id=str(uuid.uuid4()),
            user_id=user.id,
            stay_id="stay-1",
            selected_room_id=room.id,
            status=status,
            expires_at=expires_at or datetime.now(timezone.utc) + timedelta(minutes=30),
            **extra,
        )
        if locked:
            booking.payment_token = token
            booking.payment_amount = price if locked_amount is None else locked_amount
            booking.chain_id = chain_id
        db.add_all([user, room, booking])
        db.commit()
        return booking.id

    return _make


def load_booking(session_factory, booking_id: str) -> Booking:
    with session_factory() as s:
        return s.get(Booking, booking_id)


def actions(session_factory, booking_id: str) -> list[str]:
    with session_factory() as s:
        rows = (
            s.query(ActivityLog)
            .filter(ActivityLog.booking_id == booking_id)
            .order_by(ActivityLog.created_at.asc())
            .all()
        )
        return [r.action for r in rows]


def record_payment(session_factory, booking_id: str, h: str, leg: str = "full", amount=Decimal("150")) -> None:
    """Insert a settled payments row for ``h``, committed in its own session."""
    with session_factory() as s:
        s.add(Payment(
            id=str(uuid.uuid4()),
            booking_id=booking_id,
            tx_hash=h.lower(),
            chain_id=56,
            leg=leg,
            token="USDC",
            amount=amount,
            amount_base_units=str(int(amount) * 10**18),
        ))
        s.commit()
