from decimal import Decimal

import pytest
from eth_abi import encode
from eth_utils import keccak

from app.services.chain_client import LogEntry
from app.services.transfer_events import (
    TRANSFER_EVENT_TOPIC,
    decode_transfer,
    from_base_units,
    is_transfer_log,
    to_base_units,
)
from conftest import BSC_USDC, SENDER, TREASURY, transfer_log


def test_topic_is_keccak_of_signature():
    assert TRANSFER_EVENT_TOPIC == "0x" + keccak(text="Transfer(address,address,uint256)").hex()


def test_decode_abi_encoded_transfer():
    value = 150 * 10**18
    log = LogEntry(
        address=BSC_USDC.lower(),
        topics=[
            TRANSFER_EVENT_TOPIC,
            "0x" + encode(["address"], [SENDER]).hex(),
            "0x" + encode(["address"], [TREASURY]).hex(),
        ],
        data="0x" + encode(["uint256"], [value]).hex(),
    )

    event = decode_transfer(log)

    assert event.from_address == SENDER
    assert event.to_address == TREASURY
    assert event.value == value
    assert event.token_address == BSC_USDC.lower()


def test_empty_data_decodes_as_zero():
    log = transfer_log(TREASURY, 0)
    log = LogEntry(address=log.address, topics=log.topics, data="0x")
    assert decode_transfer(log).value == 0


def test_is_transfer_log_filters():
    good = transfer_log(TREASURY, 1)
    assert is_transfer_log(good, BSC_USDC)

    assert not is_transfer_log(good, "0x55d398326f99059fF775485246999027B3197955")
    approval = LogEntry(good.address, ["0x8c5be1e5ebec7d5bd14f71427d1e84f3dd0314c0f7b2291e5b200ac8c7c3b925"] + good.topics[1:], good.data)
    assert not is_transfer_log(approval, BSC_USDC)
    anonymous_to = LogEntry(good.address, good.topics[:2], good.data)
    assert not is_transfer_log(anonymous_to, BSC_USDC)


@pytest.mark.parametrize("amount,decimals,expected", [
    (Decimal("150"), 18, 150 * 10**18),
    (Decimal("150"), 6, 150_000_000),
    (Decimal("0.01"), 6, 10_000),
    (Decimal("1.2345678"), 6, 1_234_567),
    (Decimal("149.99"), 18, 14999 * 10**16),
])
def test_to_base_units(amount, decimals, expected):
    assert to_base_units(amount, decimals) == expected


def test_from_base_units():
    assert from_base_units(150 * 10**18, 18) == Decimal("150")
    assert from_base_units(1, 6) == Decimal("0.000001")
