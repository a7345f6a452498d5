from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR

from eth_abi import decode
from eth_utils import decode_hex

from app.services.chain_client import LogEntry

# keccak256("Transfer(address,address,uint256)"), shared by ERC20 and ERC721
TRANSFER_EVENT_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


@dataclass(frozen=True)
class TransferEvent:
    token_address: str
    from_address: str
    to_address: str
    value: int


def is_transfer_log(log: LogEntry, token_address: str) -> bool:
    return (
        log.address.lower() == token_address.lower()
        and len(log.topics) >= 3
        and log.topics[0].lower() == TRANSFER_EVENT_TOPIC
    )


def _topic_address(topic: str) -> str:
    (address,) = decode(["address"], decode_hex(topic))
    return address.lower()


def decode_transfer(log: LogEntry) -> TransferEvent:
    """Decode an indexed-from/indexed-to Transfer log; value is the unindexed uint256 in data."""
    data = decode_hex(log.data or "0x")
    value = decode(["uint256"], data)[0] if data else 0
    return TransferEvent(
        token_address=log.address.lower(),
        from_address=_topic_address(log.topics[1]),
        to_address=_topic_address(log.topics[2]),
        value=value,
    )


def to_base_units(amount: Decimal, decimals: int) -> int:
    """floor(amount * 10**decimals) without passing through float."""
    scaled = Decimal(str(amount)).scaleb(decimals)
    return int(scaled.to_integral_value(rounding=ROUND_FLOOR))


def from_base_units(value: int, decimals: int) -> Decimal:
    return Decimal(value).scaleb(-decimals)
