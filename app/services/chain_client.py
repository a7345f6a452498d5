from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field

import requests

from app.core.chains import ChainRegistry

logger = logging.getLogger(__name__)


class RpcError(RuntimeError):
    """The ledger could not be asked (transport failure, HTTP error, JSON-RPC error)."""


class ChainUnsupportedError(LookupError):
    def __init__(self, chain_id: int):
        super().__init__(f"No chain client configured for chain {chain_id}")
        self.chain_id = chain_id


@dataclass(frozen=True)
class LogEntry:
    address: str
    topics: list[str]
    data: str


@dataclass(frozen=True)
class TransactionReceipt:
    tx_hash: str
    succeeded: bool
    block_number: int
    gas_used: int
    effective_gas_price: int
    logs: list[LogEntry] = field(default_factory=list)


@dataclass(frozen=True)
class Transaction:
    tx_hash: str
    from_address: str
    to_address: str | None
    gas_price: int


def _quantity(value) -> int:
    if value is None or value == "":
        return 0
    if isinstance(value, int):
        return value
    return int(value, 16)


def _parse_receipt(raw: dict) -> TransactionReceipt:
    logs = [
        LogEntry(
            address=(entry.get("address") or "").lower(),
            topics=[t.lower() for t in entry.get("topics") or []],
            data=entry.get("data") or "0x",
        )
        for entry in raw.get("logs") or []
    ]
    return TransactionReceipt(
        tx_hash=raw.get("transactionHash") or "",
        succeeded=_quantity(raw.get("status")) == 1,
        block_number=_quantity(raw.get("blockNumber")),
        gas_used=_quantity(raw.get("gasUsed")),
        effective_gas_price=_quantity(raw.get("effectiveGasPrice")),
        logs=logs,
    )


def _parse_transaction(raw: dict) -> Transaction:
    return Transaction(
        tx_hash=raw.get("hash") or "",
        from_address=(raw.get("from") or "").lower(),
        to_address=(raw.get("to") or None),
        gas_price=_quantity(raw.get("gasPrice")),
    )


class ChainClient:
    """Read-only JSON-RPC client for one chain. Never retries; callers own the retry policy."""

    def __init__(self, chain_id: int, rpc_url: str, timeout: int = 15, session: requests.Session | None = None):
        self.chain_id = chain_id
        self.rpc_url = rpc_url
        self.timeout = timeout
        self._session = session or requests.Session()
        self._ids = itertools.count(1)

    def _call(self, method: str, params: list):
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            r = self._session.post(self.rpc_url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise RpcError(f"{method} on chain {self.chain_id} failed: {e}") from e
        if r.status_code >= 400:
            raise RpcError(f"{method} on chain {self.chain_id} returned HTTP {r.status_code}: {r.text[:200]}")
        try:
            body = r.json()
        except ValueError as e:
            raise RpcError(f"{method} on chain {self.chain_id} returned invalid JSON") from e
        if body.get("error"):
            err = body["error"]
            raise RpcError(f"{method} on chain {self.chain_id}: {err.get('message') if isinstance(err, dict) else err}")
        return body.get("result")

    def get_transaction(self, tx_hash: str) -> Transaction | None:
        raw = self._call("eth_getTransactionByHash", [tx_hash])
        return _parse_transaction(raw) if raw else None

    def get_transaction_receipt(self, tx_hash: str) -> TransactionReceipt | None:
        """None means the transaction is not mined (or not yet visible to this node)."""
        raw = self._call("eth_getTransactionReceipt", [tx_hash])
        return _parse_receipt(raw) if raw else None

    def get_block_number(self) -> int:
        return _quantity(self._call("eth_blockNumber", []))


class ChainClientPool:
    def __init__(self, clients: dict):
        self._clients = dict(clients)

    @classmethod
    def from_registry(cls, registry: ChainRegistry, timeout: int = 15) -> "ChainClientPool":
        clients = {chain.chain_id: ChainClient(chain.chain_id, chain.rpc_url, timeout=timeout) for chain in registry}
        logger.info(f"Chain clients ready for chains {sorted(clients)}")
        return cls(clients)

    def get(self, chain_id: int):
        client = self._clients.get(chain_id)
        if client is None:
            raise ChainUnsupportedError(chain_id)
        return client

    def is_supported(self, chain_id: int) -> bool:
        return chain_id in self._clients

    @property
    def chain_ids(self) -> list[int]:
        return sorted(self._clients)
