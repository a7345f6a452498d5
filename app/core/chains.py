"""Static chain/token configuration and its startup validation.

The registry is built once from settings (``build_chain_registry``) and handed to
whoever needs it. In a production posture an invalid configuration raises
``ConfigurationError`` so the process never starts serving; elsewhere a logged
development fallback is used instead.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from app.core.config import Settings

logger = logging.getLogger(__name__)

ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
DEV_FALLBACK_API_KEY = "development-fallback-key"


class ConfigurationError(RuntimeError):
    pass


class UnsupportedChainError(LookupError):
    def __init__(self, chain_id: int):
        super().__init__(f"Unsupported chain: {chain_id}")
        self.chain_id = chain_id


@dataclass(frozen=True)
class TokenConfig:
    contract_address: str
    decimals: int
    symbol: str
    name: str


@dataclass(frozen=True)
class ChainConfig:
    chain_id: int
    name: str
    rpc_url: str
    block_explorer_url: str
    native_currency_symbol: str
    tokens: dict[str, TokenConfig] = field(default_factory=dict)


# Mainnet chains: id -> (name, rpc url template, explorer, native symbol, tokens)
CHAIN_DEFINITIONS: dict[int, dict] = {
    42161: {
        "name": "Arbitrum One",
        "rpc_url": "https://arb-mainnet.g.alchemy.com/v2/{api_key}",
        "block_explorer_url": "https://arbiscan.io",
        "native_currency_symbol": "ETH",
        "api_key_setting": "ALCHEMY_API_KEY_ARBITRUM",
        "tokens": {
            "USDC": TokenConfig("0xaf88d065e77c8cC2239327C5EDb3A432268e5831", 6, "USDC", "USD Coin"),
            "USDT": TokenConfig("0xFd086bC7CD5C481DCC9C85ebE478A1C0b69FCbb9", 6, "USDT", "Tether USD"),
        },
    },
    56: {
        "name": "BNB Smart Chain",
        "rpc_url": "https://bnb-mainnet.g.alchemy.com/v2/{api_key}",
        "block_explorer_url": "https://bscscan.com",
        "native_currency_symbol": "BNB",
        "api_key_setting": "ALCHEMY_API_KEY_BNB",
        "tokens": {
            "USDC": TokenConfig("0x8AC76a51cc950d9822D68b83fE1Ad97B32Cd580d", 18, "USDC", "USD Coin"),
            "USDT": TokenConfig("0x55d398326f99059fF775485246999027B3197955", 18, "USDT", "Tether USD"),
        },
    },
    8453: {
        "name": "Base",
        "rpc_url": "https://base-mainnet.g.alchemy.com/v2/{api_key}",
        "block_explorer_url": "https://basescan.org",
        "native_currency_symbol": "ETH",
        "api_key_setting": "ALCHEMY_API_KEY_BASE",
        "tokens": {
            "USDC": TokenConfig("0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913", 6, "USDC", "USD Coin"),
        },
    },
}


class ChainRegistry:
    def __init__(self, chains: dict[int, ChainConfig], treasury_address: str):
        self._chains = dict(chains)
        self.treasury_address = treasury_address.lower()

    def get(self, chain_id: int) -> ChainConfig:
        chain = self._chains.get(chain_id)
        if chain is None:
            raise UnsupportedChainError(chain_id)
        return chain

    def token(self, chain_id: int, symbol: str) -> TokenConfig:
        chain = self.get(chain_id)
        token = chain.tokens.get(symbol)
        if token is None:
            raise ConfigurationError(f"Token {symbol} not configured for chain {chain_id}")
        return token

    @property
    def supported_chain_ids(self) -> list[int]:
        return sorted(self._chains)

    def supported_tokens(self, chain_id: int) -> list[str]:
        chain = self._chains.get(chain_id)
        return list(chain.tokens) if chain else []

    def is_supported(self, chain_id: int, symbol: str) -> bool:
        return symbol in self.supported_tokens(chain_id)

    def chain_name(self, chain_id: int) -> str:
        chain = self._chains.get(chain_id)
        return chain.name if chain else "Unknown Chain"

    def __iter__(self):
        return iter(self._chains.values())

    def __len__(self) -> int:
        return len(self._chains)


def validate_registry(registry: ChainRegistry) -> list[str]:
    """Return every problem found; an empty list means the registry is usable."""
    errors: list[str] = []
    if not ADDRESS_RE.match(registry.treasury_address or ""):
        errors.append(f"Invalid treasury address: {registry.treasury_address!r}")
    if len(registry) == 0:
        errors.append("No chains configured")
    for chain in registry:
        if not chain.rpc_url.startswith("http"):
            errors.append(f"Invalid RPC URL for chain {chain.chain_id}")
        if not chain.tokens:
            errors.append(f"No tokens configured for chain {chain.chain_id}")
        for symbol, token in chain.tokens.items():
            if not ADDRESS_RE.match(token.contract_address):
                errors.append(f"Invalid token address for {symbol} on chain {chain.chain_id}")
    return errors


def _rpc_url(chain_id: int, definition: dict, settings: Settings, allow_fallback: bool) -> str:
    api_key = (getattr(settings, definition["api_key_setting"], "") or "").strip()
    if api_key:
        return definition["rpc_url"].format(api_key=api_key)
    if chain_id == 56 and settings.BSC_PUBLIC_RPC_URL:
        return settings.BSC_PUBLIC_RPC_URL
    if allow_fallback:
        return definition["rpc_url"].format(api_key=DEV_FALLBACK_API_KEY)
    raise ConfigurationError(f"Missing required setting {definition['api_key_setting']} for chain {chain_id}")


def _build(settings: Settings, treasury: str, allow_fallback: bool) -> ChainRegistry:
    chains = {}
    for chain_id, definition in CHAIN_DEFINITIONS.items():
        chains[chain_id] = ChainConfig(
            chain_id=chain_id,
            name=definition["name"],
            rpc_url=_rpc_url(chain_id, definition, settings, allow_fallback),
            block_explorer_url=definition["block_explorer_url"],
            native_currency_symbol=definition["native_currency_symbol"],
            tokens=dict(definition["tokens"]),
        )
    return ChainRegistry(chains, treasury)


def build_chain_registry(settings: Settings) -> ChainRegistry:
    try:
        registry = _build(settings, (settings.TREASURY_ADDRESS or "").strip(), allow_fallback=False)
        errors = validate_registry(registry)
        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors))
    except ConfigurationError as e:
        if settings.is_production:
            logger.error(f"Chain configuration invalid, refusing to start: {e}")
            raise
        logger.warning(f"Chain configuration invalid ({e}); using development fallback configuration")
        treasury = (settings.TREASURY_ADDRESS or "").strip()
        if not ADDRESS_RE.match(treasury):
            treasury = settings.DEV_FALLBACK_TREASURY_ADDRESS
        registry = _build(settings, treasury, allow_fallback=True)
        errors = validate_registry(registry)
        if errors:
            # The fallback itself is broken; nothing sane to serve
            raise ConfigurationError("Fallback configuration invalid:\n" + "\n".join(errors))

    logger.info(f"Chain configuration validated: {len(registry)} chains, treasury: {registry.treasury_address}")
    return registry
