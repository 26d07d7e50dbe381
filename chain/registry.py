#!/usr/bin/env python3
"""
Market directory and price-feed descriptors per network.

Markets are read once from FuturesMarketManager.allMarketSummaries();
only proxied markets are registered.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from web3 import AsyncWeb3

from logging_utils import get_logger

from .abis import (
    FUTURES_MARKET_MANAGER_ABI,
    PERPS_V2_MARKET_ABI,
    PERPS_V2_MARKET_STATE_ABI,
    PYTH_ABI,
)
from .base import Market
from .contracts import Web3ContractHandle, bytes32_to_str

NETWORK_OPTIMISM = "optimism"
NETWORK_OPTIMISM_GOERLI = "optimism-goerli"

_NETWORK_ALIASES = {
    "optimism": NETWORK_OPTIMISM,
    "opt": NETWORK_OPTIMISM,
    "mainnet-ovm": NETWORK_OPTIMISM,
    "optimism-goerli": NETWORK_OPTIMISM_GOERLI,
    "opt-goerli": NETWORK_OPTIMISM_GOERLI,
    "goerli-ovm": NETWORK_OPTIMISM_GOERLI,
}

CHAIN_IDS = {
    NETWORK_OPTIMISM: 10,
    NETWORK_OPTIMISM_GOERLI: 420,
}

FUTURES_MARKET_MANAGER_ADDRESSES = {
    NETWORK_OPTIMISM_GOERLI: "0xc429dd84c9a9a7c786764c7dcaF31e30bd35BcdF",
    NETWORK_OPTIMISM: "0xdb89f3fc45A707Dd49781495f77f8ae69bF5cA6e",
}

# https://pyth.network/developers/price-feed-ids
PYTH_NETWORK_ENDPOINTS = {
    NETWORK_OPTIMISM_GOERLI: "https://xc-testnet.pyth.network",
    NETWORK_OPTIMISM: "https://xc-mainnet.pyth.network",
}

PYTH_PRICE_FEED_IDS: Dict[str, Dict[str, str]] = {
    NETWORK_OPTIMISM_GOERLI: {
        "sETH": "0xca80ba6dc32e08d06f1aa886011eed1d77c77be9eb761cc10d72b7d0a2fd57a6",
    },
    NETWORK_OPTIMISM: {
        "sETH": "0xff61491a931112ddf1bd8147cd1b641375f79f5825126d665480874634fd0ace",
    },
}

PYTH_CONTRACT_ADDRESSES = {
    NETWORK_OPTIMISM_GOERLI: "0xff1a0f4744e8582DF1aE09D5611b887B6a12925C",
    NETWORK_OPTIMISM: "0xff1a0f4744e8582DF1aE09D5611b887B6a12925C",
}


class UnsupportedNetworkError(ValueError):
    """Raised for a network with no known deployment."""


def normalize_network(network: str) -> str:
    key = (network or "").strip().lower()
    if key not in _NETWORK_ALIASES:
        raise UnsupportedNetworkError(f"Unsupported network '{network}'")
    return _NETWORK_ALIASES[key]


@dataclass
class PriceOracleDescriptor:
    """Consumed opaquely by the core; used by price_oracle for order execution."""
    endpoint: str
    price_feed_ids: Dict[str, str]
    pyth: Optional[Web3ContractHandle] = None

    def feed_id(self, asset: str) -> Optional[str]:
        return self.price_feed_ids.get(asset)


def get_pyth_details(network: str, w3: Optional[AsyncWeb3] = None) -> PriceOracleDescriptor:
    network = normalize_network(network)
    pyth = None
    if w3 is not None:
        pyth = Web3ContractHandle(w3, PYTH_CONTRACT_ADDRESSES[network], PYTH_ABI)
    return PriceOracleDescriptor(
        endpoint=PYTH_NETWORK_ENDPOINTS[network],
        price_feed_ids=dict(PYTH_PRICE_FEED_IDS[network]),
        pyth=pyth,
    )


async def load_markets(
    w3: AsyncWeb3,
    network: str,
    only: Optional[Iterable[str]] = None,
) -> List[Market]:
    """Resolve every proxied market, its state contract and price feed."""
    log = get_logger("keeper.registry")
    network = normalize_network(network)
    manager = Web3ContractHandle(w3, FUTURES_MARKET_MANAGER_ADDRESSES[network], FUTURES_MARKET_MANAGER_ABI)
    wanted = {m.strip() for m in (only or []) if m and m.strip()}
    feeds = PYTH_PRICE_FEED_IDS[network]

    summaries = await manager.call("allMarketSummaries")
    markets: List[Market] = []
    for market_address, asset_raw, key_raw, proxied in summaries:
        if not proxied:
            continue
        key = bytes32_to_str(key_raw)
        if wanted and key not in wanted:
            continue
        asset = bytes32_to_str(asset_raw)
        trading = Web3ContractHandle(w3, market_address, PERPS_V2_MARKET_ABI)
        state_address = await trading.call("marketState")
        state = Web3ContractHandle(w3, state_address, PERPS_V2_MARKET_STATE_ABI)
        markets.append(
            Market(
                key=key,
                asset=asset,
                trading=trading,
                state=state,
                price_feed_id=feeds.get(asset),
            )
        )
        log.info(f"Market {key} ({asset}) deployed at {trading.address} state={state.address}")

    missing = wanted - {m.key for m in markets}
    if missing:
        log.warning(f"Requested markets not found or not proxied: {', '.join(sorted(missing))}")
    return markets
