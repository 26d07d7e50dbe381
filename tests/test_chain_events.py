#!/usr/bin/env python3
"""Event decoding and network registry lookups."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from chain.contracts import bytes32_to_str
from chain.events import PositionLiquidated, PositionModified, UnrecognizedEvent, decode_event
from chain.registry import (
    CHAIN_IDS,
    UnsupportedNetworkError,
    get_pyth_details,
    normalize_network,
)

ALICE = "0x00000000000000000000000000000000000000a1"


def test_decode_position_modified() -> None:
    event = decode_event(
        "PositionModified",
        {"id": 4, "account": ALICE, "margin": 10, "size": -3, "tradeSize": -3, "lastPrice": 7,
         "fundingIndex": 2, "fee": 1},
        block_number=12,
        log_index=3,
    )
    assert event == PositionModified(
        id=4, account=ALICE, margin=10, size=-3, trade_size=-3, last_price=7,
        funding_index=2, fee=1, block_number=12, log_index=3,
    )


def test_decode_position_liquidated() -> None:
    event = decode_event("PositionLiquidated", {"id": 4, "account": ALICE, "liquidator": "0xk", "size": 1,
                                                "price": 9})
    assert isinstance(event, PositionLiquidated)
    assert event.account == ALICE


def test_unknown_or_malformed_events_are_unrecognized() -> None:
    assert isinstance(decode_event("MarginTransferred", {"account": ALICE}), UnrecognizedEvent)
    malformed = decode_event("PositionModified", {"account": ALICE})
    assert isinstance(malformed, UnrecognizedEvent)
    assert malformed.name == "PositionModified"


def test_network_aliases() -> None:
    assert normalize_network("OPT") == "optimism"
    assert normalize_network("goerli-ovm") == "optimism-goerli"
    assert CHAIN_IDS[normalize_network("optimism")] == 10
    with pytest.raises(UnsupportedNetworkError):
        normalize_network("arbitrum")


def test_pyth_details_without_web3() -> None:
    details = get_pyth_details("optimism")
    assert details.endpoint.startswith("https://")
    assert details.feed_id("sETH")
    assert details.feed_id("sDOGE") is None
    assert details.pyth is None


def test_bytes32_to_str_strips_padding() -> None:
    assert bytes32_to_str(b"sETHPERP" + b"\x00" * 24) == "sETHPERP"
