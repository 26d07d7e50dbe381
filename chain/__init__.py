"""Chain access: contract handles, batched reads, events, signers."""

from .base import Call, CallAggregator, ContractHandle, EventSource, Market
from .events import (
    BlockWatcher,
    DelayedOrderRemoved,
    DelayedOrderSubmitted,
    FundingRecomputed,
    MarketEvent,
    PositionLiquidated,
    PositionModified,
    UnrecognizedEvent,
    Web3EventSource,
    decode_event,
)
from .signer_pool import SignerPool

__all__ = [
    "Call",
    "CallAggregator",
    "ContractHandle",
    "EventSource",
    "Market",
    "BlockWatcher",
    "DelayedOrderRemoved",
    "DelayedOrderSubmitted",
    "FundingRecomputed",
    "MarketEvent",
    "PositionLiquidated",
    "PositionModified",
    "UnrecognizedEvent",
    "Web3EventSource",
    "decode_event",
    "SignerPool",
]
