#!/usr/bin/env python3
"""
Per-market index of open positions and pending off-chain delayed orders.

Lifecycle: EMPTY -> (backfill) READY -> (apply_block) READY.
Blocks must be applied once each, in strictly increasing order; events of a
re-applied block would double-apply.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence

from chain.events import (
    DelayedOrderRemoved,
    DelayedOrderSubmitted,
    FundingRecomputed,
    MarketEvent,
    PositionLiquidated,
    PositionModified,
    UnrecognizedEvent,
)
from logging_utils import market_logger

UNIT = 10 ** 18


class IndexState(str, Enum):
    EMPTY = "EMPTY"
    READY = "READY"


class IndexStateError(RuntimeError):
    """Raised for a block applied out of order or before backfill."""


def compute_leverage(size: int, last_price: int, margin: int) -> float:
    """|size| * price / margin, all 18-decimal fixed point."""
    if margin <= 0 or last_price <= 0:
        return 0.0
    return abs(int(size)) * int(last_price) / (int(margin) * UNIT)


@dataclass
class Position:
    account: str
    id: int
    size: int
    margin: int = 0
    last_price: int = 0
    leverage: float = 0.0
    liquidation_price: Optional[int] = None  # None until refreshed
    updated_at: float = field(default_factory=time.time)
    block_number: int = 0


@dataclass
class DelayedOrder:
    account: str
    size_delta: int
    executable_at: int
    intention_time: int
    is_offchain: bool = True
    failures: int = 0

    def is_executable(self, now: float) -> bool:
        return self.executable_at <= now


def position_from_state(account: str, value: Sequence[Any]) -> Optional[Position]:
    """Build from positions(address) -> (id, lastFundingIndex, margin, lastPrice, size)."""
    pos_id, _funding_index, margin, last_price, size = value
    if int(size) == 0:
        return None
    return Position(
        account=account,
        id=int(pos_id),
        size=int(size),
        margin=int(margin),
        last_price=int(last_price),
        leverage=compute_leverage(int(size), int(last_price), int(margin)),
    )


def order_from_state(account: str, value: Sequence[Any]) -> Optional[DelayedOrder]:
    """Build from delayedOrders(address); empty slots and on-chain orders are skipped."""
    is_offchain, size_delta = value[0], value[1]
    executable_at, intention_time = value[6], value[7]
    if not is_offchain or int(intention_time) == 0:
        return None
    return DelayedOrder(
        account=account,
        size_delta=int(size_delta),
        executable_at=int(executable_at),
        intention_time=int(intention_time),
        is_offchain=True,
    )


class PositionIndex:
    """account -> Position and account -> DelayedOrder maps for one market."""

    def __init__(self, market_key: str):
        self.market_key = market_key
        self.positions: Dict[str, Position] = {}
        self.orders: Dict[str, DelayedOrder] = {}
        self.state = IndexState.EMPTY
        self.last_block: Optional[int] = None
        self.liquidation_prices_stale = False
        self.log = market_logger(market_key, "indexer")

    def __len__(self) -> int:
        return len(self.positions)

    @property
    def ready(self) -> bool:
        return self.state is IndexState.READY

    # -------------------------------------------------------------- backfill

    def load_positions(self, positions: Iterable[Position], block: int) -> None:
        """Replace the position map with a snapshot read at `block`."""
        self.positions = {p.account: p for p in positions if p.size != 0}
        self.complete_backfill(block)

    def complete_backfill(self, block: int) -> None:
        self.state = IndexState.READY
        self.last_block = int(block)
        self.log.info(f"Index build complete at block {block}: {len(self.positions)} positions")

    # ---------------------------------------------------------------- events

    def apply_block(self, block_number: int, events: Sequence[MarketEvent]) -> None:
        if not self.ready:
            raise IndexStateError(f"{self.market_key}: block {block_number} applied before backfill")
        if self.last_block is not None and block_number <= self.last_block:
            raise IndexStateError(
                f"{self.market_key}: block {block_number} not after last applied block {self.last_block}"
            )
        self.apply_events(events)
        self.last_block = int(block_number)

    def apply_events(self, events: Iterable[MarketEvent]) -> None:
        for event in events:
            self._apply(event)

    def _apply(self, event: MarketEvent) -> None:
        if isinstance(event, PositionModified):
            self.log.info(f"PositionModified id={event.id} account={event.account}")
            if event.size == 0:
                # Position closed.
                self.positions.pop(event.account, None)
                return
            self.positions[event.account] = Position(
                account=event.account,
                id=event.id,
                size=event.size,
                margin=event.margin,
                last_price=event.last_price,
                leverage=compute_leverage(event.size, event.last_price, event.margin),
                block_number=event.block_number,
            )
        elif isinstance(event, PositionLiquidated):
            self.log.info(f"PositionLiquidated account={event.account} liquidator={event.liquidator}")
            self.positions.pop(event.account, None)
        elif isinstance(event, FundingRecomputed):
            self.liquidation_prices_stale = True
        elif isinstance(event, (DelayedOrderSubmitted, DelayedOrderRemoved)):
            # Orders are rebuilt from paginated reads on every poll.
            pass
        elif isinstance(event, UnrecognizedEvent):
            if event.name is None:
                self.log.debug(f"Skipping log without a known topic at block {event.block_number}")
            else:
                self.log.info(f"No handler for event {event.name}")
        else:
            self.log.warning(f"Ignoring unexpected event object {event!r}")

    # ---------------------------------------------------------- liquidation px

    def set_liquidation_prices(self, prices: Dict[str, Optional[int]]) -> None:
        for account, price in prices.items():
            position = self.positions.get(account)
            if position is not None:
                position.liquidation_price = price
                position.updated_at = time.time()
        self.liquidation_prices_stale = False

    # ----------------------------------------------------------------- orders

    def replace_orders(self, orders: Iterable[DelayedOrder]) -> None:
        """Rebuild the order map; failure counters carry over for the same order."""
        fresh: Dict[str, DelayedOrder] = {}
        for order in orders:
            prev = self.orders.get(order.account)
            if prev is not None and prev.intention_time == order.intention_time:
                order.failures = max(order.failures, prev.failures)
            fresh[order.account] = order
        self.orders = fresh

    def record_order_failure(self, account: str) -> int:
        order = self.orders.get(account)
        if order is None:
            return 0
        order.failures += 1
        return order.failures

    def snapshot(self) -> List[Position]:
        """Positions in insertion order; safe to iterate while tasks run."""
        return list(self.positions.values())
