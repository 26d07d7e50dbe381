#!/usr/bin/env python3
"""
Per-market keeper.

Owns the market's PositionIndex and KeeperTaskScheduler and wires them to
the fetcher, the event source and the transaction submitter:
- backfill: event scan from a start block, or a paginated snapshot
- process_block: apply one block's events, refresh orders, run a pass
- run_keepers: liquidation pass over positions, execution pass over
  executable off-chain delayed orders
"""

from __future__ import annotations

import time
from typing import Callable, Dict, List, Optional

from chain.base import EventSource, Market
from config_env import KeeperConfig
from logging_utils import market_logger
from metrics import LIQUIDATIONS, ORDER_EXECUTIONS, KeeperMetrics
from paginated_fetcher import EntityKind, PaginatedFetcher
from position_index import (
    DelayedOrder,
    PositionIndex,
    order_from_state,
    position_from_state,
)
from task_scheduler import KeeperTaskScheduler
from tx_submitter import PreparedCall, SubmissionError, TransactionSubmitter, TxOutcome

LIQUIDATION = "liquidation"
OFFCHAIN_EXECUTION = "offchain-execution"


class Keeper:
    """Index + scheduler + submitter for one market."""

    def __init__(
        self,
        market: Market,
        fetcher: PaginatedFetcher,
        events: EventSource,
        submitter: TransactionSubmitter,
        metrics: KeeperMetrics,
        config: Optional[KeeperConfig] = None,
        price_client=None,
        clock: Callable[[], float] = time.time,
    ):
        self.market = market
        self.fetcher = fetcher
        self.events = events
        self.submitter = submitter
        self.metrics = metrics
        self.config = config or KeeperConfig()
        self.price_client = price_client
        self.clock = clock
        self.index = PositionIndex(market.key)
        self.scheduler = KeeperTaskScheduler(self.index, metrics)
        self.log = market_logger(market.key, "keeper")
        self._orders_warned = False

    @property
    def orders_enabled(self) -> bool:
        return bool(self.config.orders.enabled)

    # -------------------------------------------------------------- backfill

    async def backfill(self, tip: int) -> int:
        """Build the index up to `tip` (inclusive). Failure leaves it EMPTY."""
        from_block = self.config.from_block
        if self.config.backfill_mode == "events" and from_block is not None:
            await self._backfill_events(int(from_block), tip)
        else:
            await self._backfill_snapshot(tip)
        if self.orders_enabled:
            await self.refresh_orders(tip)
        return tip

    async def _backfill_events(self, from_block: int, to_block: int) -> None:
        self.log.info(f"Rebuilding index from {from_block} ... {to_block}")
        chunk = max(1, int(self.config.log_chunk_size))
        total = 0
        for start in range(from_block, to_block + 1, chunk):
            end = min(start + chunk - 1, to_block)
            events = await self.events.get_events(start, end)
            total += len(events)
            self.index.apply_events(events)
        self.log.info(f"{total} events processed")
        self.index.complete_backfill(to_block)

    async def _backfill_snapshot(self, block: int) -> None:
        self.log.info(f"Rebuilding index from paginated snapshot at block {block}")
        entities = await self.fetcher.fetch_all(EntityKind.POSITIONS, block, [self.market.key])
        positions = []
        for entity in entities.get(self.market.key, []):
            position = position_from_state(entity.address, entity.value)
            if position is not None:
                positions.append(position)
        self.index.load_positions(positions, block)

    # ------------------------------------------------------------ refreshes

    async def refresh_orders(self, block: int) -> bool:
        """Rebuild pending off-chain orders; on failure the previous set stays."""
        try:
            entities = await self.fetcher.fetch_all(EntityKind.ORDERS, block, [self.market.key])
        except Exception as exc:
            self.log.error(f"Order poll at block {block} failed, keeping previous orders: {exc}")
            return False
        orders: List[DelayedOrder] = []
        for entity in entities.get(self.market.key, []):
            order = order_from_state(entity.address, entity.value)
            if order is not None:
                orders.append(order)
        self.index.replace_orders(orders)
        return True

    async def refresh_liquidation_prices(self, block: int) -> bool:
        """Batched liquidationPrice reads after funding was recomputed."""
        if not (self.config.recompute_liquidation_price and self.index.liquidation_prices_stale):
            return False
        pairs = [(account, self.market.key) for account in self.index.positions]
        if not pairs:
            self.index.liquidation_prices_stale = False
            return True
        try:
            entities = await self.fetcher.fetch_entities(
                pairs, block, "liquidationPrice", target="trading"
            )
        except Exception as exc:
            self.log.error(f"Liquidation price refresh at block {block} failed: {exc}")
            return False
        prices: Dict[str, Optional[int]] = {}
        for entity in entities.get(self.market.key, []):
            price, invalid = entity.value
            prices[entity.address] = None if invalid else int(price)
        self.index.set_liquidation_prices(prices)
        return True

    # --------------------------------------------------------------- blocks

    async def process_block(self, block_number: int) -> None:
        events = await self.events.get_events(block_number, block_number)
        self.log.debug(f"{len(events)} events to process in block {block_number}")
        self.index.apply_block(block_number, events)
        if self.orders_enabled:
            await self.refresh_orders(block_number)
        await self.refresh_liquidation_prices(block_number)
        await self.run_keepers()

    async def run_keepers(self) -> None:
        await self.scheduler.run_pass(
            self.index.snapshot(),
            LIQUIDATION,
            lambda p: (lambda: self.liquidate_position(p.id, p.account)),
        )
        if self.orders_enabled and self._can_execute_orders():
            now = self.clock()
            executable = [o for o in self.index.orders.values() if o.is_executable(now)]
            await self.scheduler.run_pass(
                executable,
                OFFCHAIN_EXECUTION,
                lambda o: (lambda: self.execute_order(o)),
                id_of=lambda o: f"order:{o.account}:{o.intention_time}",
            )

    def _can_execute_orders(self) -> bool:
        if self.price_client is not None and self.market.price_feed_id:
            return True
        if not self._orders_warned:
            self.log.warning("No price feed configured; skipping off-chain order execution")
            self._orders_warned = True
        return False

    # ---------------------------------------------------------------- tasks

    async def liquidate_position(self, position_id: int, account: str) -> Optional[TxOutcome]:
        trading = self.market.trading

        async def eligible() -> bool:
            return bool(await trading.call("canLiquidate", [account]))

        async def prepare() -> PreparedCall:
            return PreparedCall(fn=trading.function("liquidatePosition", account))

        return await self.submitter.submit(position_id, LIQUIDATION, eligible, prepare, metric=LIQUIDATIONS)

    async def execute_order(self, order: DelayedOrder) -> Optional[TxOutcome]:
        trading = self.market.trading
        task_id = f"order:{order.account}:{order.intention_time}"
        max_failures = int(self.config.orders.max_execution_failures)

        async def eligible() -> bool:
            if max_failures > 0 and order.failures >= max_failures:
                self.log.debug(f"{task_id} skipped after {order.failures} failed executions")
                return False
            if not order.is_executable(self.clock()):
                return False
            current = order_from_state(order.account, await self.market.state.call("delayedOrders", [order.account]))
            return current is not None and current.intention_time == order.intention_time

        async def prepare() -> PreparedCall:
            updates = await self.price_client.latest_price_updates(self.market.price_feed_id)
            fee = await self.price_client.update_fee(updates)
            return PreparedCall(
                fn=trading.function("executeOffchainDelayedOrder", order.account, updates),
                value=fee,
            )

        try:
            return await self.submitter.submit(task_id, OFFCHAIN_EXECUTION, eligible, prepare, metric=ORDER_EXECUTIONS)
        except SubmissionError:
            failures = self.index.record_order_failure(order.account)
            self.log.warning(f"{task_id} execution failed ({failures} so far)")
            raise
