#!/usr/bin/env python3
"""Keeper wiring: backfill modes, per-block processing and keeper passes."""

import asyncio
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from chain.events import FundingRecomputed, PositionLiquidated, PositionModified
from chain.signer_pool import SignerPool
from config_env import KeeperConfig, OrdersConfig
from fakes import FakeAggregator, FakeEventSource, FakeSender, FakeSigner, make_market, order_tuple, position_tuple
from keeper import LIQUIDATION, OFFCHAIN_EXECUTION, Keeper
from metrics import KEEPER_ERRORS, LIQUIDATIONS, ORDER_EXECUTIONS, KeeperMetrics
from paginated_fetcher import PaginatedFetcher
from position_index import UNIT
from tx_submitter import FatalSequencingError, TransactionSubmitter

ALICE = "0x00000000000000000000000000000000000000a1"
BOB = "0x00000000000000000000000000000000000000b0"
FEED = "0xfeed"


class _FakePriceClient:
    def __init__(self):
        self.requests = []

    async def latest_price_updates(self, feed_id):
        self.requests.append(feed_id)
        return [b"vaa"]

    async def update_fee(self, updates):
        return 5


def _keeper(market, events, config=None, sender=None, price_client=None, now=1000.0):
    fetcher = PaginatedFetcher(FakeAggregator([market.state, market.trading]), [market])
    metrics = KeeperMetrics()
    sender = sender or FakeSender()
    submitter = TransactionSubmitter(market.key, SignerPool([FakeSigner("0xkeeper")]), sender, metrics)
    keeper = Keeper(
        market,
        fetcher,
        events,
        submitter,
        metrics,
        config=config or KeeperConfig(),
        price_client=price_client,
        clock=lambda: now,
    )
    return keeper, sender, metrics


def _modified(account, size, pos_id=1):
    return PositionModified(id=pos_id, account=account, margin=10 * UNIT, size=size, last_price=2000 * UNIT)


def test_event_backfill_scans_in_chunks_up_to_tip() -> None:
    market = make_market("sETHPERP")
    events = FakeEventSource({3: [_modified(ALICE, UNIT)], 15: [_modified(BOB, UNIT, 2)], 24: [_modified(ALICE, 0)]})
    keeper, _sender, _metrics = _keeper(market, events, KeeperConfig(from_block=1, log_chunk_size=10))

    assert asyncio.run(keeper.backfill(25)) == 25

    assert events.ranges == [(1, 10), (11, 20), (21, 25)]
    assert list(keeper.index.positions) == [BOB]
    assert keeper.index.last_block == 25


def test_snapshot_backfill_reads_positions_at_tip() -> None:
    positions = {ALICE: position_tuple(1, UNIT), BOB: position_tuple(2, -UNIT)}
    market = make_market("sETHPERP", positions=positions)
    events = FakeEventSource()
    keeper, _sender, _metrics = _keeper(market, events, KeeperConfig(backfill_mode="snapshot"))

    asyncio.run(keeper.backfill(40))

    assert events.ranges == []
    assert sorted(keeper.index.positions) == [ALICE, BOB]
    assert keeper.index.positions[BOB].size == -UNIT
    assert keeper.index.last_block == 40


def test_failed_backfill_leaves_index_empty() -> None:
    market = make_market("sETHPERP")
    events = FakeEventSource()
    events.fail_with = RuntimeError("rpc down")
    keeper, _sender, _metrics = _keeper(market, events, KeeperConfig(from_block=1))

    with pytest.raises(RuntimeError):
        asyncio.run(keeper.backfill(5))
    assert not keeper.index.ready


def test_process_block_applies_events_then_liquidates_eligible() -> None:
    liquidatable = {ALICE}
    market = make_market("sETHPERP", liquidatable=liquidatable)
    events = FakeEventSource({11: [_modified(ALICE, UNIT), _modified(BOB, UNIT, 2)]})
    keeper, sender, metrics = _keeper(market, events, KeeperConfig(from_block=10))

    async def scenario():
        await keeper.backfill(10)
        await keeper.process_block(11)

    asyncio.run(scenario())

    assert sender.sent == [((market.trading.address, "liquidatePosition", (ALICE,)), "0xkeeper", 0)]
    assert metrics.counter(LIQUIDATIONS, market="sETHPERP", task=LIQUIDATION, success=True) == 1
    assert keeper.index.last_block == 11


def test_liquidated_event_removes_position_before_pass() -> None:
    market = make_market("sETHPERP", liquidatable={ALICE})
    events = FakeEventSource({
        11: [_modified(ALICE, UNIT)],
        12: [PositionLiquidated(id=1, account=ALICE, liquidator=BOB)],
    })
    keeper, sender, _metrics = _keeper(market, events, KeeperConfig(from_block=10))

    async def scenario():
        await keeper.backfill(10)
        await keeper.process_block(11)
        await keeper.process_block(12)

    asyncio.run(scenario())
    assert len(sender.sent) == 1
    assert keeper.index.positions == {}


def test_failed_liquidation_is_contained() -> None:
    market = make_market("sETHPERP", liquidatable={ALICE, BOB})
    events = FakeEventSource({11: [_modified(ALICE, UNIT), _modified(BOB, UNIT, 2)]})
    keeper, sender, metrics = _keeper(market, events, KeeperConfig(from_block=10), sender=FakeSender(status=0))

    async def scenario():
        await keeper.backfill(10)
        await keeper.process_block(11)

    asyncio.run(scenario())
    assert len(sender.sent) == 2
    assert metrics.counter(KEEPER_ERRORS, market="sETHPERP", task=LIQUIDATION) == 2


def test_nonce_failure_propagates_out_of_process_block() -> None:
    market = make_market("sETHPERP", liquidatable={ALICE})
    events = FakeEventSource({11: [_modified(ALICE, UNIT)]})
    sender = FakeSender(send_error=RuntimeError("nonce too low"))
    keeper, _sender, _metrics = _keeper(market, events, KeeperConfig(from_block=10), sender=sender)

    async def scenario():
        await keeper.backfill(10)
        await keeper.process_block(11)

    with pytest.raises(FatalSequencingError):
        asyncio.run(scenario())


def test_executable_offchain_order_is_executed_with_price_update() -> None:
    orders = {ALICE: order_tuple(UNIT, executable_at=900, intention_time=800), BOB: order_tuple(UNIT, 2000, 801)}
    market = make_market("sETHPERP", orders=orders, price_feed_id=FEED)
    prices = _FakePriceClient()
    keeper, sender, metrics = _keeper(market, FakeEventSource(), KeeperConfig(from_block=10), price_client=prices)

    async def scenario():
        await keeper.backfill(10)
        await keeper.process_block(11)

    asyncio.run(scenario())

    assert sender.sent == [
        ((market.trading.address, "executeOffchainDelayedOrder", (ALICE, [b"vaa"])), "0xkeeper", 5)
    ]
    assert prices.requests == [FEED]
    assert metrics.counter(ORDER_EXECUTIONS, task=OFFCHAIN_EXECUTION, success=True) == 1


def test_order_execution_stops_after_max_failures() -> None:
    orders = {ALICE: order_tuple(UNIT, executable_at=900, intention_time=800)}
    market = make_market("sETHPERP", orders=orders, price_feed_id=FEED)
    config = KeeperConfig(from_block=10, orders=OrdersConfig(max_execution_failures=2))
    keeper, sender, _metrics = _keeper(
        market, FakeEventSource(), config, sender=FakeSender(status=0), price_client=_FakePriceClient()
    )

    async def scenario():
        await keeper.backfill(10)
        for n in range(11, 15):
            await keeper.process_block(n)

    asyncio.run(scenario())
    assert len(sender.sent) == 2
    assert keeper.index.orders[ALICE].failures == 2


def test_orders_skipped_without_price_feed() -> None:
    orders = {ALICE: order_tuple(UNIT, executable_at=900, intention_time=800)}
    market = make_market("sETHPERP", orders=orders)
    keeper, sender, _metrics = _keeper(market, FakeEventSource(), KeeperConfig(from_block=10),
                                       price_client=_FakePriceClient())

    async def scenario():
        await keeper.backfill(10)
        await keeper.process_block(11)

    asyncio.run(scenario())
    assert sender.sent == []
    assert ALICE in keeper.index.orders


def test_funding_recompute_refreshes_liquidation_prices_when_enabled() -> None:
    market = make_market("sETHPERP")
    events = FakeEventSource({11: [_modified(ALICE, UNIT)], 12: [FundingRecomputed(funding=1)]})
    config = KeeperConfig(from_block=10, recompute_liquidation_price=True)
    keeper, _sender, _metrics = _keeper(market, events, config)

    async def scenario():
        await keeper.backfill(10)
        await keeper.process_block(11)
        assert keeper.index.positions[ALICE].liquidation_price is None
        await keeper.process_block(12)

    asyncio.run(scenario())
    assert keeper.index.positions[ALICE].liquidation_price == 1234
    assert keeper.index.liquidation_prices_stale is False
