#!/usr/bin/env python3
"""KeeperTaskScheduler: per-id dedup, cleanup and error containment."""

import asyncio
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from metrics import KEEPER_ERRORS, OPEN_POSITIONS, KeeperMetrics
from position_index import Position, PositionIndex
from task_scheduler import KeeperTaskScheduler
from tx_submitter import FatalSequencingError


def _scheduler():
    index = PositionIndex("sETHPERP")
    metrics = KeeperMetrics()
    return KeeperTaskScheduler(index, metrics), index, metrics


@pytest.mark.asyncio
async def test_concurrent_same_id_runs_once() -> None:
    scheduler, _index, _metrics = _scheduler()
    gate = asyncio.Event()
    calls = []

    async def action():
        calls.append(1)
        await gate.wait()

    first = asyncio.ensure_future(scheduler.run_keeper_task(7, "liquidation", action))
    await asyncio.sleep(0)
    assert scheduler.is_running(7)

    skipped = await scheduler.run_keeper_task(7, "liquidation", action)
    gate.set()
    ran = await first

    assert ran is True
    assert skipped is False
    assert calls == [1]
    assert not scheduler.is_running(7)


@pytest.mark.asyncio
async def test_distinct_ids_run_concurrently() -> None:
    scheduler, _index, _metrics = _scheduler()
    gate = asyncio.Event()
    started = []

    async def action(task_id):
        started.append(task_id)
        await gate.wait()

    tasks = [
        asyncio.ensure_future(scheduler.run_keeper_task(i, "liquidation", lambda i=i: action(i)))
        for i in (1, 2)
    ]
    await asyncio.sleep(0)
    assert scheduler.running == {"1", "2"}
    gate.set()
    assert await asyncio.gather(*tasks) == [True, True]
    assert sorted(started) == [1, 2]


def test_failed_action_is_counted_and_id_released() -> None:
    scheduler, _index, metrics = _scheduler()

    async def boom():
        raise RuntimeError("reverted")

    assert asyncio.run(scheduler.run_keeper_task(3, "liquidation", boom)) is True
    assert not scheduler.is_running(3)
    assert metrics.counter(KEEPER_ERRORS, market="sETHPERP", task="liquidation") == 1

    async def ok():
        return None

    assert asyncio.run(scheduler.run_keeper_task(3, "liquidation", ok)) is True


def test_fatal_sequencing_error_propagates_and_releases_id() -> None:
    scheduler, _index, metrics = _scheduler()

    async def fatal():
        raise FatalSequencingError("nonce too low")

    with pytest.raises(FatalSequencingError):
        asyncio.run(scheduler.run_keeper_task(4, "liquidation", fatal))
    assert not scheduler.is_running(4)
    assert metrics.counter(KEEPER_ERRORS) == 0


def test_run_pass_offers_every_entity_and_reports_size() -> None:
    scheduler, index, metrics = _scheduler()
    index.load_positions([Position(account=f"0x{i}", id=i, size=1) for i in range(3)], 1)
    seen = []

    def action_for(position):
        async def action():
            seen.append(position.id)
        return action

    ran = asyncio.run(scheduler.run_pass(index.snapshot(), "liquidation", action_for))

    assert ran == 3
    assert seen == [0, 1, 2]
    assert metrics.gauge(OPEN_POSITIONS, market="sETHPERP") == 3
