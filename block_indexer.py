#!/usr/bin/env python3
"""
Strictly ordered block consumption for one market.

Block notifications are appended to a FIFO; a single consumer applies one
block (events, then a keeper pass) before taking the next. Under load the
queue grows and freshness degrades, but blocks never interleave.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from logging_utils import market_logger
from metrics import BLOCK_QUEUE_DEPTH, BLOCKS_PROCESSED, KeeperMetrics

_STOP = object()


class BlockIndexer:
    """FIFO of block numbers drained by one consumer.

    Usage:
        indexer = BlockIndexer("sETHPERP", keeper.process_block, start_block=tip)
        watcher.subscribe(indexer.notify)
        await indexer.run()
    """

    def __init__(
        self,
        market_key: str,
        process_block: Callable[[int], Awaitable[None]],
        start_block: Optional[int] = None,
        metrics: Optional[KeeperMetrics] = None,
    ):
        self.market_key = market_key
        self._process_block = process_block
        self._queue: asyncio.Queue = asyncio.Queue()
        # Last block covered by backfill or already queued.
        self._last_enqueued: Optional[int] = start_block
        self.metrics = metrics
        self.last_processed: Optional[int] = None
        self.log = market_logger(market_key, "indexer")

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def notify(self, block_number: int) -> None:
        """Queue every block after the last queued one, up to block_number."""
        block_number = int(block_number)
        if self._last_enqueued is None:
            # Nothing backfilled yet: the first block seen only sets the tip.
            self._last_enqueued = block_number
            return
        if block_number <= self._last_enqueued:
            return
        for number in range(self._last_enqueued + 1, block_number + 1):
            self._queue.put_nowait(number)
        self._last_enqueued = block_number
        self.log.debug(f"New block: {block_number} (queued={self._queue.qsize()})")
        if self.metrics is not None:
            self.metrics.set_gauge(BLOCK_QUEUE_DEPTH, self._queue.qsize(), market=self.market_key)

    def stop(self) -> None:
        """Ask the consumer to exit after blocks already queued."""
        self._queue.put_nowait(_STOP)

    async def _consume_one(self, item: object) -> None:
        try:
            number = int(item)  # type: ignore[arg-type]
            self.log.debug(f"Processing block: {number}")
            await self._process_block(number)
            self.last_processed = number
            if self.metrics is not None:
                self.metrics.inc(BLOCKS_PROCESSED, market=self.market_key)
        finally:
            self._queue.task_done()

    async def run(self) -> None:
        """Consume until stop(); exceptions from process_block propagate."""
        while True:
            item = await self._queue.get()
            if item is _STOP:
                self._queue.task_done()
                return
            await self._consume_one(item)
