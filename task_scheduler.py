#!/usr/bin/env python3
"""Keeper task scheduling with at-most-one-in-flight per task id."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Iterable, Optional, Set, TypeVar

from logging_utils import market_logger
from metrics import KEEPER_ERRORS, OPEN_POSITIONS, PENDING_ORDERS, KeeperMetrics
from position_index import PositionIndex
from tx_submitter import FatalSequencingError

T = TypeVar("T")

Action = Callable[[], Awaitable[Any]]


class KeeperTaskScheduler:
    """Offers entities to actions, skipping ids that are already running.

    A skipped id is not queued; the next pass offers it again if it is still
    indexed. Failures are logged and counted here, except
    FatalSequencingError, which propagates and halts the process.
    """

    def __init__(self, index: PositionIndex, metrics: KeeperMetrics):
        self.index = index
        self.market_key = index.market_key
        self.metrics = metrics
        self._running: Set[str] = set()
        self.log = market_logger(self.market_key, "keeper")

    def is_running(self, task_id: Any) -> bool:
        return str(task_id) in self._running

    @property
    def running(self) -> Set[str]:
        return set(self._running)

    async def run_keeper_task(self, task_id: Any, label: str, action: Action) -> bool:
        """Run `action` unless `task_id` is in flight. Returns True if it ran."""
        key = str(task_id)
        if key in self._running:
            return False
        self._running.add(key)
        log = market_logger(self.market_key, f"task.{label}")
        log.info(f"id={key} running")
        try:
            await action()
        except FatalSequencingError:
            raise
        except Exception as exc:
            log.error(f"id={key} error\n{exc}")
            self.metrics.inc(KEEPER_ERRORS, market=self.market_key, task=label)
        finally:
            self._running.discard(key)
        log.info(f"id={key} done")
        return True

    async def run_pass(
        self,
        entities: Iterable[T],
        label: str,
        action_for: Callable[[T], Action],
        id_of: Optional[Callable[[T], Any]] = None,
    ) -> int:
        """Offer each entity serially; returns how many actions ran."""
        id_of = id_of or (lambda entity: getattr(entity, "id"))
        ran = 0
        for entity in list(entities):
            if await self.run_keeper_task(id_of(entity), label, action_for(entity)):
                ran += 1
        self.report_index_size()
        return ran

    def report_index_size(self) -> None:
        positions = len(self.index.positions)
        self.metrics.set_gauge(OPEN_POSITIONS, positions, market=self.market_key)
        self.metrics.set_gauge(PENDING_ORDERS, len(self.index.orders), market=self.market_key)
        self.log.info(f"{positions} positions to keep")
