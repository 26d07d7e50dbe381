#!/usr/bin/env python3
"""
Decoded market events and the block/event sources.

Events are a closed set of dataclasses plus UnrecognizedEvent, built by
decode_event() from an event name and its argument mapping.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from eth_utils import event_abi_to_log_topic
from web3 import AsyncWeb3

from logging_utils import get_logger

from .base import EventSource


@dataclass(frozen=True)
class PositionModified:
    id: int
    account: str
    margin: int
    size: int
    trade_size: int = 0
    last_price: int = 0
    funding_index: int = 0
    fee: int = 0
    block_number: int = 0
    log_index: int = 0


@dataclass(frozen=True)
class PositionLiquidated:
    id: int
    account: str
    liquidator: str = ""
    size: int = 0
    price: int = 0
    block_number: int = 0
    log_index: int = 0


@dataclass(frozen=True)
class FundingRecomputed:
    funding: int = 0
    funding_rate: int = 0
    index: int = 0
    timestamp: int = 0
    block_number: int = 0
    log_index: int = 0


@dataclass(frozen=True)
class DelayedOrderSubmitted:
    account: str
    is_offchain: bool = False
    size_delta: int = 0
    block_number: int = 0
    log_index: int = 0


@dataclass(frozen=True)
class DelayedOrderRemoved:
    account: str
    is_offchain: bool = False
    block_number: int = 0
    log_index: int = 0


@dataclass(frozen=True)
class UnrecognizedEvent:
    name: Optional[str]
    args: Dict[str, Any] = field(default_factory=dict)
    block_number: int = 0
    log_index: int = 0


MarketEvent = Union[
    PositionModified,
    PositionLiquidated,
    FundingRecomputed,
    DelayedOrderSubmitted,
    DelayedOrderRemoved,
    UnrecognizedEvent,
]

KNOWN_EVENTS = (
    "PositionModified",
    "PositionLiquidated",
    "FundingRecomputed",
    "DelayedOrderSubmitted",
    "DelayedOrderRemoved",
)


def decode_event(
    name: Optional[str],
    args: Mapping[str, Any],
    block_number: int = 0,
    log_index: int = 0,
) -> MarketEvent:
    """Map an (event name, args) pair onto the closed event set.

    A known name with missing/invalid args decodes to UnrecognizedEvent.
    """
    where = {"block_number": int(block_number or 0), "log_index": int(log_index or 0)}
    try:
        if name == "PositionModified":
            return PositionModified(
                id=int(args["id"]),
                account=str(args["account"]),
                margin=int(args.get("margin", 0)),
                size=int(args["size"]),
                trade_size=int(args.get("tradeSize", 0)),
                last_price=int(args.get("lastPrice", 0)),
                funding_index=int(args.get("fundingIndex", 0)),
                fee=int(args.get("fee", 0)),
                **where,
            )
        if name == "PositionLiquidated":
            return PositionLiquidated(
                id=int(args.get("id", 0)),
                account=str(args["account"]),
                liquidator=str(args.get("liquidator", "")),
                size=int(args.get("size", 0)),
                price=int(args.get("price", 0)),
                **where,
            )
        if name == "FundingRecomputed":
            return FundingRecomputed(
                funding=int(args.get("funding", 0)),
                funding_rate=int(args.get("fundingRate", 0)),
                index=int(args.get("index", 0)),
                timestamp=int(args.get("timestamp", 0)),
                **where,
            )
        if name == "DelayedOrderSubmitted":
            return DelayedOrderSubmitted(
                account=str(args["account"]),
                is_offchain=bool(args.get("isOffchain", False)),
                size_delta=int(args.get("sizeDelta", 0)),
                **where,
            )
        if name == "DelayedOrderRemoved":
            return DelayedOrderRemoved(
                account=str(args["account"]),
                is_offchain=bool(args.get("isOffchain", False)),
                **where,
            )
    except (KeyError, TypeError, ValueError):
        pass
    return UnrecognizedEvent(name=name, args=dict(args or {}), **where)


class Web3EventSource(EventSource):
    """get_logs over one contract, decoded through its ABI.

    Range queries retry a bounded number of times with exponential backoff;
    the last failure is re-raised.
    """

    def __init__(
        self,
        w3: AsyncWeb3,
        contract: Any,
        retry_attempts: int = 3,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 10.0,
        label: str = "",
    ):
        self.w3 = w3
        self.contract = contract
        self.retry_attempts = max(1, int(retry_attempts))
        self.retry_base_delay = float(retry_base_delay)
        self.retry_max_delay = float(retry_max_delay)
        self.log = get_logger(f"keeper.{label or 'events'}.events")
        self._topics: Dict[bytes, str] = {
            bytes(event_abi_to_log_topic(item)): item["name"]
            for item in contract.abi
            if item.get("type") == "event"
        }

    async def _get_logs(self, from_block: int, to_block: int) -> List[Any]:
        params = {"address": self.contract.address, "fromBlock": from_block, "toBlock": to_block}
        delay = self.retry_base_delay
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return list(await self.w3.eth.get_logs(params))
            except Exception as exc:
                if attempt >= self.retry_attempts:
                    raise
                wait = min(delay, self.retry_max_delay) * random.uniform(0.5, 1.0)
                self.log.warning(
                    f"get_logs {from_block}..{to_block} failed (attempt {attempt}/{self.retry_attempts}): {exc}; "
                    f"retrying in {wait:.1f}s"
                )
                await asyncio.sleep(wait)
                delay *= 2
        return []

    def _decode_log(self, log: Any) -> MarketEvent:
        topics = log.get("topics") or []
        block_number = int(log.get("blockNumber") or 0)
        log_index = int(log.get("logIndex") or 0)
        name = self._topics.get(bytes(topics[0])) if topics else None
        if name is None:
            return UnrecognizedEvent(name=None, block_number=block_number, log_index=log_index)
        event = getattr(self.contract.events, name)()
        try:
            decoded = event.process_log(log)
        except Exception as exc:
            self.log.warning(f"Undecodable {name} log at block {block_number} index {log_index}: {exc}")
            return UnrecognizedEvent(name=name, block_number=block_number, log_index=log_index)
        return decode_event(name, dict(decoded["args"]), block_number, log_index)

    async def get_events(self, from_block: int, to_block: int) -> List[MarketEvent]:
        logs = await self._get_logs(from_block, to_block)
        logs.sort(key=lambda l: (int(l.get("blockNumber") or 0), int(l.get("logIndex") or 0)))
        return [self._decode_log(log) for log in logs]


BlockCallback = Callable[[int], Union[None, Awaitable[None]]]


class BlockWatcher:
    """Polls the chain head and pushes new block numbers to subscribers.

    Usage:
        watcher = BlockWatcher(get_block_number, poll_interval=1.0)
        watcher.subscribe(indexer.notify)
        await watcher.run()
    """

    def __init__(
        self,
        get_block_number: Callable[[], Awaitable[int]],
        poll_interval: float = 1.0,
    ):
        self._get_block_number = get_block_number
        self.poll_interval = float(poll_interval)
        self.log = get_logger("keeper.blocks")
        self._subscribers: List[BlockCallback] = []
        self._running = False
        self.tip: Optional[int] = None

    def subscribe(self, callback: BlockCallback) -> None:
        self._subscribers.append(callback)

    async def poll_once(self) -> Optional[int]:
        number = int(await self._get_block_number())
        if self.tip is not None and number <= self.tip:
            return None
        self.tip = number
        self.log.debug(f"New block: {number}")
        for callback in self._subscribers:
            result = callback(number)
            if asyncio.iscoroutine(result):
                await result
        return number

    async def run(self) -> None:
        self._running = True
        while self._running:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.log.warning(f"Block poll failed: {exc}")
            await asyncio.sleep(self.poll_interval)

    def stop(self) -> None:
        self._running = False
