#!/usr/bin/env python3
"""In-memory contract, aggregator, event source and sender fakes for keeper tests."""

import asyncio
import itertools
import json
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from chain.base import CallAggregator, ContractHandle, EventSource, Market
from chain.transactions import Receipt, SentTransaction


class FakeContract(ContractHandle):
    """Call data is JSON {to, fn, args}; return data is the JSON result."""

    def __init__(self, address: str, functions: Optional[Dict[str, Callable[..., Any]]] = None):
        self.address = address
        self.functions = dict(functions or {})
        self.calls: List[tuple] = []

    def encode(self, fn_name, args=()):
        return json.dumps({"to": self.address, "fn": fn_name, "args": list(args)}).encode()

    def decode(self, fn_name, raw):
        return json.loads(raw.decode())

    async def call(self, fn_name, args=(), block=None, sender=None):
        self.calls.append((fn_name, tuple(args), block, sender))
        return self.functions[fn_name](*args)

    def function(self, fn_name, *args):
        return (self.address, fn_name, args)


class FakeAggregator(CallAggregator):
    def __init__(self, contracts: List[FakeContract], delay_for: Optional[Callable[[int], float]] = None):
        self.contracts = {c.address: c for c in contracts}
        self.requests: List[list] = []
        self.blocks: List[int] = []
        self.corrupt: set = set()
        self.fail_batches: set = set()
        self.delay_for = delay_for

    async def aggregate(self, calls, block):
        self.requests.append(list(calls))
        self.blocks.append(block)
        batch_no = len(self.requests)
        if self.delay_for is not None:
            await asyncio.sleep(self.delay_for(batch_no))
        if batch_no in self.fail_batches:
            raise RuntimeError(f"batch {batch_no} rejected")
        out = []
        for target, data in calls:
            req = json.loads(data.decode())
            if (req["fn"], tuple(req["args"])) in self.corrupt:
                out.append(b"\xff\xfe")
                continue
            fn = self.contracts[target].functions[req["fn"]]
            out.append(json.dumps(fn(*req["args"])).encode())
        return out


def position_tuple(pos_id: int, size: int, margin: int = 10 ** 21, last_price: int = 2 * 10 ** 21) -> list:
    # (id, lastFundingIndex, margin, lastPrice, size)
    return [pos_id, 0, margin, last_price, size]


def order_tuple(size_delta: int, executable_at: int, intention_time: int, is_offchain: bool = True) -> list:
    # (isOffchain, sizeDelta, desiredFillPrice, targetRoundId, commitDeposit,
    #  keeperDeposit, executableAtTime, intentionTime, trackingCode)
    return [is_offchain, size_delta, 0, 0, 0, 0, executable_at, intention_time, "0x" + "00" * 32]


def make_market(
    key: str,
    positions: Optional[Dict[str, list]] = None,
    orders: Optional[Dict[str, list]] = None,
    liquidatable: Optional[set] = None,
    price_feed_id: Optional[str] = None,
) -> Market:
    """Market whose state/trading fakes read from the given (mutable) dicts."""
    positions = positions if positions is not None else {}
    orders = orders if orders is not None else {}
    liquidatable = liquidatable if liquidatable is not None else set()
    state = FakeContract(
        f"0xstate-{key}",
        {
            "getPositionAddressesLength": lambda: len(positions),
            "getPositionAddressesPage": lambda o, s: list(positions)[o:o + s],
            "getDelayedOrderAddressesLength": lambda: len(orders),
            "getDelayedOrderAddressesPage": lambda o, s: list(orders)[o:o + s],
            "positions": lambda a: list(positions.get(a, position_tuple(0, 0))),
            "delayedOrders": lambda a: list(orders.get(a, order_tuple(0, 0, 0, False))),
        },
    )
    trading = FakeContract(
        f"0xtrading-{key}",
        {
            "canLiquidate": lambda a: a in liquidatable,
            "liquidationPrice": lambda a: [1234, False],
        },
    )
    return Market(key=key, asset=key[:-4] if key.endswith("PERP") else key, trading=trading, state=state,
                  price_feed_id=price_feed_id)


class FakeEventSource(EventSource):
    def __init__(self, events_by_block: Optional[Dict[int, list]] = None):
        self.events_by_block = events_by_block if events_by_block is not None else {}
        self.ranges: List[tuple] = []
        self.fail_with: Optional[BaseException] = None

    async def get_events(self, from_block, to_block):
        self.ranges.append((from_block, to_block))
        if self.fail_with is not None:
            raise self.fail_with
        out = []
        for number in range(from_block, to_block + 1):
            out.extend(self.events_by_block.get(number, []))
        return out


class FakeSigner:
    def __init__(self, address: str):
        self.address = address


class FakeSender:
    """Records sends; `send_error` / `status` shape the outcome."""

    def __init__(self, status: int = 1, send_error: Optional[BaseException] = None):
        self.status = status
        self.send_error = send_error
        self.sent: List[tuple] = []
        self._nonces = itertools.count()

    async def send(self, fn, signer, value=0):
        if self.send_error is not None:
            raise self.send_error
        nonce = next(self._nonces)
        self.sent.append((fn, signer.address, value))
        return SentTransaction(tx_hash=f"0x{nonce:064x}", nonce=nonce, sender=signer.address)

    async def wait(self, tx_hash, confirmations=1, timeout=None):
        return Receipt(tx_hash=tx_hash, block_number=100, status=self.status, gas_used=21000)
