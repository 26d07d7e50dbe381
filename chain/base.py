#!/usr/bin/env python3
"""
Chain-facing interfaces and the market descriptor.

The keeper core only depends on these abstractions:
- ContractHandle: encode/decode call data and perform direct reads
- CallAggregator: batched reads pinned to one block
- EventSource: decoded events for a block range
"""

from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

Call = Tuple[str, bytes]  # (target address, call data)


class ContractHandle(abc.ABC):
    """Address + interface of one deployed contract."""

    address: str

    @abc.abstractmethod
    def encode(self, fn_name: str, args: Sequence[Any] = ()) -> bytes:
        """ABI-encode a call to fn_name."""
        raise NotImplementedError

    @abc.abstractmethod
    def decode(self, fn_name: str, raw: bytes) -> Any:
        """Decode the raw return data of fn_name. Single outputs are unwrapped."""
        raise NotImplementedError

    @abc.abstractmethod
    async def call(
        self,
        fn_name: str,
        args: Sequence[Any] = (),
        block: Optional[int] = None,
        sender: Optional[str] = None,
    ) -> Any:
        """Direct read-only call, optionally pinned and sent from `sender`."""
        raise NotImplementedError

    def function(self, fn_name: str, *args: Any) -> Any:
        """Bound contract function used to build transactions."""
        raise NotImplementedError(f"{self.__class__.__name__} cannot build transactions")


class CallAggregator(abc.ABC):
    """Batched call primitive. Results align positionally with `calls`."""

    @abc.abstractmethod
    async def aggregate(self, calls: Sequence[Call], block: int) -> List[bytes]:
        raise NotImplementedError


class EventSource(abc.ABC):
    """Decoded events for an inclusive block range, in chain order."""

    @abc.abstractmethod
    async def get_events(self, from_block: int, to_block: int) -> list:
        raise NotImplementedError


@dataclass
class Market:
    """One perps market. Registered at startup, read-only afterwards."""
    key: str               # e.g. sETHPERP
    asset: str             # settlement/base asset, e.g. sETH
    trading: ContractHandle
    state: ContractHandle
    price_feed_id: Optional[str] = None

    @property
    def address(self) -> str:
        return self.trading.address
