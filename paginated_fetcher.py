#!/usr/bin/env python3
"""
Paginated, batched on-chain reads.

Reconstructs the position/order address sets and entities of every market
under call-size limits:
- counts: one count read per market, pinned to a block
- pages: (offset, size) descriptors covering [0, count) exactly
- address pages: aggregated reads, or direct reads sent from the market
  contract for state functions restricted to associated contracts
- entities: aggregated per-account reads, decoded and re-associated with
  the (address, market) that produced each call

All reads of one enumeration use the same pinned block.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple, Union

from chain.base import Call, CallAggregator, Market
from logging_utils import get_logger


class EntityKind(str, Enum):
    POSITIONS = "positions"
    ORDERS = "orders"


COUNT_FUNCTIONS = {
    EntityKind.POSITIONS: "getPositionAddressesLength",
    EntityKind.ORDERS: "getDelayedOrderAddressesLength",
}
PAGE_FUNCTIONS = {
    EntityKind.POSITIONS: "getPositionAddressesPage",
    EntityKind.ORDERS: "getDelayedOrderAddressesPage",
}
ENTITY_FUNCTIONS = {
    EntityKind.POSITIONS: "positions",
    EntityKind.ORDERS: "delayedOrders",
}

DEFAULT_MAX_PAGE_SIZE = 1000
DEFAULT_MAX_CALLS_PER_BATCH = 500
DEFAULT_MAX_CONCURRENT_BATCHES = 4


@dataclass(frozen=True)
class Page:
    offset: int
    size: int


class Entity(NamedTuple):
    address: str
    value: Any


class DecodeError(ValueError):
    """A batched return value could not be decoded. Aborts its batch."""

    def __init__(self, market: str, address: Optional[str], call_index: int, cause: Optional[BaseException] = None):
        self.market = market
        self.address = address
        self.call_index = call_index
        self.cause = cause
        super().__init__(
            f"decode failed market={market} address={address or '-'} call_index={call_index}: {cause}"
        )


class RangeInconsistency(RuntimeError):
    """Addresses recovered for a market differ from the count they were paged from."""

    def __init__(self, market: str, expected: int, actual: int):
        self.market = market
        self.expected = expected
        self.actual = actual
        super().__init__(f"market={market} expected {expected} addresses, got {actual}")


def compute_pages(count: int, max_page_size: int) -> List[Page]:
    """Ordered pages covering [0, count); the last page holds the remainder."""
    if max_page_size <= 0:
        raise ValueError(f"max_page_size must be positive, got {max_page_size}")
    count = int(count)
    return [
        Page(offset=offset, size=min(max_page_size, count - offset))
        for offset in range(0, max(count, 0), max_page_size)
    ]


@dataclass
class _Request:
    market: str
    address: Optional[str]
    call: Call
    decode: Callable[[bytes], Any]


_MISSING = object()

MarketRef = Union[str, Market]


class FetchResult(dict):
    """market_key -> values, plus the errors of batches dropped in partial mode."""

    def __init__(self, data: Optional[Dict[str, Any]] = None, errors: Optional[List[Exception]] = None):
        super().__init__(data or {})
        self.errors: List[Exception] = list(errors or [])


class PaginatedFetcher:
    """Batched read engine over a CallAggregator.

    allow_partial=False (default): any decode or batch failure fails the
    whole fetch. allow_partial=True: failed batches/entries are dropped and
    the errors returned on the FetchResult. One fetcher is shared by every
    market, so errors never live on the instance.
    """

    def __init__(
        self,
        aggregator: CallAggregator,
        markets: Iterable[Market],
        max_page_size: int = DEFAULT_MAX_PAGE_SIZE,
        max_calls_per_batch: int = DEFAULT_MAX_CALLS_PER_BATCH,
        max_concurrent_batches: int = DEFAULT_MAX_CONCURRENT_BATCHES,
        allow_partial: bool = False,
        restricted_reads: Optional[Iterable[str]] = None,
    ):
        if max_page_size <= 0 or max_calls_per_batch <= 0:
            raise ValueError("max_page_size and max_calls_per_batch must be positive")
        self.aggregator = aggregator
        self.markets: Dict[str, Market] = {m.key: m for m in markets}
        self.max_page_size = int(max_page_size)
        self.max_calls_per_batch = int(max_calls_per_batch)
        self.max_concurrent_batches = max(1, int(max_concurrent_batches))
        self.allow_partial = bool(allow_partial)
        self.restricted_reads = set(
            restricted_reads if restricted_reads is not None else [PAGE_FUNCTIONS[EntityKind.POSITIONS]]
        )
        self.log = get_logger("keeper.fetcher")

    # ------------------------------------------------------------------ helpers

    def _market(self, ref: MarketRef) -> Market:
        if isinstance(ref, Market):
            self.markets.setdefault(ref.key, ref)
            return ref
        try:
            return self.markets[ref]
        except KeyError:
            raise KeyError(f"Unknown market {ref!r}") from None

    async def _run_batched(self, requests: List[_Request], block: int, errors: List[Exception]) -> List[Any]:
        """Aggregate `requests` in bounded batches; results align with requests.

        Entries of failed batches are _MISSING when partial results are
        allowed; their errors are appended to `errors`.
        """
        results: List[Any] = [_MISSING] * len(requests)
        if not requests:
            return results
        semaphore = asyncio.Semaphore(self.max_concurrent_batches)
        starts = list(range(0, len(requests), self.max_calls_per_batch))

        async def run_batch(start: int) -> None:
            batch = requests[start:start + self.max_calls_per_batch]
            async with semaphore:
                raw = await self.aggregator.aggregate([r.call for r in batch], block)
            if len(raw) != len(batch):
                raise DecodeError(batch[0].market, None, start, ValueError(
                    f"{len(raw)} results for {len(batch)} calls"
                ))
            decoded = []
            for offset, (req, data) in enumerate(zip(batch, raw)):
                try:
                    decoded.append(req.decode(data))
                except Exception as exc:
                    raise DecodeError(req.market, req.address, start + offset, exc) from exc
            results[start:start + len(batch)] = decoded

        outcomes = await asyncio.gather(*(run_batch(s) for s in starts), return_exceptions=True)
        failed = [o for o in outcomes if isinstance(o, BaseException)]
        for err in failed:
            if not isinstance(err, Exception):
                raise err
        if failed:
            if not self.allow_partial:
                raise failed[0]
            errors.extend(failed)
            for err in failed:
                self.log.error(f"Batch dropped (partial results allowed): {err}")
        self.log.debug(f"{len(requests)} calls in {len(starts)} aggregate requests at block {block}")
        return results

    # --------------------------------------------------------------- counts

    async def fetch_counts(
        self,
        markets: Iterable[MarketRef],
        block: int,
        kind: EntityKind,
        errors: Optional[List[Exception]] = None,
    ) -> FetchResult:
        """Address count per market at `block`; zero counts are omitted."""
        errors = [] if errors is None else errors
        fn_name = COUNT_FUNCTIONS[EntityKind(kind)]
        requests = []
        for ref in markets:
            market = self._market(ref)
            requests.append(
                _Request(
                    market=market.key,
                    address=None,
                    call=(market.state.address, market.state.encode(fn_name)),
                    decode=lambda raw, m=market: int(m.state.decode(fn_name, raw)),
                )
            )
        results = await self._run_batched(requests, block, errors)
        counts: Dict[str, int] = {}
        for req, count in zip(requests, results):
            if count is _MISSING or count <= 0:
                continue
            counts[req.market] = count
        return FetchResult(counts, errors)

    # -------------------------------------------------------------- addresses

    def pages_for(self, counts: Dict[str, int]) -> Dict[str, List[Page]]:
        return {key: compute_pages(count, self.max_page_size) for key, count in counts.items() if count > 0}

    def _assemble(
        self,
        pages_by_market: Dict[str, List[Page]],
        flat: List[Tuple[str, Page]],
        results: List[Any],
        errors: List[Exception],
    ) -> FetchResult:
        out: Dict[str, List[str]] = {key: [] for key in pages_by_market}
        failed = set()
        for (key, _page), addresses in zip(flat, results):
            if addresses is _MISSING:
                failed.add(key)
                continue
            out[key].extend(str(a) for a in addresses)
        for key in failed:
            self.log.error(f"Dropping {key} addresses: one or more pages failed")
            out.pop(key, None)
        for key, addresses in out.items():
            expected = sum(p.size for p in pages_by_market[key])
            if len(addresses) != expected:
                raise RangeInconsistency(key, expected, len(addresses))
        return FetchResult(out, errors)

    async def fetch_address_pages(
        self,
        pages_by_market: Dict[str, List[Page]],
        block: int,
        kind: EntityKind = EntityKind.ORDERS,
        errors: Optional[List[Exception]] = None,
    ) -> FetchResult:
        """Aggregated page reads; each market's pages concatenate in order."""
        errors = [] if errors is None else errors
        fn_name = PAGE_FUNCTIONS[EntityKind(kind)]
        flat: List[Tuple[str, Page]] = [
            (key, page) for key, pages in pages_by_market.items() for page in pages
        ]
        requests = []
        for key, page in flat:
            market = self._market(key)
            requests.append(
                _Request(
                    market=key,
                    address=None,
                    call=(market.state.address, market.state.encode(fn_name, [page.offset, page.size])),
                    decode=lambda raw, m=market: list(m.state.decode(fn_name, raw)),
                )
            )
        results = await self._run_batched(requests, block, errors)
        return self._assemble(pages_by_market, flat, results, errors)

    async def fetch_restricted_address_pages(
        self,
        pages_by_market: Dict[str, List[Page]],
        block: int,
        kind: EntityKind = EntityKind.POSITIONS,
        errors: Optional[List[Exception]] = None,
    ) -> FetchResult:
        """Direct page reads sent from the market's trading contract.

        The state contract only serves some reads to its associated
        contracts, so these cannot go through the aggregator.
        """
        errors = [] if errors is None else errors
        fn_name = PAGE_FUNCTIONS[EntityKind(kind)]
        flat: List[Tuple[str, Page]] = [
            (key, page) for key, pages in pages_by_market.items() for page in pages
        ]
        semaphore = asyncio.Semaphore(self.max_concurrent_batches)

        async def read(key: str, page: Page) -> List[str]:
            market = self._market(key)
            async with semaphore:
                return list(
                    await market.state.call(
                        fn_name,
                        [page.offset, page.size],
                        block=block,
                        sender=market.trading.address,
                    )
                )

        outcomes = await asyncio.gather(*(read(k, p) for k, p in flat), return_exceptions=True)
        results: List[Any] = []
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception) or not self.allow_partial:
                    raise outcome
                errors.append(outcome)
                results.append(_MISSING)
            else:
                results.append(outcome)
        return self._assemble(pages_by_market, flat, results, errors)

    async def fetch_addresses(
        self,
        counts: Dict[str, int],
        block: int,
        kind: EntityKind,
        errors: Optional[List[Exception]] = None,
    ) -> FetchResult:
        """Page every market and pick the read path for the page function."""
        pages = self.pages_for(counts)
        if PAGE_FUNCTIONS[EntityKind(kind)] in self.restricted_reads:
            return await self.fetch_restricted_address_pages(pages, block, kind, errors)
        return await self.fetch_address_pages(pages, block, kind, errors)

    # --------------------------------------------------------------- entities

    async def fetch_entities(
        self,
        pairs: Sequence[Tuple[str, str]],
        block: int,
        fn_name: str,
        decoder: Optional[Callable[[bytes], Any]] = None,
        target: str = "state",
        errors: Optional[List[Exception]] = None,
    ) -> FetchResult:
        """Per-account reads for (address, market) pairs.

        Results keep the input order within each market. `target` selects
        the state or trading contract; `decoder` defaults to that contract's
        ABI decoding of fn_name.
        """
        errors = [] if errors is None else errors
        requests = []
        for address, key in pairs:
            market = self._market(key)
            contract = market.trading if target == "trading" else market.state
            decode = decoder or (lambda raw, c=contract: c.decode(fn_name, raw))
            requests.append(
                _Request(
                    market=key,
                    address=address,
                    call=(contract.address, contract.encode(fn_name, [address])),
                    decode=decode,
                )
            )
        results = await self._run_batched(requests, block, errors)
        out: Dict[str, List[Entity]] = {}
        for req, value in zip(requests, results):
            bucket = out.setdefault(req.market, [])
            if value is _MISSING:
                continue
            bucket.append(Entity(address=req.address, value=value))
        return FetchResult(out, errors)

    async def fetch_all(
        self,
        kind: EntityKind,
        block: int,
        markets: Optional[Iterable[MarketRef]] = None,
    ) -> FetchResult:
        """counts -> addresses -> entities for `kind`, pinned at `block`.

        The result's errors cover every phase of this fetch.
        """
        kind = EntityKind(kind)
        errors: List[Exception] = []
        refs = list(markets) if markets is not None else list(self.markets)
        counts = await self.fetch_counts(refs, block, kind, errors)
        if not counts:
            return FetchResult({}, errors)
        addresses = await self.fetch_addresses(counts, block, kind, errors)
        pairs = [(addr, key) for key, addrs in addresses.items() for addr in addrs]
        entities = await self.fetch_entities(pairs, block, ENTITY_FUNCTIONS[kind], errors=errors)
        self.log.info(
            f"Fetched {sum(len(v) for v in entities.values())} {kind.value} "
            f"across {len(entities)} markets at block {block}"
        )
        return entities
