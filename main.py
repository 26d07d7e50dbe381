#!/usr/bin/env python3
"""
Keeper entrypoint.

Discovers markets, backfills one index per market, then consumes new blocks
per market in strict order and runs keeper passes. A rejected nonce in any
market stops every market and exits with status 1 so a supervisor can
restart the process with fresh nonces.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Awaitable, List, Optional

from web3 import AsyncWeb3

from block_indexer import BlockIndexer
from chain.contracts import Multicall3Aggregator
from chain.events import BlockWatcher, Web3EventSource
from chain.registry import CHAIN_IDS, get_pyth_details, load_markets, normalize_network
from chain.signer_pool import SignerPool
from chain.transactions import Web3TransactionSender
from config_env import KeeperConfig, apply_env_overrides, build_keeper_config, load_config
from env_utils import KEEPER_CONFIG_PATH, env_list
from keeper import Keeper
from logging_utils import setup_logging
from metrics import KeeperMetrics
from paginated_fetcher import EntityKind, PaginatedFetcher
from price_oracle import PythPriceClient
from tx_submitter import FatalSequencingError, TransactionSubmitter

METRICS_LOG_INTERVAL_SECONDS = 60.0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Perps keeper: liquidations and delayed-order execution")
    parser.add_argument("command", nargs="?", default="run", choices=("run", "markets"))
    parser.add_argument("--config", default=KEEPER_CONFIG_PATH, help="Path to keeper.yaml")
    parser.add_argument("--network", help="optimism | optimism-goerli")
    parser.add_argument("--rpc-url", help="JSON-RPC endpoint")
    parser.add_argument("--from-block", type=int, help="Start block for the event backfill")
    parser.add_argument("--markets", help="Comma-separated market keys (default: all)")
    parser.add_argument("--dry-run", action="store_true", help="Check eligibility only; never submit")
    parser.add_argument("--log-file", help="Also log to this file")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def resolve_config(args: argparse.Namespace) -> KeeperConfig:
    raw = load_config(Path(args.config))
    raw = apply_env_overrides(raw, environ_keys=list(os.environ))
    keeper_cfg = raw.setdefault("keeper", {})
    if args.network:
        keeper_cfg["network"] = args.network
    if args.rpc_url:
        keeper_cfg["rpc_url"] = args.rpc_url
    if args.from_block is not None:
        keeper_cfg["from_block"] = args.from_block
    if args.markets:
        keeper_cfg["markets"] = [m.strip() for m in args.markets.split(",") if m.strip()]
    if args.dry_run:
        keeper_cfg["dry_run"] = True
    config = build_keeper_config(raw)
    if not config.rpc_url:
        raise ValueError("No RPC URL configured (keeper.rpc_url / KEEPER_RPC_URL / --rpc-url)")
    return config


async def run_until_first_failure(coros: List[Awaitable[Any]]) -> None:
    """Run side by side; the first exception cancels the rest and is re-raised."""
    tasks = [asyncio.ensure_future(c) for c in coros]
    try:
        done, _pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


async def _log_metrics(metrics: KeeperMetrics, log: logging.Logger) -> None:
    while True:
        await asyncio.sleep(METRICS_LOG_INTERVAL_SECONDS)
        log.info(f"metrics {json.dumps(metrics.snapshot(), sort_keys=True)}")


def _connect(config: KeeperConfig) -> AsyncWeb3:
    return AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(config.rpc_url, request_kwargs={"timeout": 60}))


async def list_markets(config: KeeperConfig, log: logging.Logger) -> int:
    w3 = _connect(config)
    markets = await load_markets(w3, config.network, config.markets)
    fetcher = PaginatedFetcher(
        Multicall3Aggregator(w3),
        markets,
        max_page_size=config.fetcher.max_page_size,
        max_calls_per_batch=config.fetcher.max_calls_per_batch,
    )
    tip = int(await w3.eth.block_number)
    positions = await fetcher.fetch_counts(markets, tip, EntityKind.POSITIONS)
    orders = await fetcher.fetch_counts(markets, tip, EntityKind.ORDERS)
    for market in markets:
        print(
            f"{market.key:<14} asset={market.asset:<8} address={market.address} "
            f"positions={positions.get(market.key, 0)} orders={orders.get(market.key, 0)}"
        )
    log.info(f"{len(markets)} markets at block {tip}")
    return 0


async def run_keeper(config: KeeperConfig, private_keys: List[str], log: logging.Logger) -> int:
    network = normalize_network(config.network)
    w3 = _connect(config)
    metrics = KeeperMetrics()

    markets = await load_markets(w3, network, config.markets)
    if not markets:
        log.error("No markets to keep")
        return 1

    if private_keys:
        signer_pool = SignerPool.from_private_keys(private_keys)
        log.info(f"Signer pool: {', '.join(signer_pool.addresses)}")
    elif config.dry_run:
        signer_pool = None
    else:
        log.error("KEEPER_PRIVATE_KEYS is empty (use --dry-run to run without signers)")
        return 1

    chain_id = int(await w3.eth.chain_id)
    if chain_id != CHAIN_IDS[network]:
        log.warning(f"RPC chain id {chain_id} does not match {network} ({CHAIN_IDS[network]})")

    fetcher = PaginatedFetcher(
        Multicall3Aggregator(w3),
        markets,
        max_page_size=config.fetcher.max_page_size,
        max_calls_per_batch=config.fetcher.max_calls_per_batch,
        max_concurrent_batches=config.fetcher.max_concurrent_batches,
        allow_partial=config.fetcher.allow_partial,
        restricted_reads=config.fetcher.restricted_reads,
    )
    sender = Web3TransactionSender(
        w3,
        gas_limit_multiplier=config.submitter.gas_limit_multiplier,
        poll_seconds=config.submitter.confirmation_poll_seconds,
    )
    price_client = PythPriceClient(
        get_pyth_details(network, w3),
        timeout_seconds=config.orders.price_service_timeout_seconds,
    )

    async def head() -> int:
        return int(await w3.eth.block_number)

    watcher = BlockWatcher(head, poll_interval=config.poll_interval_seconds)
    tip = await head()
    watcher.tip = tip

    indexers: List[BlockIndexer] = []
    try:
        for market in markets:
            events = Web3EventSource(
                w3,
                market.trading.contract,
                retry_attempts=config.log_retry_attempts,
                retry_base_delay=config.log_retry_base_delay,
                retry_max_delay=config.log_retry_max_delay,
                label=market.key,
            )
            submitter = TransactionSubmitter(
                market.key,
                signer_pool,
                sender,
                metrics,
                confirmations=config.submitter.confirmations,
                receipt_timeout=config.submitter.receipt_timeout_seconds,
                dry_run=config.dry_run,
            )
            keeper = Keeper(market, fetcher, events, submitter, metrics, config=config, price_client=price_client)
            await keeper.backfill(tip)
            log.info(f"Starting keeper loop for {market.key}")
            await keeper.run_keepers()
            indexer = BlockIndexer(market.key, keeper.process_block, start_block=tip, metrics=metrics)
            watcher.subscribe(indexer.notify)
            indexers.append(indexer)

        log.info("Listening for blocks")
        await run_until_first_failure(
            [watcher.run(), _log_metrics(metrics, log)] + [i.run() for i in indexers]
        )
    except FatalSequencingError as exc:
        log.error(f"Fatal sequencing error, exiting for restart: {exc}")
        return 1
    finally:
        watcher.stop()
        await price_client.close()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.verbose:
        os.environ["KEEPER_LOG_LEVEL"] = "DEBUG"
    log = setup_logging("keeper.main", log_file=args.log_file, verbose=args.verbose)

    try:
        config = resolve_config(args)
    except (FileNotFoundError, ValueError) as exc:
        log.error(f"Config error: {exc}")
        return 2

    try:
        if args.command == "markets":
            return asyncio.run(list_markets(config, log))
        return asyncio.run(run_keeper(config, env_list("KEEPER_PRIVATE_KEYS", []), log))
    except KeyboardInterrupt:
        log.info("Interrupted")
        return 130
    except Exception as exc:
        log.exception(f"Keeper stopped: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
