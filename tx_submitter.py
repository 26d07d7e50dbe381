#!/usr/bin/env python3
"""
One state-changing call per keeper task, under a borrowed signer.

Sequence: eligibility read -> prepare call -> acquire signer -> send ->
await confirmations -> record outcome -> release signer.

Error classification:
- stale/rejected nonce: FatalSequencingError (process must restart and
  re-derive nonces from chain state)
- anything else: failed outcome recorded, SubmissionError raised to the
  scheduler
There are no retries here; the next block's pass is the retry.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from logging_utils import market_logger
from metrics import LIQUIDATIONS, KeeperMetrics

NONCE_ERROR_MARKERS = (
    "nonce too low",
    "nonce has already been used",
    "nonce_expired",
    "nonce expired",
    "invalid nonce",
    "invalid transaction nonce",
)


class FatalSequencingError(RuntimeError):
    """The network rejected our nonce; local sequencing can't be trusted."""


class SubmissionError(RuntimeError):
    """A keeper transaction failed; contained by the scheduler."""

    def __init__(self, message: str, task_id: Any = None, market: str = ""):
        super().__init__(message)
        self.task_id = task_id
        self.market = market


def is_nonce_error(exc: BaseException) -> bool:
    if str(getattr(exc, "code", "") or "").upper() == "NONCE_EXPIRED":
        return True
    parts = [str(exc)]
    for arg in getattr(exc, "args", ()) or ():
        if isinstance(arg, dict):
            parts.append(str(arg.get("message", "")))
    text = " ".join(parts).lower()
    return any(marker in text for marker in NONCE_ERROR_MARKERS)


@dataclass
class PreparedCall:
    fn: Any          # bound contract function
    value: int = 0   # wei attached to the call


@dataclass
class TxOutcome:
    task_id: str
    label: str
    tx_hash: str
    nonce: int
    block_number: int
    success: bool
    gas_used: int = 0


class TransactionSubmitter:
    """Submits keeper transactions for one market."""

    def __init__(
        self,
        market_key: str,
        signer_pool: Any,
        sender: Any,
        metrics: KeeperMetrics,
        confirmations: int = 1,
        receipt_timeout: Optional[float] = 120.0,
        dry_run: bool = False,
    ):
        self.market_key = market_key
        self.signer_pool = signer_pool
        self.sender = sender
        self.metrics = metrics
        self.confirmations = max(1, int(confirmations))
        self.receipt_timeout = receipt_timeout
        self.dry_run = dry_run

    def _record(self, metric: str, label: str, task_id: str, success: bool) -> None:
        self.metrics.inc(metric, market=self.market_key, task=label, id=task_id, success=success)

    async def submit(
        self,
        task_id: Any,
        label: str,
        is_eligible: Callable[[], Awaitable[bool]],
        prepare: Callable[[], Awaitable[PreparedCall]],
        metric: str = LIQUIDATIONS,
    ) -> Optional[TxOutcome]:
        """Returns None when ineligible (or dry-run); raises on failure."""
        key = str(task_id)
        log = market_logger(self.market_key, f"task.{label}")

        if not await is_eligible():
            log.info(f"id={key} not eligible")
            return None

        prepared = await prepare()
        if self.dry_run:
            log.info(f"id={key} eligible (dry-run, not submitting)")
            return None

        log.info(f"id={key} begin {label}")
        try:
            async with self.signer_pool.acquire() as signer:
                sent = await self.sender.send(prepared.fn, signer, value=prepared.value)
                log.debug(f"id={key} submit {label} [nonce={sent.nonce}] tx={sent.tx_hash}")
                receipt = await self.sender.wait(
                    sent.tx_hash,
                    confirmations=self.confirmations,
                    timeout=self.receipt_timeout,
                )
        except Exception as exc:
            self._record(metric, label, key, False)
            if is_nonce_error(exc):
                log.error(f"id={key} nonce rejected, halting: {exc}")
                raise FatalSequencingError(str(exc)) from exc
            raise SubmissionError(f"{label} failed: {exc}", task_id=key, market=self.market_key) from exc

        outcome = TxOutcome(
            task_id=key,
            label=label,
            tx_hash=sent.tx_hash,
            nonce=sent.nonce,
            block_number=receipt.block_number,
            success=receipt.success,
            gas_used=receipt.gas_used,
        )
        self._record(metric, label, key, outcome.success)
        log.info(
            f"id={key} done {label} block={outcome.block_number} success={outcome.success} "
            f"tx={outcome.tx_hash} gasUsed={outcome.gas_used}"
        )
        if not outcome.success:
            raise SubmissionError(f"{label} reverted tx={outcome.tx_hash}", task_id=key, market=self.market_key)
        return outcome
