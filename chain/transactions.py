#!/usr/bin/env python3
"""Build, sign, send and confirm one transaction with a local signer."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Optional

from web3 import AsyncWeb3


@dataclass
class SentTransaction:
    tx_hash: str
    nonce: int
    sender: str


@dataclass
class Receipt:
    tx_hash: str
    block_number: int
    status: int
    gas_used: int = 0

    @property
    def success(self) -> bool:
        return self.status == 1


class Web3TransactionSender:
    """Sends bound contract functions as signed raw transactions.

    The caller holds the signer exclusively, so the pending nonce read here
    is not raced by another sender using the same key.
    """

    def __init__(self, w3: AsyncWeb3, gas_limit_multiplier: float = 1.2, poll_seconds: float = 1.0):
        self.w3 = w3
        self.gas_limit_multiplier = float(gas_limit_multiplier)
        self.poll_seconds = float(poll_seconds)

    async def send(self, fn: Any, signer: Any, value: int = 0) -> SentTransaction:
        address = signer.address
        nonce = await self.w3.eth.get_transaction_count(address, "pending")
        tx = await fn.build_transaction({"from": address, "nonce": nonce, "value": int(value)})
        if "gas" in tx:
            tx["gas"] = int(int(tx["gas"]) * self.gas_limit_multiplier)
        signed = signer.sign_transaction(tx)
        tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        return SentTransaction(tx_hash=AsyncWeb3.to_hex(tx_hash), nonce=int(nonce), sender=address)

    async def wait(self, tx_hash: str, confirmations: int = 1, timeout: Optional[float] = 120.0) -> Receipt:
        raw = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        receipt = Receipt(
            tx_hash=tx_hash,
            block_number=int(raw["blockNumber"]),
            status=int(raw["status"]),
            gas_used=int(raw.get("gasUsed", 0) or 0),
        )
        while confirmations > 1:
            head = int(await self.w3.eth.block_number)
            if head - receipt.block_number + 1 >= confirmations:
                break
            await asyncio.sleep(self.poll_seconds)
        return receipt
