#!/usr/bin/env python3
"""Pool of keeper signers with scoped, exclusive acquisition."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Iterable, List

from eth_account import Account
from eth_account.signers.local import LocalAccount

from logging_utils import get_logger


class SignerPool:
    """Hands out each signer to at most one holder at a time.

    A signer is returned to the pool on every exit path of acquire(),
    including exceptions and task cancellation.
    """

    def __init__(self, signers: Iterable[Any]):
        self._signers: List[Any] = list(signers)
        if not self._signers:
            raise ValueError("SignerPool needs at least one signer")
        self._free: asyncio.Queue = asyncio.Queue()
        for signer in self._signers:
            self._free.put_nowait(signer)
        self.log = get_logger("keeper.signers")

    @classmethod
    def from_private_keys(cls, keys: Iterable[str]) -> "SignerPool":
        accounts: List[LocalAccount] = [Account.from_key(k.strip()) for k in keys if k and k.strip()]
        return cls(accounts)

    @property
    def size(self) -> int:
        return len(self._signers)

    @property
    def available(self) -> int:
        return self._free.qsize()

    @property
    def addresses(self) -> List[str]:
        return [str(getattr(s, "address", s)) for s in self._signers]

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[Any]:
        signer = await self._free.get()
        try:
            yield signer
        finally:
            self._free.put_nowait(signer)
