#!/usr/bin/env python3
"""Pyth price-service client: latest price-update data for off-chain order execution."""

from __future__ import annotations

import base64
from typing import Any, List, Optional

import aiohttp

from chain.registry import PriceOracleDescriptor
from logging_utils import get_logger


class PriceServiceError(RuntimeError):
    """The price service returned no usable update data."""


class PythPriceClient:
    """Fetches signed price updates (VAAs) and the on-chain update fee."""

    def __init__(self, descriptor: PriceOracleDescriptor, timeout_seconds: float = 10.0):
        self.descriptor = descriptor
        self.endpoint = descriptor.endpoint.rstrip("/")
        self.timeout_seconds = float(timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None
        self.log = get_logger("keeper.price_oracle")

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _get_json(self, url: str, params: Any) -> Any:
        session = await self._get_session()
        async with session.get(url, params=params) as resp:
            if resp.status != 200:
                body = await resp.text()
                raise PriceServiceError(f"price service HTTP {resp.status}: {body[:200]}")
            return await resp.json()

    async def latest_price_updates(self, feed_id: str) -> List[bytes]:
        """Latest VAA(s) for feed_id, decoded from base64."""
        if not feed_id:
            raise PriceServiceError("no price feed id configured")
        payload = await self._get_json(f"{self.endpoint}/api/latest_vaas", [("ids[]", feed_id)])
        if not isinstance(payload, list) or not payload:
            raise PriceServiceError(f"no price update for feed {feed_id}")
        return [base64.b64decode(vaa) for vaa in payload]

    async def update_fee(self, updates: List[bytes]) -> int:
        """Fee (wei) the Pyth contract charges to accept `updates`."""
        if self.descriptor.pyth is None:
            return 0
        return int(await self.descriptor.pyth.call("getUpdateFee", [updates]))
