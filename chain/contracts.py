#!/usr/bin/env python3
"""web3-backed contract handles and the Multicall3 aggregator."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from eth_abi import decode as abi_decode
from eth_utils.abi import collapse_if_tuple
from web3 import AsyncWeb3

from .abis import MULTICALL3_ABI, MULTICALL3_ADDRESS
from .base import Call, CallAggregator, ContractHandle


def bytes32_to_str(value: Any) -> str:
    """Decode a right-padded bytes32 key (e.g. b'sETHPERP\\x00...')."""
    if isinstance(value, str):
        if value.startswith("0x"):
            value = bytes.fromhex(value[2:])
        else:
            return value
    return bytes(value).rstrip(b"\x00").decode("utf-8", errors="replace")


class Web3ContractHandle(ContractHandle):
    """ContractHandle over an AsyncWeb3 contract instance."""

    def __init__(self, w3: AsyncWeb3, address: str, abi: List[Dict[str, Any]]):
        self.w3 = w3
        self.address = AsyncWeb3.to_checksum_address(address)
        self.abi = abi
        self.contract = w3.eth.contract(address=self.address, abi=abi)
        self._output_types: Dict[str, List[str]] = {
            item["name"]: [collapse_if_tuple(o) for o in item.get("outputs", [])]
            for item in abi
            if item.get("type") == "function"
        }

    def encode(self, fn_name: str, args: Sequence[Any] = ()) -> bytes:
        data = self.contract.encode_abi(fn_name, args=list(args))
        if isinstance(data, str):
            return bytes.fromhex(data[2:] if data.startswith("0x") else data)
        return bytes(data)

    def decode(self, fn_name: str, raw: bytes) -> Any:
        types = self._output_types.get(fn_name)
        if types is None:
            raise KeyError(f"{fn_name} not in ABI of {self.address}")
        values = abi_decode(types, bytes(raw))
        if len(values) == 1:
            return values[0]
        return tuple(values)

    async def call(
        self,
        fn_name: str,
        args: Sequence[Any] = (),
        block: Optional[int] = None,
        sender: Optional[str] = None,
    ) -> Any:
        tx: Dict[str, Any] = {}
        if sender:
            tx["from"] = AsyncWeb3.to_checksum_address(sender)
        fn = self.function(fn_name, *args)
        return await fn.call(tx, block_identifier=block if block is not None else "latest")

    def function(self, fn_name: str, *args: Any) -> Any:
        return getattr(self.contract.functions, fn_name)(*args)


class Multicall3Aggregator(CallAggregator):
    """Multicall3.aggregate pinned to a block; every call sees the same state."""

    def __init__(self, w3: AsyncWeb3, address: str = MULTICALL3_ADDRESS):
        self.w3 = w3
        self.contract = w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(address),
            abi=MULTICALL3_ABI,
        )

    async def aggregate(self, calls: Sequence[Call], block: int) -> List[bytes]:
        if not calls:
            return []
        payload = [(AsyncWeb3.to_checksum_address(target), data) for target, data in calls]
        _, return_data = await self.contract.functions.aggregate(payload).call(block_identifier=block)
        if len(return_data) != len(calls):
            raise ValueError(
                f"Multicall returned {len(return_data)} results for {len(calls)} calls"
            )
        return [bytes(r) for r in return_data]
