"""Minimal ABI fragments for the contracts the keeper touches."""

from __future__ import annotations

from typing import Any, Dict, List


def _fn(name: str, inputs: List[Dict[str, Any]], outputs: List[Dict[str, Any]], mutability: str = "view") -> Dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "inputs": inputs,
        "outputs": outputs,
        "stateMutability": mutability,
    }


def _arg(name: str, typ: str, indexed: bool = False) -> Dict[str, Any]:
    out = {"name": name, "type": typ, "internalType": typ}
    if indexed:
        out["indexed"] = True
    return out


def _event(name: str, inputs: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {"type": "event", "name": name, "anonymous": False, "inputs": inputs}


_ACCOUNT = [_arg("account", "address")]

_POSITION_FIELDS = [
    _arg("id", "uint64"),
    _arg("lastFundingIndex", "uint64"),
    _arg("margin", "uint128"),
    _arg("lastPrice", "uint128"),
    _arg("size", "int128"),
]

_DELAYED_ORDER_FIELDS = [
    _arg("isOffchain", "bool"),
    _arg("sizeDelta", "int128"),
    _arg("desiredFillPrice", "uint128"),
    _arg("targetRoundId", "uint128"),
    _arg("commitDeposit", "uint128"),
    _arg("keeperDeposit", "uint128"),
    _arg("executableAtTime", "uint256"),
    _arg("intentionTime", "uint256"),
    _arg("trackingCode", "bytes32"),
]


def _tuple(name: str, components: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {"name": name, "type": "tuple", "internalType": "struct", "components": components}


MULTICALL3_ADDRESS = "0xcA11bde05977b3631167028862bE2a173976CA11"

MULTICALL3_ABI = [
    _fn(
        "aggregate",
        [
            {
                "name": "calls",
                "type": "tuple[]",
                "internalType": "struct Multicall3.Call[]",
                "components": [_arg("target", "address"), _arg("callData", "bytes")],
            }
        ],
        [_arg("blockNumber", "uint256"), _arg("returnData", "bytes[]")],
    ),
]

FUTURES_MARKET_MANAGER_ABI = [
    _fn(
        "allMarketSummaries",
        [],
        [
            {
                "name": "",
                "type": "tuple[]",
                "internalType": "struct IFuturesMarketManager.MarketSummary[]",
                "components": [
                    _arg("market", "address"),
                    _arg("asset", "bytes32"),
                    _arg("marketKey", "bytes32"),
                    _arg("proxied", "bool"),
                ],
            }
        ],
    ),
]

PERPS_V2_MARKET_ABI = [
    _fn("baseAsset", [], [_arg("key", "bytes32")]),
    _fn("marketKey", [], [_arg("key", "bytes32")]),
    _fn("marketState", [], [_arg("", "address")]),
    _fn("canLiquidate", _ACCOUNT, [_arg("", "bool")]),
    _fn("liquidationPrice", _ACCOUNT, [_arg("price", "uint256"), _arg("invalid", "bool")]),
    _fn("positions", _ACCOUNT, [_tuple("", _POSITION_FIELDS)]),
    _fn("delayedOrders", _ACCOUNT, [_tuple("", _DELAYED_ORDER_FIELDS)]),
    _fn("liquidatePosition", _ACCOUNT, [], mutability="nonpayable"),
    _fn(
        "executeOffchainDelayedOrder",
        [_arg("account", "address"), _arg("priceUpdateData", "bytes[]")],
        [],
        mutability="payable",
    ),
    _event(
        "PositionModified",
        [
            _arg("id", "uint256", indexed=True),
            _arg("account", "address", indexed=True),
            _arg("margin", "uint256"),
            _arg("size", "int256"),
            _arg("tradeSize", "int256"),
            _arg("lastPrice", "uint256"),
            _arg("fundingIndex", "uint256"),
            _arg("fee", "uint256"),
            _arg("skew", "int256"),
        ],
    ),
    _event(
        "PositionLiquidated",
        [
            _arg("id", "uint256", indexed=True),
            _arg("account", "address", indexed=True),
            _arg("liquidator", "address", indexed=True),
            _arg("size", "int256"),
            _arg("price", "uint256"),
            _arg("flaggerFee", "uint256"),
            _arg("liquidatorFee", "uint256"),
            _arg("stakersFee", "uint256"),
        ],
    ),
    _event(
        "FundingRecomputed",
        [
            _arg("funding", "int256"),
            _arg("fundingRate", "int256"),
            _arg("index", "uint256"),
            _arg("timestamp", "uint256"),
        ],
    ),
    _event(
        "DelayedOrderSubmitted",
        [
            _arg("account", "address", indexed=True),
            _arg("isOffchain", "bool"),
            _arg("sizeDelta", "int256"),
            _arg("targetRoundId", "uint256"),
            _arg("intentionTime", "uint256"),
            _arg("executableAtTime", "uint256"),
            _arg("commitDeposit", "uint256"),
            _arg("keeperDeposit", "uint256"),
            _arg("trackingCode", "bytes32"),
        ],
    ),
    _event(
        "DelayedOrderRemoved",
        [
            _arg("account", "address", indexed=True),
            _arg("isOffchain", "bool"),
            _arg("currentRoundId", "uint256"),
            _arg("sizeDelta", "int256"),
            _arg("targetRoundId", "uint256"),
            _arg("commitDeposit", "uint256"),
            _arg("keeperDeposit", "uint256"),
            _arg("trackingCode", "bytes32"),
        ],
    ),
]

PERPS_V2_MARKET_STATE_ABI = [
    _fn("getPositionAddressesLength", [], [_arg("", "uint256")]),
    _fn(
        "getPositionAddressesPage",
        [_arg("index", "uint256"), _arg("pageSize", "uint256")],
        [_arg("", "address[]")],
    ),
    _fn("getDelayedOrderAddressesLength", [], [_arg("", "uint256")]),
    _fn(
        "getDelayedOrderAddressesPage",
        [_arg("index", "uint256"), _arg("pageSize", "uint256")],
        [_arg("", "address[]")],
    ),
    _fn("positions", _ACCOUNT, _POSITION_FIELDS),
    _fn("delayedOrders", _ACCOUNT, _DELAYED_ORDER_FIELDS),
]

PYTH_ABI = [
    _fn("getUpdateFee", [{"name": "updateData", "type": "bytes[]", "internalType": "bytes[]"}], [_arg("feeAmount", "uint256")]),
]
