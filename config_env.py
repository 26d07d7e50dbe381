"""Load keeper.yaml and apply whitelisted env overrides."""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from env_utils import (
    env_present,
    env_str,
    env_int,
    env_float,
    env_bool,
    env_list,
)


PathKey = Tuple[str, ...]

# Env overrides cover connectivity and runtime plumbing only.
# Fetch limits and timing stay YAML-first.
ALLOWED_ENV_OVERRIDES = {
    "KEEPER_NETWORK",
    "KEEPER_RPC_URL",
    "KEEPER_FROM_BLOCK",
    "KEEPER_MARKETS",
    "KEEPER_CONFIRMATIONS",
    "KEEPER_DRY_RUN",
    "KEEPER_BACKFILL_MODE",
    "KEEPER_ORDERS_ENABLED",
    "KEEPER_POLL_INTERVAL",
}

# Not config keys; read directly by the modules that need them.
_NON_CONFIG_ENV = {"KEEPER_CONFIG", "KEEPER_LOG_LEVEL", "KEEPER_PRIVATE_KEYS"}

_WARNED_IGNORED_ENV_OVERRIDES = False


def _warn_ignored_env_overrides_once(names: set[str]) -> None:
    global _WARNED_IGNORED_ENV_OVERRIDES
    if _WARNED_IGNORED_ENV_OVERRIDES or not names:
        return
    sorted_names = sorted(names)
    preview = ", ".join(sorted_names[:12])
    extra = len(sorted_names) - 12
    if extra > 0:
        preview = f"{preview}, +{extra} more"
    print(
        "Config warning: ignoring non-whitelisted KEEPER env overrides "
        "(YAML-first mode). "
        f"Ignored keys: {preview}"
    )
    _WARNED_IGNORED_ENV_OVERRIDES = True


def _get_path(cfg: Dict[str, Any], path: PathKey, default: Any = None) -> Any:
    cur: Any = cfg
    for key in path:
        if not isinstance(cur, dict) or key not in cur:
            return default
        cur = cur[key]
    return cur


def _set_path(cfg: Dict[str, Any], path: PathKey, value: Any) -> None:
    cur: Any = cfg
    for key in path[:-1]:
        if key not in cur or not isinstance(cur[key], dict):
            cur[key] = {}
        cur = cur[key]
    cur[path[-1]] = value


def load_config(path: Path) -> Dict[str, Any]:
    """Load YAML config from path."""
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def apply_env_overrides(config: Dict[str, Any], environ_keys: Optional[List[str]] = None) -> Dict[str, Any]:
    cfg = deepcopy(config) if config else {}
    ignored_env_overrides: set[str] = set()

    def override(path: PathKey, env_name: str, kind: str = "str") -> None:
        if not env_present(env_name):
            return
        default = _get_path(cfg, path)
        if kind == "int":
            value = env_int(env_name, default if isinstance(default, int) else 0)
        elif kind == "float":
            value = env_float(env_name, float(default) if default is not None else 0.0)
        elif kind == "bool":
            value = env_bool(env_name, bool(default) if default is not None else False)
        elif kind == "list":
            value = env_list(env_name, default if isinstance(default, list) else [])
        else:
            value = env_str(env_name, default if default is not None else "")
        _set_path(cfg, path, value)

    override(("keeper", "network"), "KEEPER_NETWORK")
    override(("keeper", "rpc_url"), "KEEPER_RPC_URL")
    override(("keeper", "from_block"), "KEEPER_FROM_BLOCK", kind="int")
    override(("keeper", "markets"), "KEEPER_MARKETS", kind="list")
    override(("keeper", "dry_run"), "KEEPER_DRY_RUN", kind="bool")
    override(("keeper", "backfill_mode"), "KEEPER_BACKFILL_MODE")
    override(("submitter", "confirmations"), "KEEPER_CONFIRMATIONS", kind="int")
    override(("orders", "enabled"), "KEEPER_ORDERS_ENABLED", kind="bool")
    override(("watcher", "poll_interval_seconds"), "KEEPER_POLL_INTERVAL", kind="float")

    for name in environ_keys or []:
        if not name.startswith("KEEPER_"):
            continue
        if name in ALLOWED_ENV_OVERRIDES or name in _NON_CONFIG_ENV:
            continue
        ignored_env_overrides.add(name)

    _warn_ignored_env_overrides_once(ignored_env_overrides)
    return cfg


@dataclass
class FetcherConfig:
    max_page_size: int = 1000
    max_calls_per_batch: int = 500
    max_concurrent_batches: int = 4
    allow_partial: bool = False
    restricted_reads: List[str] = field(default_factory=lambda: ["getPositionAddressesPage"])


@dataclass
class SubmitterConfig:
    confirmations: int = 1
    receipt_timeout_seconds: float = 120.0
    gas_limit_multiplier: float = 1.2
    confirmation_poll_seconds: float = 1.0


@dataclass
class OrdersConfig:
    enabled: bool = True
    max_execution_failures: int = 3
    price_service_timeout_seconds: float = 10.0


@dataclass
class KeeperConfig:
    network: str = "optimism"
    rpc_url: str = ""
    from_block: Optional[int] = None
    markets: List[str] = field(default_factory=list)
    dry_run: bool = False
    backfill_mode: str = "events"  # events | snapshot
    log_chunk_size: int = 10_000
    log_retry_attempts: int = 3
    log_retry_base_delay: float = 1.0
    log_retry_max_delay: float = 10.0
    recompute_liquidation_price: bool = False
    poll_interval_seconds: float = 1.0
    fetcher: FetcherConfig = field(default_factory=FetcherConfig)
    submitter: SubmitterConfig = field(default_factory=SubmitterConfig)
    orders: OrdersConfig = field(default_factory=OrdersConfig)


def _section(cfg: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = cfg.get(name)
    return value if isinstance(value, dict) else {}


def _known(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    names = set(cls.__dataclass_fields__)
    return {k: v for k, v in data.items() if k in names}


def build_keeper_config(cfg: Dict[str, Any]) -> KeeperConfig:
    """Build typed config from a (YAML + env) dict. Unknown keys are ignored."""
    keeper = dict(_section(cfg, "keeper"))
    keeper.pop("fetcher", None)
    keeper.pop("submitter", None)
    keeper.pop("orders", None)

    watcher = _section(cfg, "watcher")
    if "poll_interval_seconds" in watcher:
        keeper["poll_interval_seconds"] = float(watcher["poll_interval_seconds"])

    out = KeeperConfig(
        **_known(KeeperConfig, keeper),
        fetcher=FetcherConfig(**_known(FetcherConfig, _section(cfg, "fetcher"))),
        submitter=SubmitterConfig(**_known(SubmitterConfig, _section(cfg, "submitter"))),
        orders=OrdersConfig(**_known(OrdersConfig, _section(cfg, "orders"))),
    )
    if out.backfill_mode not in ("events", "snapshot"):
        raise ValueError(f"Unknown backfill_mode {out.backfill_mode!r} (expected events|snapshot)")
    if out.fetcher.max_page_size <= 0 or out.fetcher.max_calls_per_batch <= 0:
        raise ValueError("fetcher.max_page_size and fetcher.max_calls_per_batch must be positive")
    if out.submitter.confirmations < 1:
        raise ValueError("submitter.confirmations must be >= 1")
    return out
