"""
Keeper metrics.

In-process gauge/counter registry keyed by metric name and tag set.
The entrypoint logs a snapshot periodically; tests read it directly.
"""

from __future__ import annotations

import threading
from typing import Any, Dict, Tuple

OPEN_POSITIONS = "futures_open_positions"
PENDING_ORDERS = "futures_pending_orders"
KEEPER_ERRORS = "keeper_errors"
LIQUIDATIONS = "futures_liquidations"
ORDER_EXECUTIONS = "futures_order_executions"
BLOCKS_PROCESSED = "keeper_blocks_processed"
BLOCK_QUEUE_DEPTH = "keeper_block_queue_depth"

TagKey = Tuple[Tuple[str, str], ...]


def _tag_key(tags: Dict[str, Any]) -> TagKey:
    return tuple(sorted((str(k), str(v)) for k, v in tags.items()))


class KeeperMetrics:
    """Gauges hold the last value set; counters accumulate."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._gauges: Dict[str, Dict[TagKey, float]] = {}
        self._counters: Dict[str, Dict[TagKey, float]] = {}

    def set_gauge(self, name: str, value: float, **tags: Any) -> None:
        with self._lock:
            self._gauges.setdefault(name, {})[_tag_key(tags)] = float(value)

    def inc(self, name: str, value: float = 1.0, **tags: Any) -> None:
        with self._lock:
            series = self._counters.setdefault(name, {})
            key = _tag_key(tags)
            series[key] = series.get(key, 0.0) + float(value)

    def gauge(self, name: str, **tags: Any) -> float:
        with self._lock:
            return self._gauges.get(name, {}).get(_tag_key(tags), 0.0)

    def counter(self, name: str, **tags: Any) -> float:
        """Sum of every series of `name` whose tags include `tags`."""
        wanted = set(_tag_key(tags))
        with self._lock:
            return sum(
                value
                for key, value in self._counters.get(name, {}).items()
                if wanted.issubset(key)
            )

    def snapshot(self) -> Dict[str, Dict[str, float]]:
        def _fmt(key: TagKey) -> str:
            return ",".join(f"{k}={v}" for k, v in key)

        with self._lock:
            out: Dict[str, Dict[str, float]] = {}
            for name, series in list(self._gauges.items()) + list(self._counters.items()):
                bucket = out.setdefault(name, {})
                for key, value in series.items():
                    bucket[_fmt(key)] = value
            return out
