"""In-process counters, mirrored to the log."""

from __future__ import annotations

from collections import Counter
from threading import Lock

from relaybridge.util.logger import logger


_COUNTERS: Counter[str] = Counter()
_COUNTERS_LOCK = Lock()


def emit_counter(name: str, value: int = 1, labels: dict | None = None) -> None:
    with _COUNTERS_LOCK:
        _COUNTERS[name] += value
    logger.debug("metric counter name=%s value=%s labels=%s", name, value, labels or {})


def counter_value(name: str) -> int:
    with _COUNTERS_LOCK:
        return _COUNTERS[name]


def reset_counters() -> None:
    with _COUNTERS_LOCK:
        _COUNTERS.clear()
