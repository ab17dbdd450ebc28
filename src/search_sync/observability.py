"""Structured events for batch imports, partitions, schema changes and stale deletes.

Payloads carry counts, durations, statuses and hashes. Raw filter
literals and documents are never emitted.
"""

import hashlib
import json
import logging
import threading
from typing import Any, Dict, List, Protocol, Tuple

logger = logging.getLogger("search_sync.events")


class EventSink(Protocol):
    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        ...


class LoggingSink:
    """Writes each event as one ``event key=value ...`` INFO line."""

    def __init__(self, log: logging.Logger = logger):
        self._log = log

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        parts = " ".join(f"{k}={_render(v)}" for k, v in payload.items())
        self._log.info("%s %s", event, parts)


class RecordingSink:
    """Keeps events in memory; used by the CLI ``--json`` output and by tests."""

    def __init__(self):
        self.events: List[Tuple[str, Dict[str, Any]]] = []
        self._lock = threading.Lock()

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            self.events.append((event, dict(payload)))

    def named(self, event: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [p for e, p in self.events if e == event]


class FanoutSink:
    def __init__(self, *sinks: EventSink):
        self._sinks = sinks

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        for sink in self._sinks:
            sink.emit(event, payload)


def stable_hash(value: Any) -> str:
    """sha1 of a canonical JSON rendering of ``value``."""
    encoded = json.dumps(value, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha1(encoded).hexdigest()


def partition_hash(partition: Any) -> str:
    return stable_hash(partition)[:12]


def filter_hash(filter_by: str) -> str:
    return hashlib.sha1(filter_by.encode("utf-8")).hexdigest()


def partition_fields(partition: Any) -> Dict[str, Any]:
    """Event fields identifying a partition without leaking large values."""
    if partition is None or isinstance(partition, (int, str)):
        shown = partition
    else:
        shown = type(partition).__name__
    return {"partition": shown, "partition_hash": partition_hash(partition)}


def _render(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:.2f}"
    if isinstance(value, (list, dict, tuple)):
        return json.dumps(value, default=str)
    return str(value)
