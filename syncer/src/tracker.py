from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any

from syncer.src.kube import object_key
from syncer.src.metrics import METRICS
from syncer.src.selector import sync_selector_value


@dataclass(frozen=True)
class TrackedSource:
    """Last annotated snapshot of a source whose annotation or object went away."""

    namespace: str
    name: str
    selector: str


class DeletionTracker:
    """Thread-safe map of source key to the snapshots still awaiting cleanup.

    The classifier records snapshots; the reconciler pops them exactly once at
    the start of the next sync of the key.  Several snapshots can pile up for
    one key before a worker gets to it (for example two selector edits in a
    row), so every distinct selector is kept rather than only the latest.
    """

    def __init__(self, kind: str) -> None:
        self.kind = kind
        self._entries: dict[str, list[TrackedSource]] = {}
        self._lock = threading.Lock()

    def record(self, obj: Any) -> TrackedSource | None:
        """Store a snapshot of *obj*; objects without the sync annotation are ignored."""
        selector = sync_selector_value(obj)
        if selector is None:
            return None
        metadata = obj.metadata
        snapshot = TrackedSource(
            namespace=metadata.namespace or "",
            name=metadata.name or "",
            selector=selector,
        )
        key = object_key(obj)
        with self._lock:
            entries = self._entries.setdefault(key, [])
            if snapshot not in entries:
                entries.append(snapshot)
            size = len(self._entries)
        METRICS.tracker_entries.labels(kind=self.kind).set(size)
        return snapshot

    def pop(self, key: str) -> list[TrackedSource]:
        """Remove and return every snapshot recorded for *key*."""
        with self._lock:
            entries = self._entries.pop(key, [])
            size = len(self._entries)
        METRICS.tracker_entries.labels(kind=self.kind).set(size)
        return entries

    def restore(self, key: str, snapshots: list[TrackedSource]) -> None:
        """Put back snapshots whose cleanup failed so the retried sync sees them again."""
        if not snapshots:
            return
        with self._lock:
            entries = self._entries.setdefault(key, [])
            for snapshot in snapshots:
                if snapshot not in entries:
                    entries.append(snapshot)
            size = len(self._entries)
        METRICS.tracker_entries.labels(kind=self.kind).set(size)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
