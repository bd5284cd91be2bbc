from __future__ import annotations

import logging
from typing import Any

from syncer.src.informer import EventHandlers
from syncer.src.kube import object_key
from syncer.src.resources import ReplicatedKind
from syncer.src.selector import is_terminating, namespace_labels, sync_selector_value
from syncer.src.tracker import DeletionTracker
from syncer.src.workqueue import RateLimitingQueue


class SourceEventClassifier:
    """Decides what a ConfigMap or Secret notification means for replication.

    Both kinds follow the same policy: whenever the sync annotation disappears
    or changes value, the old object is snapshotted into the
    :class:`DeletionTracker` *and* the key is enqueued, so stale copies are
    removed in the very next reconciliation.
    """

    def __init__(
        self,
        kind: ReplicatedKind,
        queue: RateLimitingQueue,
        tracker: DeletionTracker,
        logger: logging.Logger | None = None,
    ) -> None:
        self.kind = kind
        self.queue = queue
        self.tracker = tracker
        self.logger = logger or logging.getLogger(__name__)

    def handlers(self) -> EventHandlers:
        return EventHandlers(on_add=self.on_add, on_update=self.on_update, on_delete=self.on_delete)

    def _enqueue(self, obj: Any) -> None:
        self.queue.add(object_key(obj))

    def on_add(self, obj: Any) -> None:
        if sync_selector_value(obj) is None:
            return
        self.logger.debug("%s %s added with sync annotation", self.kind.kind, object_key(obj))
        self._enqueue(obj)

    def on_update(self, old: Any, new: Any) -> None:
        old_selector = sync_selector_value(old)
        new_selector = sync_selector_value(new)
        key = object_key(new)

        if old_selector is not None and new_selector is not None and old_selector != new_selector:
            self.logger.debug(
                "Sync annotation on %s %s changed from %r to %r",
                self.kind.kind,
                key,
                old_selector,
                new_selector,
            )
            self.tracker.record(old)
            self._enqueue(new)
        elif new_selector is not None and (
            old_selector is None or not self.kind.payload_equal(old, new)
        ):
            self.logger.debug(
                "%s %s gained the sync annotation or its data changed", self.kind.kind, key
            )
            self._enqueue(new)
        elif new_selector is None and old_selector is not None:
            self.logger.debug("Sync annotation was removed from %s %s", self.kind.kind, key)
            self.tracker.record(old)
            self._enqueue(new)

    def on_delete(self, obj: Any) -> None:
        if sync_selector_value(obj) is None:
            return
        self.logger.debug("%s %s deleted", self.kind.kind, object_key(obj))
        self.tracker.record(obj)
        self._enqueue(obj)


class NamespaceEventClassifier:
    """Enqueues namespaces whose label set may change which copies they hold."""

    def __init__(self, queue: RateLimitingQueue, logger: logging.Logger | None = None) -> None:
        self.queue = queue
        self.logger = logger or logging.getLogger(__name__)

    def handlers(self) -> EventHandlers:
        return EventHandlers(on_add=self.on_add, on_update=self.on_update)

    def on_add(self, namespace: Any) -> None:
        self.logger.debug("Namespace %s added", namespace.metadata.name)
        self.queue.add(object_key(namespace))

    def on_update(self, old: Any, new: Any) -> None:
        if is_terminating(new):
            return
        if namespace_labels(old) == namespace_labels(new):
            return
        self.logger.debug("Labels of namespace %s changed", new.metadata.name)
        self.queue.add(object_key(new))
