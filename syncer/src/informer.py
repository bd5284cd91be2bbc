from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from syncer.src.kube import object_key
from syncer.src.metrics import METRICS


@dataclass(frozen=True)
class EventHandlers:
    """Callbacks invoked by an :class:`Informer` after its store has been updated."""

    on_add: Callable[[Any], None] | None = None
    on_update: Callable[[Any, Any], None] | None = None
    on_delete: Callable[[Any], None] | None = None


class ObjectStore:
    """Thread-safe cache of Kubernetes objects keyed by ``namespace/name``."""

    def __init__(self) -> None:
        self._items: dict[str, Any] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            return self._items.get(key)

    def list(self) -> list[Any]:
        with self._lock:
            return list(self._items.values())

    def list_namespace(self, namespace: str) -> list[Any]:
        with self._lock:
            return [
                obj for obj in self._items.values() if obj.metadata.namespace == namespace
            ]

    def add(self, obj: Any) -> Any | None:
        """Insert or replace *obj*; return the previously cached object, if any."""
        key = object_key(obj)
        with self._lock:
            previous = self._items.get(key)
            self._items[key] = obj
        return previous

    def delete(self, obj: Any) -> Any | None:
        key = object_key(obj)
        with self._lock:
            return self._items.pop(key, None)

    def replace(self, objects: list[Any]) -> tuple[list[Any], list[tuple[Any, Any]], list[Any]]:
        """Swap the whole content for *objects*.

        Returns ``(added, updated, deleted)`` where ``updated`` holds
        ``(old, new)`` pairs whose ``resourceVersion`` differs.
        """
        fresh = {object_key(obj): obj for obj in objects}
        with self._lock:
            previous = self._items
            self._items = fresh

        added: list[Any] = []
        updated: list[tuple[Any, Any]] = []
        for key, obj in fresh.items():
            old = previous.get(key)
            if old is None:
                added.append(obj)
            elif old.metadata.resource_version != obj.metadata.resource_version:
                updated.append((old, obj))
        deleted = [obj for key, obj in previous.items() if key not in fresh]
        return added, updated, deleted

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class Informer:
    """List-then-watch cache for one resource type.

    1. Lists the resource and replaces the store, emitting add/update/delete
       callbacks for the difference against the previous content.
    2. Sets :attr:`synced` and opens a watch stream from the list's
       ``resourceVersion``.
    3. On ``410 Gone`` re-lists and resumes.
    4. On transient errors applies exponential backoff with jitter (capped at
       30 s).
    5. On ``401`` / ``403`` stops and sets :attr:`failed`; RBAC problems do
       not fix themselves.

    Handler exceptions are logged and never interrupt the watch.
    """

    def __init__(
        self,
        name: str,
        list_fn: Callable[..., Any],
        handlers: EventHandlers | None = None,
        watch_timeout_seconds: int = 300,
        store: ObjectStore | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.name = name
        self.list_fn = list_fn
        self.handlers = handlers or EventHandlers()
        self.watch_timeout_seconds = watch_timeout_seconds
        self.store = store or ObjectStore()
        self.logger = logger or logging.getLogger(__name__)
        self.synced = threading.Event()
        self.failed = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def has_synced(self) -> bool:
        return self.synced.is_set()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _dispatch(self, callback: Callable[..., None] | None, *objects: Any) -> None:
        if callback is None:
            return
        try:
            callback(*objects)
        except Exception:
            self.logger.exception("Event handler for %s failed", self.name)

    def _relist(self) -> str | None:
        """List everything, replace the store and emit the difference as events."""
        listing = self.list_fn()
        items = list(getattr(listing, "items", None) or [])
        added, updated, deleted = self.store.replace(items)
        for obj in added:
            self._dispatch(self.handlers.on_add, obj)
        for old, new in updated:
            self._dispatch(self.handlers.on_update, old, new)
        for obj in deleted:
            self._dispatch(self.handlers.on_delete, obj)
        return getattr(getattr(listing, "metadata", None), "resource_version", None)

    def handle_event(self, event_type: str, obj: Any) -> None:
        """Apply a single watch event to the store and notify the handlers."""
        if event_type == "ADDED" or event_type == "MODIFIED":
            previous = self.store.add(obj)
            if previous is None:
                self._dispatch(self.handlers.on_add, obj)
            else:
                self._dispatch(self.handlers.on_update, previous, obj)
        elif event_type == "DELETED":
            previous = self.store.delete(obj)
            self._dispatch(self.handlers.on_delete, previous if previous is not None else obj)

    def _access_denied(self, exc: ApiException, phase: str) -> None:
        self.logger.error(
            "Kubernetes API access denied while %s %s (status=%s). "
            "Check RBAC and service account permissions.",
            phase,
            self.name,
            exc.status,
        )
        METRICS.watch_errors_total.labels(resource=self.name).inc()
        self.failed.set()

    def run(self, shutdown_event: threading.Event | None = None) -> None:
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        needs_list = True
        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            if needs_list:
                try:
                    resource_version = self._relist()
                    needs_list = False
                    backoff_seconds = 1
                    if not self.synced.is_set():
                        self.logger.info("Cache for %s synced", self.name)
                    self.synced.set()
                except ApiException as exc:
                    if exc.status in {401, 403}:
                        self._access_denied(exc, "listing")
                        return
                    self.logger.exception("Listing %s failed", self.name)
                    METRICS.watch_errors_total.labels(resource=self.name).inc()
                except Exception:
                    self.logger.exception("Unexpected error while listing %s", self.name)
                    METRICS.watch_errors_total.labels(resource=self.name).inc()

                if needs_list:
                    jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                    stop.wait(timeout=jittered)
                    backoff_seconds = min(backoff_seconds * 2, 30)
                    continue

            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(resource=self.name).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                )
                for event in stream:
                    if self._should_stop(stop):
                        break

                    event_type = str(event.get("type", ""))
                    obj = event.get("object")
                    if event_type == "ERROR":
                        code = obj.get("code") if isinstance(obj, dict) else None
                        self.logger.warning(
                            "Watch for %s returned an error event (code=%s), re-listing",
                            self.name,
                            code,
                        )
                        needs_list = True
                        break
                    if obj is None or isinstance(obj, dict):
                        continue

                    metadata = getattr(obj, "metadata", None)
                    if metadata and metadata.resource_version:
                        resource_version = metadata.resource_version
                    if event_type == "BOOKMARK":
                        continue
                    self.handle_event(event_type, obj)

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone means etcd compacted past our resourceVersion.
                if exc.status == 410:
                    self.logger.warning("Watch for %s expired, re-listing", self.name)
                    needs_list = True
                    continue
                if exc.status in {401, 403}:
                    self._access_denied(exc, "watching")
                    return

                self.logger.exception("Kubernetes API watch error for %s", self.name)
                METRICS.watch_errors_total.labels(resource=self.name).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error for %s", self.name)
                METRICS.watch_errors_total.labels(resource=self.name).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None
