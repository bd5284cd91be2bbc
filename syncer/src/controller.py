from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes.client import CoreV1Api

from syncer.src.classifier import NamespaceEventClassifier, SourceEventClassifier
from syncer.src.informer import Informer, ObjectStore
from syncer.src.metrics import METRICS
from syncer.src.provenance import utc_now_rfc3339
from syncer.src.reconciler import NamespaceReconciler, ReplicationReconciler, SyncError
from syncer.src.resources import ConfigMapKind, ReplicatedKind, SecretKind
from syncer.src.tracker import DeletionTracker
from syncer.src.workqueue import ExponentialBackoff, RateLimitingQueue


@dataclass(frozen=True)
class WorkPipeline:
    """A work queue together with the informer feeding it and the sync function draining it."""

    name: str
    queue: RateLimitingQueue
    informer: Informer
    sync: Callable[[str], Any]


class ReplicationController:
    """Replicates annotated ConfigMaps and Secrets across namespaces.

    Three informers (ConfigMaps, Secrets, Namespaces) keep local caches and
    feed the event classifiers, which put ``namespace/name`` keys on one work
    queue per kind.  Once every cache has synced, ``worker_threads`` workers
    per queue pull keys and run the matching reconciler.  A failed sync is
    requeued with per-key exponential backoff; a successful one resets it.

    Key internal state:
        ``_pipelines``
            One :class:`WorkPipeline` per queue, in ConfigMap, Secret,
            Namespace order.
        ``trackers``
            The per-kind :class:`DeletionTracker` shared by the classifier
            (writer) and the reconciler (consumer).
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        worker_threads: int = 2,
        retry_max_delay_seconds: float = 300.0,
        watch_timeout_seconds: int = 300,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        if worker_threads < 1:
            raise ValueError("worker_threads must be >= 1")
        self.core_api = core_api
        self.worker_threads = worker_threads
        self.logger = logger or logging.getLogger(__name__)

        self.namespace_store = ObjectStore()
        self.trackers: dict[str, DeletionTracker] = {}
        self.reconcilers: dict[str, ReplicationReconciler] = {}
        self._pipelines: list[WorkPipeline] = []

        kinds: list[ReplicatedKind] = [ConfigMapKind(core_api), SecretKind(core_api)]
        for kind in kinds:
            store = ObjectStore()
            queue = RateLimitingQueue(
                kind.resource, ExponentialBackoff(max_delay=retry_max_delay_seconds)
            )
            tracker = DeletionTracker(kind.kind)
            classifier = SourceEventClassifier(kind, queue, tracker)
            informer = Informer(
                kind.resource,
                kind.list_fn,
                handlers=classifier.handlers(),
                watch_timeout_seconds=watch_timeout_seconds,
                store=store,
            )
            reconciler = ReplicationReconciler(
                kind, store, self.namespace_store, tracker, now_fn=now_fn
            )
            self.trackers[kind.kind] = tracker
            self.reconcilers[kind.kind] = reconciler
            self._pipelines.append(WorkPipeline(kind.resource, queue, informer, reconciler.sync))

        namespace_queue = RateLimitingQueue(
            "namespaces", ExponentialBackoff(max_delay=retry_max_delay_seconds)
        )
        namespace_informer = Informer(
            "namespaces",
            core_api.list_namespace,
            handlers=NamespaceEventClassifier(namespace_queue).handlers(),
            watch_timeout_seconds=watch_timeout_seconds,
            store=self.namespace_store,
        )
        self.namespace_reconciler = NamespaceReconciler(
            list(self.reconcilers.values()), self.namespace_store
        )
        self._pipelines.append(
            WorkPipeline(
                "namespaces",
                namespace_queue,
                namespace_informer,
                self.namespace_reconciler.sync,
            )
        )

        self.ready = threading.Event()
        self.failed = threading.Event()
        self._external_stop = threading.Event()

    @property
    def pipelines(self) -> list[WorkPipeline]:
        return list(self._pipelines)

    def pipeline(self, name: str) -> WorkPipeline:
        for pipeline in self._pipelines:
            if pipeline.name == name:
                return pipeline
        raise KeyError(name)

    def readiness(self) -> dict[str, bool]:
        """Return the cache sync state of every informer, keyed by resource name."""
        return {pipeline.name: pipeline.informer.has_synced() for pipeline in self._pipelines}

    def request_stop(self) -> None:
        """Request a cooperative stop and interrupt any open watch streams."""
        self._external_stop.set()
        for pipeline in self._pipelines:
            pipeline.informer.request_stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _informer_failed(self) -> bool:
        return any(pipeline.informer.failed.is_set() for pipeline in self._pipelines)

    def process_next_item(self, pipeline: WorkPipeline) -> bool:
        """Sync one key from *pipeline*'s queue.  Returns False once the queue is shut down."""
        key, shutdown = pipeline.queue.get()
        if shutdown:
            return False
        if key is None:
            return True

        started = time.monotonic()
        try:
            pipeline.sync(key)
        except SyncError as exc:
            METRICS.sync_errors_total.labels(queue=pipeline.name).inc()
            self.logger.error("Error syncing %s %r: %s; requeuing", pipeline.name, key, exc)
            pipeline.queue.add_rate_limited(key)
        except Exception:
            METRICS.sync_errors_total.labels(queue=pipeline.name).inc()
            self.logger.exception("Error syncing %s %r; requeuing", pipeline.name, key)
            pipeline.queue.add_rate_limited(key)
        else:
            pipeline.queue.forget(key)
        finally:
            METRICS.sync_duration_seconds.labels(queue=pipeline.name).observe(
                time.monotonic() - started
            )
            pipeline.queue.done(key)
        return True

    def _run_worker(self, pipeline: WorkPipeline) -> None:
        while self.process_next_item(pipeline):
            pass

    def _wait_for_cache_sync(self, stop: threading.Event) -> bool:
        self.logger.info("Waiting for informer caches to sync")
        while not self._should_stop(stop):
            if self._informer_failed():
                return False
            if all(pipeline.informer.has_synced() for pipeline in self._pipelines):
                return True
            stop.wait(timeout=0.1)
        return False

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Start informers, wait for their caches, then run workers until shutdown.

        Shutdown (signal, :meth:`request_stop`, or an informer denied by
        RBAC) stops new dequeues, lets in-flight syncs finish and joins the
        worker threads.  ``failed`` is set when an informer gave up.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        informer_stop = threading.Event()

        informer_threads = [
            threading.Thread(
                target=pipeline.informer.run,
                args=(informer_stop,),
                name=f"informer-{pipeline.name}",
                daemon=True,
            )
            for pipeline in self._pipelines
        ]
        for thread in informer_threads:
            thread.start()

        workers: list[threading.Thread] = []
        try:
            if not self._wait_for_cache_sync(stop):
                if self._informer_failed():
                    self.logger.error("Informer cache could not be synced; stopping")
                    self.failed.set()
                return

            self.ready.set()
            self.logger.info("Starting %d worker(s) per queue", self.worker_threads)
            for pipeline in self._pipelines:
                for index in range(self.worker_threads):
                    worker = threading.Thread(
                        target=self._run_worker,
                        args=(pipeline,),
                        name=f"{pipeline.name}-worker-{index}",
                        daemon=True,
                    )
                    worker.start()
                    workers.append(worker)
            self.logger.info("Started workers")

            while not self._should_stop(stop):
                if self._informer_failed():
                    self.logger.error("An informer stopped permanently; shutting down")
                    self.failed.set()
                    break
                stop.wait(timeout=1)
        finally:
            self.logger.info("Shutting down workers")
            self.ready.clear()
            informer_stop.set()
            for pipeline in self._pipelines:
                pipeline.queue.shut_down()
                pipeline.informer.request_stop()
            for worker in workers:
                worker.join()
            for thread in informer_threads:
                thread.join(timeout=5)


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def build_controller_from_env(core_api: CoreV1Api) -> ReplicationController:
    """Construct a :class:`ReplicationController` from environment variables.

    Environment variables (with defaults):
        ``WORKER_THREADS``: workers per work queue (``2``).
        ``RETRY_MAX_DELAY_SECONDS``: cap of the per-key retry backoff (``300``).
        ``WATCH_TIMEOUT_SECONDS``: server-side timeout of each watch stream (``300``).
    """
    worker_threads = env_int("WORKER_THREADS", 2, minimum=1)
    retry_max_delay_seconds = env_int("RETRY_MAX_DELAY_SECONDS", 300, minimum=1)
    watch_timeout_seconds = env_int("WATCH_TIMEOUT_SECONDS", 300, minimum=1)

    return ReplicationController(
        core_api=core_api,
        worker_threads=worker_threads,
        retry_max_delay_seconds=float(retry_max_delay_seconds),
        watch_timeout_seconds=watch_timeout_seconds,
    )
