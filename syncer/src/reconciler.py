from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from kubernetes.client import ApiException

from syncer.src.informer import ObjectStore
from syncer.src.kube import is_conflict, is_not_found, split_key
from syncer.src.metrics import METRICS
from syncer.src.provenance import (
    ProvenanceError,
    ProvenanceRecord,
    provenance_for,
    read_provenance,
    utc_now_rfc3339,
)
from syncer.src.resources import ReplicatedKind
from syncer.src.selector import (
    Selector,
    SelectorError,
    is_terminating,
    namespace_labels,
    parse_selector,
    resolve_namespaces,
    sync_selector_value,
)
from syncer.src.tracker import DeletionTracker, TrackedSource


class SyncError(RuntimeError):
    """Raised when a reconciliation finished with failures and the key must be retried."""


@dataclass
class SyncResult:
    """Outcome of one reconciliation pass.

    ``failed`` lists the namespaces whose create/update/delete call failed.
    Callers only see a result when ``failed`` is empty; otherwise a
    :class:`SyncError` carrying the result is raised.
    """

    kind: str
    key: str
    created: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0
    failed: list[str] = field(default_factory=list)


class ReplicationReconciler:
    """Converges the copies of ConfigMap or Secret sources to their selectors.

    ``sources`` is the informer cache for the replicated kind (sources and
    copies alike), ``namespaces`` the namespace cache.  Writes go through
    the :class:`ReplicatedKind` adapter; reads come from the caches.

    A sync of ``namespace/name`` runs in this order:

    1. compute the desired target namespaces from the live source, if any;
    2. clean up copies recorded by the :class:`DeletionTracker` for
       selectors that are no longer in effect, skipping namespaces that are
       still targeted (those are refreshed in place instead);
    3. create, update, or leave alone the copy in every target namespace.

    Per-namespace API failures are logged and do not stop the loop; the sync
    then raises :class:`SyncError` so the work queue retries the key.
    Already converged namespaces are not written again on the retry.
    """

    def __init__(
        self,
        kind: ReplicatedKind,
        sources: ObjectStore,
        namespaces: ObjectStore,
        tracker: DeletionTracker,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.kind = kind
        self.sources = sources
        self.namespaces = namespaces
        self.tracker = tracker
        self.logger = logger or logging.getLogger(__name__)
        self.now_fn = now_fn

    def _desired_targets(self, source: Any) -> tuple[Selector, set[str]] | None:
        """Return the selector and target namespaces of *source*, or ``None`` when it has none.

        A malformed selector is logged and treated as "nothing to replicate";
        retrying cannot fix it, the next edit of the annotation will.
        """
        raw = sync_selector_value(source)
        if raw is None:
            return None
        try:
            selector = parse_selector(raw)
        except SelectorError as exc:
            METRICS.invalid_annotations_total.labels(kind=self.kind.kind, annotation="selector").inc()
            self.logger.warning(
                "Ignoring %s %s/%s with invalid sync annotation: %s",
                self.kind.kind,
                source.metadata.namespace,
                source.metadata.name,
                exc,
            )
            return None
        targets = resolve_namespaces(selector, self.namespaces.list())
        targets.discard(source.metadata.namespace)
        return selector, targets

    def _is_copy_of(self, obj: Any, source_namespace: str, name: str) -> bool:
        try:
            record = read_provenance(obj)
        except ProvenanceError as exc:
            METRICS.invalid_annotations_total.labels(
                kind=self.kind.kind, annotation="provenance"
            ).inc()
            self.logger.warning(
                "Leaving %s %s/%s untouched, provenance is unreadable: %s",
                self.kind.kind,
                obj.metadata.namespace,
                obj.metadata.name,
                exc,
            )
            return False
        if record is None:
            return False
        return record.namespace == source_namespace and record.name in {"", name}

    def _delete_copy(self, namespace: str, name: str, result: SyncResult) -> bool:
        """Delete one copy; an already absent copy counts as deleted."""
        try:
            self.kind.delete(namespace, name)
        except ApiException as exc:
            if is_not_found(exc):
                self.logger.debug(
                    "%s %s/%s already gone", self.kind.kind, namespace, name
                )
                return True
            METRICS.write_errors_total.labels(kind=self.kind.kind, operation="delete").inc()
            self.logger.exception(
                "Failed to delete %s %s in namespace %s", self.kind.kind, name, namespace
            )
            result.failed.append(namespace)
            return False

        result.deleted += 1
        METRICS.copies_deleted_total.labels(kind=self.kind.kind).inc()
        self.logger.info("Deleted %s %s in namespace %s", self.kind.kind, name, namespace)
        return True

    def _cleanup(self, key: str, still_targeted: set[str], result: SyncResult) -> None:
        """Remove copies made under selectors recorded in the tracker.

        Namespaces in *still_targeted* are left to the converge step, which
        rewrites their copies in place.
        """
        snapshots = self.tracker.pop(key)
        if not snapshots:
            return

        removed: set[str] = set()
        failed_before = len(result.failed)
        for snapshot in snapshots:
            removed |= self._cleanup_snapshot(snapshot, still_targeted, removed, result)

        if len(result.failed) > failed_before:
            # Retried syncs must still know which copies to remove.
            self.tracker.restore(key, snapshots)

    def _cleanup_snapshot(
        self,
        snapshot: TrackedSource,
        still_targeted: set[str],
        already_removed: set[str],
        result: SyncResult,
    ) -> set[str]:
        try:
            selector = parse_selector(snapshot.selector)
        except SelectorError:
            # Nothing was ever replicated under a malformed selector.
            self.logger.debug(
                "Skipping cleanup for invalid previous selector %r of %s/%s",
                snapshot.selector,
                snapshot.namespace,
                snapshot.name,
            )
            return set()

        self.logger.debug(
            "Cleaning up %s copies of %s/%s made for selector %r",
            self.kind.kind,
            snapshot.namespace,
            snapshot.name,
            snapshot.selector,
        )
        removed: set[str] = set()
        for namespace in sorted(resolve_namespaces(selector, self.namespaces.list())):
            if namespace == snapshot.namespace:
                continue
            if namespace in still_targeted or namespace in already_removed:
                continue
            existing = self.sources.get(f"{namespace}/{snapshot.name}")
            if existing is not None and not self._is_copy_of(
                existing, snapshot.namespace, snapshot.name
            ):
                self.logger.info(
                    "Not deleting %s %s in namespace %s, it is not a copy of %s/%s",
                    self.kind.kind,
                    snapshot.name,
                    namespace,
                    snapshot.namespace,
                    snapshot.name,
                )
                continue
            if self._delete_copy(namespace, snapshot.name, result):
                removed.add(namespace)
        return removed

    def _converge_namespace(
        self,
        source: Any,
        namespace: str,
        provenance: ProvenanceRecord,
        existing: Any | None,
        result: SyncResult,
    ) -> None:
        name = source.metadata.name
        candidate = self.kind.build_copy(source, namespace, provenance)

        if existing is None:
            try:
                self.kind.create(namespace, candidate)
            except ApiException as exc:
                if not is_conflict(exc):
                    raise
                # The cache lagged behind; fall through to the update path.
                existing = self.kind.read(namespace, name)
            else:
                result.created += 1
                METRICS.copies_created_total.labels(kind=self.kind.kind).inc()
                self.logger.info("Created %s %s in namespace %s", self.kind.kind, name, namespace)
                return

        if sync_selector_value(existing) is not None:
            self.logger.warning(
                "Not overwriting %s %s in namespace %s, it is itself a replication source",
                self.kind.kind,
                name,
                namespace,
            )
            return

        if self.kind.needs_recreate(existing, candidate):
            self.logger.info(
                "Recreating %s %s in namespace %s, its immutable fields differ",
                self.kind.kind,
                name,
                namespace,
            )
            try:
                self.kind.delete(namespace, name)
            except ApiException as exc:
                if not is_not_found(exc):
                    raise
            self.kind.create(namespace, candidate)
            result.updated += 1
            METRICS.copies_updated_total.labels(kind=self.kind.kind).inc()
            return

        if self.kind.payload_equal(existing, candidate) and self._recorded_selector(
            existing
        ) == provenance.selector:
            result.unchanged += 1
            METRICS.writes_suppressed_total.labels(kind=self.kind.kind).inc()
            self.logger.debug(
                "%s %s in namespace %s is up to date", self.kind.kind, name, namespace
            )
            return

        candidate.metadata.resource_version = existing.metadata.resource_version
        candidate.metadata.uid = existing.metadata.uid
        self.kind.replace(namespace, name, candidate)
        result.updated += 1
        METRICS.copies_updated_total.labels(kind=self.kind.kind).inc()
        self.logger.info("Updated %s %s in namespace %s", self.kind.kind, name, namespace)

    @staticmethod
    def _recorded_selector(obj: Any) -> str | None:
        try:
            record = read_provenance(obj)
        except ProvenanceError:
            return None
        return None if record is None else record.selector

    def sync(self, key: str) -> SyncResult:
        """Reconcile the source identified by ``namespace/name``.

        Raises :class:`SyncError` when any namespace failed; invalid keys and
        malformed selectors are logged and return without error.
        """
        result = SyncResult(kind=self.kind.kind, key=key)
        try:
            namespace, name = split_key(key)
        except ValueError:
            self.logger.error("Dropping invalid %s key %r", self.kind.kind, key)
            return result

        source = self.sources.get(key)
        desired = self._desired_targets(source) if source is not None else None
        targets = desired[1] if desired is not None else set()

        self._cleanup(key, targets, result)

        if source is None:
            self.logger.debug("%s %s no longer exists", self.kind.kind, key)
        elif desired is None:
            self.logger.debug("%s %s is not replicated", self.kind.kind, key)
        else:
            provenance = provenance_for(source, self.now_fn())
            for target in sorted(targets):
                existing = self.sources.get(f"{target}/{name}")
                try:
                    self._converge_namespace(source, target, provenance, existing, result)
                except ApiException:
                    METRICS.write_errors_total.labels(
                        kind=self.kind.kind, operation="write"
                    ).inc()
                    self.logger.exception(
                        "Failed to replicate %s %s to namespace %s", self.kind.kind, key, target
                    )
                    result.failed.append(target)

        if result.failed:
            raise SyncError(
                f"{self.kind.kind} {key}: failed in namespaces {', '.join(sorted(set(result.failed)))}"
            )
        return result

    def sync_namespace(self, namespace: str, labels: Mapping[str, str]) -> SyncResult:
        """Re-evaluate every source against one namespace with the given labels.

        Creates missing copies for sources whose selector now matches and
        deletes copies in the namespace whose recorded selector no longer
        matches, or whose source is gone or no longer annotated.
        """
        result = SyncResult(kind=self.kind.kind, key=namespace)

        for source in self.sources.list():
            if source.metadata.namespace == namespace:
                continue
            raw = sync_selector_value(source)
            if raw is None:
                continue
            try:
                selector = parse_selector(raw)
            except SelectorError as exc:
                self.logger.warning(
                    "Ignoring %s %s/%s with invalid sync annotation: %s",
                    self.kind.kind,
                    source.metadata.namespace,
                    source.metadata.name,
                    exc,
                )
                continue
            if not selector.matches(labels):
                continue
            name = source.metadata.name
            if self.sources.get(f"{namespace}/{name}") is not None:
                continue

            copy = self.kind.build_copy(
                source, namespace, provenance_for(source, self.now_fn())
            )
            try:
                self.kind.create(namespace, copy)
            except ApiException as exc:
                if is_conflict(exc):
                    self.logger.debug(
                        "%s %s already exists in namespace %s", self.kind.kind, name, namespace
                    )
                    continue
                METRICS.write_errors_total.labels(kind=self.kind.kind, operation="create").inc()
                self.logger.exception(
                    "Failed to create %s %s in namespace %s", self.kind.kind, name, namespace
                )
                result.failed.append(namespace)
                continue
            result.created += 1
            METRICS.copies_created_total.labels(kind=self.kind.kind).inc()
            self.logger.info("Created %s %s in namespace %s", self.kind.kind, name, namespace)

        for obj in self.sources.list_namespace(namespace):
            reason = self._orphan_reason(obj, labels)
            if reason is None:
                continue
            self.logger.info(
                "%s %s in namespace %s is orphaned (%s)",
                self.kind.kind,
                obj.metadata.name,
                namespace,
                reason,
            )
            self._delete_copy(namespace, obj.metadata.name, result)

        if result.failed:
            raise SyncError(f"{self.kind.kind} copies in namespace {namespace} failed to converge")
        return result

    def _orphan_reason(self, obj: Any, labels: Mapping[str, str]) -> str | None:
        if sync_selector_value(obj) is not None:
            return None
        try:
            record = read_provenance(obj)
        except ProvenanceError as exc:
            METRICS.invalid_annotations_total.labels(
                kind=self.kind.kind, annotation="provenance"
            ).inc()
            self.logger.warning(
                "Leaving %s %s/%s untouched, provenance is unreadable: %s",
                self.kind.kind,
                obj.metadata.namespace,
                obj.metadata.name,
                exc,
            )
            return None
        if record is None or not record.namespace:
            return None

        if not record.parsed_selector().matches(labels):
            return f"selector {record.selector!r} no longer matches"

        source = self.sources.get(f"{record.namespace}/{record.name or obj.metadata.name}")
        if source is None:
            return "source no longer exists"
        if sync_selector_value(source) is None:
            return "source is no longer replicated"
        return None


class NamespaceReconciler:
    """Re-evaluates copy membership of one namespace for every replicated kind.

    The per-kind passes run concurrently and are joined; a failure in any of
    them raises :class:`SyncError` so the namespace key is retried.
    """

    def __init__(
        self,
        reconcilers: list[ReplicationReconciler],
        namespaces: ObjectStore,
        logger: logging.Logger | None = None,
    ) -> None:
        self.reconcilers = reconcilers
        self.namespaces = namespaces
        self.logger = logger or logging.getLogger(__name__)

    def sync(self, key: str) -> list[SyncResult]:
        namespace = self.namespaces.get(key)
        if namespace is None:
            self.logger.debug("Namespace %s no longer exists", key)
            return []
        if is_terminating(namespace):
            self.logger.debug("Namespace %s is terminating", key)
            return []

        self.logger.info("Syncing namespace %s", key)
        labels = namespace_labels(namespace)
        results: list[SyncResult] = []
        errors: list[str] = []
        with ThreadPoolExecutor(
            max_workers=max(1, len(self.reconcilers)),
            thread_name_prefix=f"namespace-{key}",
        ) as executor:
            futures = [
                (reconciler.kind.kind, executor.submit(reconciler.sync_namespace, key, labels))
                for reconciler in self.reconcilers
            ]
            for kind, future in futures:
                try:
                    results.append(future.result())
                except Exception as exc:
                    self.logger.error("%s sync for namespace %s failed: %s", kind, key, exc)
                    errors.append(str(exc))

        if errors:
            raise SyncError("; ".join(errors))
        return results
