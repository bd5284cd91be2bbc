from __future__ import annotations

from collections.abc import Callable
from typing import Any

from kubernetes.client import CoreV1Api, V1ConfigMap, V1DeleteOptions, V1ObjectMeta, V1Secret

from syncer.src.provenance import PROVENANCE_ANNOTATION, ProvenanceRecord, encode_provenance
from syncer.src.selector import SYNC_ANNOTATION

# Annotations that describe the source object itself and must not follow it.
NON_REPLICATED_ANNOTATIONS = frozenset(
    {SYNC_ANNOTATION, "kubectl.kubernetes.io/last-applied-configuration"}
)


def _normalize_map(raw: Any) -> dict[str, str]:
    """Coerce a ``data``-style field into a stable ``dict[str, str]``.

    ``None`` and non-dict values become an empty mapping so that a missing
    field and an empty one compare equal.
    """
    if not isinstance(raw, dict):
        return {}
    return {k: ("" if v is None else str(v)) for k, v in raw.items() if isinstance(k, str)}


def copy_metadata(source: Any, target_namespace: str, provenance: ProvenanceRecord) -> V1ObjectMeta:
    """Metadata for a copy of *source*: name, labels and annotations only.

    Identity and cluster-assigned fields (uid, resourceVersion,
    creationTimestamp, managedFields, ownerReferences, finalizers) are left
    unset so the API server assigns fresh ones.
    """
    metadata = source.metadata
    annotations = {
        k: v
        for k, v in (metadata.annotations or {}).items()
        if k not in NON_REPLICATED_ANNOTATIONS
    }
    annotations[PROVENANCE_ANNOTATION] = encode_provenance(provenance)
    return V1ObjectMeta(
        name=metadata.name,
        namespace=target_namespace,
        labels=dict(metadata.labels) if metadata.labels else None,
        annotations=annotations,
    )


class ReplicatedKind:
    """CRUD adapter for one replicated resource kind on ``CoreV1Api``.

    Subclasses bind the kind-specific API methods and define which fields
    make up the replicated payload.
    """

    kind = ""
    resource = ""

    def __init__(self, core_api: CoreV1Api) -> None:
        self.core_api = core_api

    @property
    def list_fn(self) -> Callable[..., Any]:
        """The bound ``list_*_for_all_namespaces`` API method.

        Returned as is because ``kubernetes.watch.Watch`` reads the return type
        from the method docstring to deserialize watch events.
        """
        raise NotImplementedError

    def read(self, namespace: str, name: str) -> Any:
        raise NotImplementedError

    def create(self, namespace: str, body: Any) -> Any:
        raise NotImplementedError

    def replace(self, namespace: str, name: str, body: Any) -> Any:
        raise NotImplementedError

    def delete(self, namespace: str, name: str) -> Any:
        raise NotImplementedError

    def payload(self, obj: Any) -> dict[str, Any]:
        raise NotImplementedError

    def build_copy(self, source: Any, target_namespace: str, provenance: ProvenanceRecord) -> Any:
        raise NotImplementedError

    def payload_equal(self, left: Any, right: Any) -> bool:
        return self.payload(left) == self.payload(right)

    def needs_recreate(self, existing: Any, candidate: Any) -> bool:
        """Whether *existing* cannot be replaced in place by *candidate*.

        The API server rejects data changes on an object marked immutable,
        as well as clearing the mark.
        """
        if not getattr(existing, "immutable", None):
            return False
        return not getattr(candidate, "immutable", None) or not self.payload_equal(
            existing, candidate
        )


class ConfigMapKind(ReplicatedKind):
    kind = "ConfigMap"
    resource = "configmaps"

    @property
    def list_fn(self) -> Callable[..., Any]:
        return self.core_api.list_config_map_for_all_namespaces

    def read(self, namespace: str, name: str) -> Any:
        return self.core_api.read_namespaced_config_map(name=name, namespace=namespace)

    def create(self, namespace: str, body: Any) -> Any:
        return self.core_api.create_namespaced_config_map(namespace=namespace, body=body)

    def replace(self, namespace: str, name: str, body: Any) -> Any:
        return self.core_api.replace_namespaced_config_map(
            name=name, namespace=namespace, body=body
        )

    def delete(self, namespace: str, name: str) -> Any:
        return self.core_api.delete_namespaced_config_map(
            name=name, namespace=namespace, body=V1DeleteOptions()
        )

    def payload(self, obj: Any) -> dict[str, Any]:
        return {
            "data": _normalize_map(getattr(obj, "data", None)),
            "binary_data": _normalize_map(getattr(obj, "binary_data", None)),
        }

    def build_copy(self, source: Any, target_namespace: str, provenance: ProvenanceRecord) -> Any:
        return V1ConfigMap(
            api_version="v1",
            kind="ConfigMap",
            metadata=copy_metadata(source, target_namespace, provenance),
            data=dict(source.data) if source.data else None,
            binary_data=dict(source.binary_data) if source.binary_data else None,
            immutable=source.immutable,
        )


class SecretKind(ReplicatedKind):
    kind = "Secret"
    resource = "secrets"

    @property
    def list_fn(self) -> Callable[..., Any]:
        return self.core_api.list_secret_for_all_namespaces

    def read(self, namespace: str, name: str) -> Any:
        return self.core_api.read_namespaced_secret(name=name, namespace=namespace)

    def create(self, namespace: str, body: Any) -> Any:
        return self.core_api.create_namespaced_secret(namespace=namespace, body=body)

    def replace(self, namespace: str, name: str, body: Any) -> Any:
        return self.core_api.replace_namespaced_secret(name=name, namespace=namespace, body=body)

    def delete(self, namespace: str, name: str) -> Any:
        return self.core_api.delete_namespaced_secret(
            name=name, namespace=namespace, body=V1DeleteOptions()
        )

    def payload(self, obj: Any) -> dict[str, Any]:
        return {"data": _normalize_map(getattr(obj, "data", None))}

    def needs_recreate(self, existing: Any, candidate: Any) -> bool:
        # A Secret's type is fixed at creation.
        if (existing.type or "Opaque") != (candidate.type or "Opaque"):
            return True
        return super().needs_recreate(existing, candidate)

    def build_copy(self, source: Any, target_namespace: str, provenance: ProvenanceRecord) -> Any:
        return V1Secret(
            api_version="v1",
            kind="Secret",
            metadata=copy_metadata(source, target_namespace, provenance),
            data=dict(source.data) if source.data else None,
            type=source.type,
            immutable=source.immutable,
        )
