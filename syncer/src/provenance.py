from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from syncer.src.selector import SYNC_ANNOTATION, Selector, SelectorError, parse_selector

PROVENANCE_ANNOTATION = f"{SYNC_ANNOTATION}-metadata"


class ProvenanceError(ValueError):
    """Raised when a provenance annotation cannot be decoded."""


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class ProvenanceRecord:
    """Origin of a copy, stored on the copy under :data:`PROVENANCE_ANNOTATION`.

    ``selector`` is the sync annotation value that was in effect when the
    copy was last written.  Namespace reconciliation compares it against the
    current namespace labels to find copies that no longer belong.
    """

    namespace: str
    name: str
    uid: str
    resource_version: str
    selector: str
    last_update: str

    def parsed_selector(self) -> Selector:
        return parse_selector(self.selector)


def provenance_for(source: Any, now: str) -> ProvenanceRecord:
    """Build the provenance record for a copy of the live *source* object."""
    metadata = source.metadata
    annotations = metadata.annotations or {}
    return ProvenanceRecord(
        namespace=metadata.namespace or "",
        name=metadata.name or "",
        uid=metadata.uid or "",
        resource_version=metadata.resource_version or "",
        selector=annotations.get(SYNC_ANNOTATION) or "",
        last_update=now,
    )


def encode_provenance(record: ProvenanceRecord) -> str:
    payload = {
        "namespace": record.namespace,
        "name": record.name,
        "uid": record.uid,
        "resourceVersion": record.resource_version,
        "label": record.selector,
        "last-update": record.last_update,
    }
    return json.dumps(payload, separators=(",", ":"))


def decode_provenance(value: str | None) -> ProvenanceRecord:
    """Decode a provenance annotation value.

    A missing ``label`` field decodes as the match-all selector.  The recorded
    selector is validated here so callers never handle a malformed one.
    """
    if value is None:
        raise ProvenanceError("provenance annotation is empty")
    try:
        payload = json.loads(value)
    except ValueError as exc:
        raise ProvenanceError(f"provenance annotation is not valid JSON: {value!r}") from exc
    if not isinstance(payload, dict):
        raise ProvenanceError(f"provenance annotation must be a JSON object, got: {value!r}")

    fields: dict[str, str] = {}
    for key in ("namespace", "name", "uid", "resourceVersion", "label", "last-update"):
        raw = payload.get(key, "")
        if raw is None:
            raw = ""
        if not isinstance(raw, str):
            raise ProvenanceError(f"provenance field {key!r} must be a string, got: {raw!r}")
        fields[key] = raw

    try:
        parse_selector(fields["label"])
    except SelectorError as exc:
        raise ProvenanceError(f"provenance records an invalid selector: {exc}") from exc

    return ProvenanceRecord(
        namespace=fields["namespace"],
        name=fields["name"],
        uid=fields["uid"],
        resource_version=fields["resourceVersion"],
        selector=fields["label"],
        last_update=fields["last-update"],
    )


def read_provenance(obj: Any) -> ProvenanceRecord | None:
    """Return the decoded provenance of *obj*, or ``None`` when it carries none.

    Raises :class:`ProvenanceError` when the annotation is present but invalid.
    """
    annotations = getattr(getattr(obj, "metadata", None), "annotations", None) or {}
    if PROVENANCE_ANNOTATION not in annotations:
        return None
    return decode_provenance(annotations[PROVENANCE_ANNOTATION])
