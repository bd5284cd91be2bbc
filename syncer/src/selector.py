from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

SYNC_ANNOTATION = "konfig-syncer"


class SelectorError(ValueError):
    """Raised when a sync annotation value is not empty or a single ``key=value`` pair."""


@dataclass(frozen=True)
class Selector:
    """Namespace filter parsed from the sync annotation.

    ``key is None`` means the source replicates to every namespace.
    """

    key: str | None = None
    value: str = ""

    @property
    def matches_all(self) -> bool:
        return self.key is None

    def matches(self, labels: Mapping[str, str] | None) -> bool:
        if self.key is None:
            return True
        if not labels:
            return False
        return self.key in labels and labels[self.key] == self.value

    def __str__(self) -> str:
        if self.key is None:
            return ""
        return f"{self.key}={self.value}"


MATCH_ALL = Selector()


def parse_selector(raw: str | None) -> Selector:
    """Parse a sync annotation value into a :class:`Selector`.

    Only the empty string selects every namespace.  Anything else must
    contain exactly one ``=`` with a non-blank label key; key and value are
    taken verbatim, so a whitespace-only annotation is a parse error.
    """
    if raw is None or raw == "":
        return MATCH_ALL

    if raw.count("=") != 1:
        raise SelectorError(f"selector must be empty or a single key=value pair, got: {raw!r}")

    key, value = raw.split("=", 1)
    if not key.strip():
        raise SelectorError(f"selector label key must not be empty, got: {raw!r}")
    return Selector(key=key, value=value)


def sync_selector_value(obj: Any) -> str | None:
    """Return the raw sync annotation of *obj*, or ``None`` when it is not annotated."""
    metadata = getattr(obj, "metadata", None)
    annotations = getattr(metadata, "annotations", None) or {}
    if SYNC_ANNOTATION not in annotations:
        return None
    value = annotations[SYNC_ANNOTATION]
    return "" if value is None else str(value)


def namespace_labels(namespace: Any) -> dict[str, str]:
    metadata = getattr(namespace, "metadata", None)
    labels = getattr(metadata, "labels", None)
    if not isinstance(labels, dict):
        return {}
    return {k: ("" if v is None else str(v)) for k, v in labels.items()}


def is_terminating(namespace: Any) -> bool:
    status = getattr(namespace, "status", None)
    return getattr(status, "phase", None) == "Terminating"


def resolve_namespaces(selector: Selector, namespaces: Iterable[Any]) -> set[str]:
    """Return the names of *namespaces* whose labels satisfy *selector*.

    Terminating namespaces never receive copies and are left out.
    """
    matched: set[str] = set()
    for namespace in namespaces:
        name = getattr(getattr(namespace, "metadata", None), "name", None)
        if not name or is_terminating(namespace):
            continue
        if selector.matches(namespace_labels(namespace)):
            matched.add(name)
    return matched
