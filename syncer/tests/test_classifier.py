from __future__ import annotations

from collections.abc import Callable
from typing import Any
from unittest.mock import MagicMock

import pytest

from syncer.src.classifier import NamespaceEventClassifier, SourceEventClassifier
from syncer.src.resources import ConfigMapKind, SecretKind
from syncer.src.tracker import DeletionTracker
from syncer.src.workqueue import RateLimitingQueue
from syncer.tests.fakes import make_config_map, make_namespace, make_secret


def _classifier(kind_cls: type = ConfigMapKind) -> tuple[SourceEventClassifier, RateLimitingQueue, DeletionTracker]:
    queue = RateLimitingQueue("test")
    kind = kind_cls(MagicMock())
    tracker = DeletionTracker(kind.kind)
    return SourceEventClassifier(kind, queue, tracker), queue, tracker


def _drain(queue: RateLimitingQueue) -> list[str]:
    keys = []
    while True:
        key, _ = queue.get(timeout=0)
        if key is None:
            return keys
        keys.append(key)
        queue.done(key)


def test_add_enqueues_only_annotated_objects() -> None:
    classifier, queue, _ = _classifier()

    classifier.on_add(make_config_map("src", name="plain"))
    classifier.on_add(make_config_map("src", selector=""))

    assert _drain(queue) == ["src/app-config"]


def test_data_change_enqueues_without_tracking() -> None:
    classifier, queue, tracker = _classifier()
    old = make_config_map("src", selector="tier=prod")
    new = make_config_map("src", selector="tier=prod", data={"MESSAGE": "v2"}, resource_version="2")

    classifier.on_update(old, new)

    assert _drain(queue) == ["src/app-config"]
    assert len(tracker) == 0


def test_metadata_only_change_is_ignored() -> None:
    classifier, queue, tracker = _classifier()
    old = make_config_map("src", selector="tier=prod")
    new = make_config_map(
        "src", selector="tier=prod", annotations={"owner": "x"}, resource_version="2"
    )

    classifier.on_update(old, new)

    assert _drain(queue) == []
    assert len(tracker) == 0


def test_gaining_the_annotation_enqueues() -> None:
    classifier, queue, tracker = _classifier()

    classifier.on_update(make_config_map("src"), make_config_map("src", selector=""))

    assert _drain(queue) == ["src/app-config"]
    assert len(tracker) == 0


def test_selector_change_records_old_and_enqueues_even_with_data_change() -> None:
    classifier, queue, tracker = _classifier()
    old = make_config_map("src", selector="tier=prod")
    new = make_config_map("src", selector="tier=dev", data={"MESSAGE": "v2"}, resource_version="2")

    classifier.on_update(old, new)

    assert _drain(queue) == ["src/app-config"]
    assert [entry.selector for entry in tracker.pop("src/app-config")] == ["tier=prod"]


@pytest.mark.parametrize(
    ("kind_cls", "make", "key"),
    [
        (ConfigMapKind, make_config_map, "src/app-config"),
        (SecretKind, make_secret, "src/app-secret"),
    ],
    ids=["configmap", "secret"],
)
def test_annotation_removal_records_old_and_enqueues(
    kind_cls: type, make: Callable[..., Any], key: str
) -> None:
    classifier, queue, tracker = _classifier(kind_cls)
    old = make("src", selector="tier=prod")
    new = make("src", resource_version="2")

    classifier.on_update(old, new)

    assert _drain(queue) == [key]
    assert tracker.kind == kind_cls.kind
    assert [entry.selector for entry in tracker.pop(key)] == ["tier=prod"]


def test_unannotated_updates_are_ignored() -> None:
    classifier, queue, _ = _classifier()

    classifier.on_update(
        make_config_map("src"),
        make_config_map("src", data={"MESSAGE": "v2"}, resource_version="2"),
    )

    assert _drain(queue) == []


def test_delete_of_source_records_and_enqueues() -> None:
    classifier, queue, tracker = _classifier()

    classifier.on_delete(make_config_map("src", name="plain"))
    classifier.on_delete(make_config_map("src", selector="tier=prod"))

    assert _drain(queue) == ["src/app-config"]
    assert "src/app-config" in tracker


def test_namespace_add_always_enqueues() -> None:
    queue = RateLimitingQueue("namespaces")
    NamespaceEventClassifier(queue).on_add(make_namespace("a"))

    assert _drain(queue) == ["a"]


def test_namespace_update_enqueues_only_on_label_change() -> None:
    queue = RateLimitingQueue("namespaces")
    classifier = NamespaceEventClassifier(queue)

    classifier.on_update(
        make_namespace("a", {"tier": "prod"}), make_namespace("a", {"tier": "prod"}, resource_version="2")
    )
    assert _drain(queue) == []

    classifier.on_update(
        make_namespace("a", {"tier": "prod"}), make_namespace("a", {"tier": "dev"}, resource_version="3")
    )
    assert _drain(queue) == ["a"]


def test_namespace_update_ignored_while_terminating() -> None:
    queue = RateLimitingQueue("namespaces")
    classifier = NamespaceEventClassifier(queue)

    classifier.on_update(
        make_namespace("a", {"tier": "prod"}),
        make_namespace("a", {"tier": "dev"}, phase="Terminating", resource_version="2"),
    )

    assert _drain(queue) == []


def test_namespace_handlers_ignore_deletes() -> None:
    handlers = NamespaceEventClassifier(RateLimitingQueue("namespaces")).handlers()

    assert handlers.on_delete is None
