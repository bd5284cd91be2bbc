from __future__ import annotations

import json
import re

import pytest

from syncer.src.provenance import (
    PROVENANCE_ANNOTATION,
    ProvenanceError,
    ProvenanceRecord,
    decode_provenance,
    encode_provenance,
    provenance_for,
    read_provenance,
    utc_now_rfc3339,
)
from syncer.src.selector import MATCH_ALL, Selector
from syncer.tests.fakes import make_config_map


def test_annotation_key_derives_from_sync_annotation() -> None:
    assert PROVENANCE_ANNOTATION == "konfig-syncer-metadata"


def test_provenance_for_captures_source_identity() -> None:
    source = make_config_map("src", selector="tier=prod", resource_version="42", uid="abc")

    record = provenance_for(source, "2026-01-01T00:00:00Z")

    assert record == ProvenanceRecord(
        namespace="src",
        name="app-config",
        uid="abc",
        resource_version="42",
        selector="tier=prod",
        last_update="2026-01-01T00:00:00Z",
    )
    assert record.parsed_selector() == Selector(key="tier", value="prod")


def test_encoded_field_names() -> None:
    record = ProvenanceRecord("src", "app-config", "abc", "42", "tier=prod", "2026-01-01T00:00:00Z")

    payload = json.loads(encode_provenance(record))

    assert payload == {
        "namespace": "src",
        "name": "app-config",
        "uid": "abc",
        "resourceVersion": "42",
        "label": "tier=prod",
        "last-update": "2026-01-01T00:00:00Z",
    }
    assert decode_provenance(encode_provenance(record)) == record


def test_missing_label_decodes_as_match_all() -> None:
    record = decode_provenance('{"namespace": "src", "name": "app-config"}')

    assert record.selector == ""
    assert record.parsed_selector() is MATCH_ALL
    assert record.uid == ""


@pytest.mark.parametrize(
    "value",
    [
        None,
        "not-json",
        "[1, 2]",
        '{"namespace": 3}',
        '{"namespace": "src", "label": "a=b=c"}',
    ],
)
def test_invalid_provenance_is_rejected(value: str | None) -> None:
    with pytest.raises(ProvenanceError):
        decode_provenance(value)


def test_read_provenance_returns_none_without_annotation() -> None:
    assert read_provenance(make_config_map("a")) is None


def test_read_provenance_decodes_annotation() -> None:
    record = ProvenanceRecord("src", "app-config", "abc", "1", "", "2026-01-01T00:00:00Z")
    obj = make_config_map("a", annotations={PROVENANCE_ANNOTATION: encode_provenance(record)})

    assert read_provenance(obj) == record


def test_utc_now_is_rfc3339_without_fraction() -> None:
    assert re.fullmatch(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z", utc_now_rfc3339())
