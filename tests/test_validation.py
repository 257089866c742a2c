from __future__ import annotations

import pytest
from pydantic import ValidationError

from chartapi.chart_contract import (
    ChartV1,
    GraphDocumentV1,
    HistoryEntryV1,
    new_document_id,
    normalize_resource_refs,
    utcnow,
)
from chartapi.chart_store import ChartStoreError
from chartapi.validation import (
    check_graph_integrity,
    require_document_id,
    require_user_id,
    require_version,
    validate_graph_document,
)
from payloads import graph_payload


def test_valid_graph_passes_both_stages() -> None:
    graph = validate_graph_document(graph_payload())

    assert isinstance(graph, GraphDocumentV1)
    assert check_graph_integrity(graph) == []


def test_schema_errors_are_reported_per_field() -> None:
    with pytest.raises(ChartStoreError) as exc:
        validate_graph_document({"nodes": [{"nodeId": "a", "images": "not-a-list"}], "color": "red"})

    assert exc.value.status_code == 400
    assert exc.value.code == "INVALID_GRAPH"
    fields = {error["field"] for error in exc.value.details["errors"]}
    assert "nodes.0.images" in fields
    assert "color" in fields


def test_integrity_errors_collect_every_problem() -> None:
    payload = graph_payload(
        nodes=[{"nodeId": "a"}, {"nodeId": "a"}, {"nodeId": "b"}],
        links=[
            {"source": "a", "target": "b"},
            {"source": "a", "target": "b"},
            {"source": "b", "target": "b"},
            {"source": "ghost", "target": "a"},
        ],
    )
    graph = GraphDocumentV1.model_validate(payload)

    errors = check_graph_integrity(graph)

    assert [error["field"] for error in errors] == [
        "nodes.1.nodeId",
        "links.1",
        "links.2",
        "links.3.source",
    ]
    with pytest.raises(ChartStoreError) as exc:
        validate_graph_document(payload)
    assert exc.value.details["errors"] == errors


def test_identifier_and_version_checks() -> None:
    generated = new_document_id()
    assert require_document_id(generated, "chartId") == generated
    assert require_version("2.3.1") == "2.3.1"
    assert require_user_id("  u1 ") == "u1"

    for bad_id in ("", "short", "0" * 17, None):
        with pytest.raises(ChartStoreError) as id_exc:
            require_document_id(bad_id, "chartId")
        assert id_exc.value.code == "INVALID_IDENTIFIER"

    for bad_version in ("1", "v1.0", "1.0-beta", "", None):
        with pytest.raises(ChartStoreError) as version_exc:
            require_version(bad_version)
        assert version_exc.value.code == "INVALID_VERSION"


def test_history_entries_are_immutable() -> None:
    entry = HistoryEntryV1(version="1.0", graphId="g1", userId="u1", date=utcnow())

    with pytest.raises(ValidationError):
        entry.version = "2.0"


def test_chart_rejects_bad_version_and_normalizes_editors() -> None:
    chart = ChartV1.model_validate(
        {
            "chartId": "c1",
            "owner": "u1",
            "name": "  Named  ",
            "graphId": "g1",
            "version": "1.0",
            "editors": ["u2", "u2 ", "u3"],
        }
    )
    assert chart.name == "Named"
    assert chart.editors == ["u2", "u3"]

    with pytest.raises(ValueError):
        ChartV1.model_validate({"chartId": "c1", "owner": "u1", "name": "x", "graphId": "g1", "version": "1"})


def test_normalize_resource_refs() -> None:
    assert normalize_resource_refs([" a/ ", "a", "", "b//", "  "]) == ["a", "b/"]
