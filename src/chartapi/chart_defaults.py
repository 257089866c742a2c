from __future__ import annotations

from .chart_contract import ChartV1, GraphDocumentV1, new_document_id

INITIAL_CHART_VERSION = "1.0"


def default_graph_document(owner: str) -> GraphDocumentV1:
    return GraphDocumentV1.model_validate({"owner": owner, "nodes": [], "links": []})


def new_chart_document(
    *,
    owner: str,
    name: str,
    description: str,
    graph_id: str,
    **editable,
) -> ChartV1:
    return ChartV1.model_validate(
        {
            "chartId": new_document_id(),
            "owner": owner,
            "name": name,
            "description": description,
            "graphId": graph_id,
            "version": INITIAL_CHART_VERSION,
            **editable,
        }
    )
