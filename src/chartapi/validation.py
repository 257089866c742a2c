"""Validation pipeline for documents entering the chart store.

Shape validation runs first through the pydantic contracts; domain integrity
checks run only on documents that already have the right shape. Failures are
raised as ``ChartStoreError`` carrying a list of field-level errors.
"""

from __future__ import annotations

from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from .chart_contract import DOCUMENT_ID_PATTERN, VERSION_PATTERN, GraphDocumentV1
from .chart_store import ChartStoreError

ModelT = TypeVar("ModelT", bound=BaseModel)


def schema_errors(exc: ValidationError) -> list[dict[str, str]]:
    return [
        {
            "field": ".".join(str(part) for part in error["loc"]) or "$",
            "message": error["msg"],
        }
        for error in exc.errors(include_url=False, include_context=False, include_input=False)
    ]


def validate_model(model: type[ModelT], payload: Any, *, code: str, message: str) -> ModelT:
    if isinstance(payload, model):
        payload = payload.model_dump(mode="json", exclude_unset=True)
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise ChartStoreError(
            status_code=400,
            code=code,
            message=message,
            details={"errors": schema_errors(exc)},
        ) from exc


def check_graph_integrity(graph: GraphDocumentV1) -> list[dict[str, str]]:
    errors: list[dict[str, str]] = []

    node_ids: set[str] = set()
    for index, node in enumerate(graph.nodes):
        if node.nodeId in node_ids:
            errors.append(
                {
                    "field": f"nodes.{index}.nodeId",
                    "message": f"Duplicate node id '{node.nodeId}'.",
                }
            )
        node_ids.add(node.nodeId)

    seen_links: set[tuple[str, str]] = set()
    for index, link in enumerate(graph.links):
        for end in ("source", "target"):
            node_id = getattr(link, end)
            if node_id not in node_ids:
                errors.append(
                    {
                        "field": f"links.{index}.{end}",
                        "message": f"Link references unknown node '{node_id}'.",
                    }
                )
        if link.source == link.target:
            errors.append(
                {
                    "field": f"links.{index}",
                    "message": f"Node '{link.source}' cannot link to itself.",
                }
            )
        pair = (link.source, link.target)
        if pair in seen_links:
            errors.append(
                {
                    "field": f"links.{index}",
                    "message": f"Duplicate link '{link.source}' -> '{link.target}'.",
                }
            )
        seen_links.add(pair)

    return errors


def validate_graph_document(payload: Any) -> GraphDocumentV1:
    graph = validate_model(
        GraphDocumentV1,
        payload,
        code="INVALID_GRAPH",
        message="Graph document failed schema validation.",
    )
    errors = check_graph_integrity(graph)
    if errors:
        raise ChartStoreError(
            status_code=400,
            code="INVALID_GRAPH",
            message="Graph document failed integrity validation.",
            details={"errors": errors},
        )
    return graph


def require_document_id(value: Any, field: str) -> str:
    if not isinstance(value, str) or not DOCUMENT_ID_PATTERN.fullmatch(value):
        raise ChartStoreError(
            status_code=400,
            code="INVALID_IDENTIFIER",
            message=f"{field} is not a valid document identifier.",
            details={"errors": [{"field": field, "message": "Identifier format is invalid."}]},
        )
    return value


def require_version(value: Any, field: str = "version") -> str:
    if not isinstance(value, str) or not VERSION_PATTERN.fullmatch(value):
        raise ChartStoreError(
            status_code=400,
            code="INVALID_VERSION",
            message=f"{field} must be a dotted numeric version such as 1.0.",
            details={"errors": [{"field": field, "message": "Version format is invalid."}]},
        )
    return value


def require_user_id(value: Any, field: str = "userId") -> str:
    text = value.strip() if isinstance(value, str) else ""
    if not text:
        raise ChartStoreError(
            status_code=400,
            code="INVALID_IDENTIFIER",
            message=f"{field} must be a non-empty identity.",
            details={"errors": [{"field": field, "message": "Identity is required."}]},
        )
    return text
