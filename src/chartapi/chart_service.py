from __future__ import annotations

import logging
from typing import Any

from .chart_contract import (
    ChartCreateRequestV1,
    ChartUpsertRequestV1,
    ChartV1,
    GraphDocumentV1,
    NodeEditRequestV1,
    UpsertResultV1,
    unique_present,
)
from .chart_defaults import new_chart_document
from .chart_store import ChartStore, ChartStoreError
from .graph_lifecycle import GraphLifecycle
from .history import HistoryRecorder
from .permissions import can_edit, is_owner
from .validation import require_document_id, require_user_id, validate_model

logger = logging.getLogger(__name__)


class ChartService:
    """Operation surface over charts and their graphs.

    Every method takes the acting identity explicitly. Mutations are gated by
    the owner/editor predicates; reads and removals degrade to ``None``,
    ``False`` or empty results instead of raising.
    """

    def __init__(self, store: ChartStore) -> None:
        self._store = store
        self.graphs = GraphLifecycle(store)
        self.history = HistoryRecorder(store)

    @property
    def store(self) -> ChartStore:
        return self._store

    # Permissions

    def can_edit(self, chart_id: str, user_id: str | None) -> bool:
        if not user_id:
            return False
        return can_edit(self._store.find_chart(chart_id), user_id)

    def is_owner(self, chart_id: str, user_id: str | None) -> bool:
        if not user_id:
            return False
        return is_owner(self._store.find_chart(chart_id), user_id)

    # Graph lifecycle and history

    def get_editing_graph_id(self, chart_id: str) -> str | None:
        require_document_id(chart_id, "chartId")
        return self.graphs.get_or_create_editing_graph(chart_id)

    def update_editing_graph(self, chart_id: str, graph: Any, user_id: str | None) -> int | None:
        return self.graphs.update_editing_graph(chart_id, graph, user_id)

    def publish(
        self,
        chart_id: str,
        comments: str,
        user_id: str | None,
        *,
        version: str | None = None,
    ) -> int | bool:
        require_document_id(chart_id, "chartId")
        return self.history.publish(chart_id, comments, user_id, version=version)

    def record_graph_change(
        self,
        chart_id: str,
        graph_id: str,
        version: str,
        comments: str | None,
        user_id: str | None,
    ) -> int | None:
        return self.history.record_graph_change(chart_id, graph_id, version, comments, user_id)

    def edit_node(
        self,
        chart_id: str,
        node_id: str,
        edit: NodeEditRequestV1 | dict,
        user_id: str | None,
    ) -> GraphDocumentV1 | None:
        request = validate_model(
            NodeEditRequestV1,
            edit,
            code="INVALID_NODE_EDIT",
            message="Node edit failed validation.",
        )
        chart = self._store.find_chart(chart_id)
        if not can_edit(chart, user_id):
            return None

        editing_graph_id = self.graphs.get_or_create_editing_graph(chart_id)
        if editing_graph_id is None:
            return None
        graph = self._store.find_graph(editing_graph_id)
        if graph is None:
            logger.error(
                "Chart %s has editing graph %s, but that graph does not exist.",
                chart_id,
                editing_graph_id,
            )
            return None

        nodes = list(graph.nodes)
        for index, node in enumerate(nodes):
            if node.nodeId == node_id:
                nodes[index] = node.model_copy(update=request.model_dump())
                break
        else:
            return None

        payload = graph.model_copy(update={"nodes": nodes}).model_dump(mode="json")
        if not self.graphs.update_editing_graph(chart_id, payload, user_id):
            return None
        return self._store.find_graph(editing_graph_id)

    def get_graph(self, graph_id: str) -> GraphDocumentV1 | None:
        return self._store.find_graph(graph_id)

    # Charts

    def insert(self, name: str, description: str, user_id: str | None) -> str:
        request = validate_model(
            ChartCreateRequestV1,
            {"name": name, "description": description},
            code="INVALID_CHART",
            message="Chart failed validation.",
        )
        if not user_id:
            raise ChartStoreError(
                status_code=403,
                code="CHART_ACCESS_DENIED",
                message="A user must be logged in to insert a new chart.",
            )
        graph_id = self.graphs.create_graph(user_id)
        chart = new_chart_document(
            owner=user_id,
            name=request.name,
            description=request.description,
            graph_id=graph_id,
        )
        return self._store.insert_chart(chart)

    def upsert(self, chart: ChartUpsertRequestV1 | dict, user_id: str | None) -> UpsertResultV1:
        request = validate_model(
            ChartUpsertRequestV1,
            chart,
            code="INVALID_CHART",
            message="Chart failed validation.",
        )
        if not user_id:
            raise ChartStoreError(
                status_code=403,
                code="CHART_ACCESS_DENIED",
                message="A user must be logged in to insert or update a chart.",
            )

        if request.chartId is None:
            graph_id = self.graphs.create_graph(user_id)
            editable = request.model_dump(exclude={"chartId"})
            document = new_chart_document(owner=user_id, graph_id=graph_id, **editable)
            return UpsertResultV1(numberAffected=1, insertedId=self._store.insert_chart(document))

        if not self.is_owner(request.chartId, user_id):
            raise ChartStoreError(
                status_code=403,
                code="CHART_ACCESS_DENIED",
                message="The given chart's owner does not match the current user.",
            )
        # Fields left out of the request keep their stored values.
        editable = request.model_dump(exclude={"chartId"}, exclude_unset=True)
        updated = self._store.update_chart(request.chartId, set_fields=editable)
        return UpsertResultV1(numberAffected=updated)

    def remove(self, chart_id: str, user_id: str | None) -> int | None:
        """Delete a chart and the graphs it references. Non-owners get None.

        Graphs still referenced by another chart, as its published graph, its
        editing graph or a history entry, are kept.
        """
        require_document_id(chart_id, "chartId")
        chart = self._store.find_chart(chart_id)
        if chart is None or not is_owner(chart, user_id):
            return None

        removed = self._store.delete_chart(chart_id)
        in_use: set[str] = set()
        for other in self._store.find_charts():
            in_use.update(_graph_references(other))
        graph_ids = _graph_references(chart) - in_use
        self._store.delete_graphs(sorted(graph_ids))
        logger.info("Chart %s removed by %s with %d graph(s).", chart_id, user_id, len(graph_ids))
        return removed

    def list_mine(self, user_id: str | None) -> list[ChartV1]:
        if not user_id:
            return []
        return self._store.find_charts(owner=user_id)

    def list_catalog(self) -> list[ChartV1]:
        return self._store.find_charts(in_catalog=True)

    def get(self, chart_id: str) -> ChartV1 | None:
        return self._store.find_chart(chart_id)

    def get_many(self, chart_ids: list[str]) -> list[ChartV1]:
        return self._store.find_charts(chart_ids=list(chart_ids))

    def find_top_by_downloads(self, n: int) -> list[ChartV1]:
        """Most downloaded charts first; order among equal counts is not part of the contract."""
        if n < 0:
            raise ChartStoreError(
                status_code=400,
                code="INVALID_LIMIT",
                message="n must not be negative.",
            )
        return self._store.find_charts(order_by_downloads=True, limit=n)

    def increment_downloads(self, chart_id: str) -> int:
        return self._store.update_chart(chart_id, inc={"downloads": 1})

    # Aggregation

    def collect_resources(self, chart_id: str) -> list[str] | None:
        chart = self._store.find_chart(chart_id)
        if chart is None:
            return None
        graph = self._published_graph(chart)
        if graph is None:
            return None

        resources: list[str | None] = []
        comments = list(chart.comments)
        for node in graph.nodes:
            comments.extend(node.comments)
            resources.extend(node.images)
            resources.extend(node.resources)
        resources.extend(comment.attachment for comment in comments)
        resources.append(chart.image)
        return unique_present(resources)

    def collect_contributing_users(self, chart_id: str) -> list[str] | None:
        chart = self._store.find_chart(chart_id)
        if chart is None:
            return None
        graph = self._published_graph(chart)
        if graph is None:
            return None

        comments = list(chart.comments)
        for node in graph.nodes:
            comments.extend(node.comments)
        users: list[str | None] = [comment.owner for comment in comments]
        users.append(chart.owner)
        return unique_present(users)

    def set_feedback(self, chart_id: str, user_id: str, upvote: bool, clear: bool = False) -> bool:
        require_document_id(chart_id, "chartId")
        user_id = require_user_id(user_id)

        if clear:
            self._store.update_chart(chart_id, pull={"upvotedIds": user_id, "downvotedIds": user_id})
            return True

        target, opposite = ("upvotedIds", "downvotedIds") if upvote else ("downvotedIds", "upvotedIds")
        return self._store.update_chart(
            chart_id,
            pull={opposite: user_id},
            add_to_set={target: user_id},
        ) > 0

    def _published_graph(self, chart: ChartV1) -> GraphDocumentV1 | None:
        graph = self._store.find_graph(chart.graphId)
        if graph is None:
            logger.error(
                "Chart %s has graph %s, but that graph does not exist.",
                chart.chartId,
                chart.graphId,
            )
        return graph


def _graph_references(chart: ChartV1) -> set[str]:
    graph_ids = {chart.graphId, *(entry.graphId for entry in chart.history)}
    if chart.editingGraphId:
        graph_ids.add(chart.editingGraphId)
    return graph_ids
