from __future__ import annotations

import logging
from typing import Any

from .chart_defaults import default_graph_document
from .chart_store import ChartStore, ChartStoreError
from .permissions import can_edit
from .validation import validate_graph_document

logger = logging.getLogger(__name__)


class GraphLifecycle:
    """Creates graphs and keeps each chart's draft (editing) graph apart from its published one."""

    def __init__(self, store: ChartStore) -> None:
        self._store = store

    def create_graph(self, owner: str) -> str:
        graph_id = self._store.insert_graph(default_graph_document(owner))
        if graph_id is None:
            raise ChartStoreError(
                status_code=500,
                code="GRAPH_INSERT_FAILED",
                message="A new graph could not be inserted.",
            )
        return graph_id

    def get_or_create_editing_graph(self, chart_id: str) -> str | None:
        chart = self._store.find_chart(chart_id)
        if chart is None:
            return None
        if chart.editingGraphId:
            return chart.editingGraphId

        published = self._store.find_graph(chart.graphId)
        if published is None:
            logger.error(
                "Chart %s has graph %s, but that graph does not exist.",
                chart.chartId,
                chart.graphId,
            )
            return None

        draft = published.model_copy(update={"graphId": None, "owner": chart.owner}, deep=True)
        editing_graph_id = self._store.insert_graph(draft)
        if editing_graph_id is None:
            logger.error("Could not insert editing graph for chart %s.", chart.chartId)
            return None

        claimed = self._store.update_chart(
            chart.chartId,
            set_fields={"editingGraphId": editing_graph_id},
            only_if_absent="editingGraphId",
        )
        if claimed:
            logger.debug("Chart %s now edits graph %s.", chart.chartId, editing_graph_id)
            return editing_graph_id

        # Another request attached its draft first (or the chart vanished).
        self._store.delete_graphs([editing_graph_id])
        current = self._store.find_chart(chart.chartId)
        winner = current.editingGraphId if current is not None else None
        logger.warning(
            "Editing graph race on chart %s; discarded %s in favour of %s.",
            chart.chartId,
            editing_graph_id,
            winner,
        )
        return winner

    def update_editing_graph(
        self,
        chart_id: str,
        graph_payload: Any,
        user_id: str | None,
    ) -> int | None:
        graph = validate_graph_document(graph_payload)

        chart = self._store.find_chart(chart_id)
        if chart is None:
            return None
        if not can_edit(chart, user_id):
            logger.info("User %s may not edit chart %s.", user_id, chart_id)
            return None

        editing_graph_id = self.get_or_create_editing_graph(chart_id)
        if editing_graph_id is None:
            return None

        replacement = graph.model_copy(update={"graphId": None, "owner": chart.owner})
        return self._store.replace_graph(editing_graph_id, replacement)
