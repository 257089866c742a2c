from __future__ import annotations

import logging

from .chart_contract import HistoryEntryV1, utcnow
from .chart_store import ChartStore, ChartStoreError
from .permissions import can_edit
from .validation import require_document_id, require_version

logger = logging.getLogger(__name__)


class HistoryRecorder:
    """Swaps a chart's published graph while appending the superseded one to its history."""

    def __init__(self, store: ChartStore) -> None:
        self._store = store

    def record_graph_change(
        self,
        chart_id: str,
        graph_id: str,
        version: str,
        comments: str | None,
        user_id: str | None,
    ) -> int | None:
        require_document_id(chart_id, "chartId")
        require_document_id(graph_id, "graphId")
        require_version(version)

        if not user_id:
            return None

        chart = self._store.find_chart(chart_id)
        graph = self._store.find_graph(graph_id)
        if chart is None or graph is None:
            raise ChartStoreError(
                status_code=404,
                code="CHART_BAD_IDS",
                message="The supplied chart or graph identifier was not found.",
                details={"chartId": chart_id, "graphId": graph_id},
            )
        if not can_edit(chart, user_id):
            logger.info("User %s denied graph change on chart %s.", user_id, chart_id)
            raise ChartStoreError(
                status_code=403,
                code="CHART_ACCESS_DENIED",
                message="The current user is not allowed to change this chart's graph.",
            )
        if graph.owner != chart.owner:
            raise ChartStoreError(
                status_code=403,
                code="CHART_GRAPH_NOT_OWNED",
                message="A chart can only move to a graph owned by the chart owner.",
                details={"chartId": chart_id, "graphId": graph_id},
            )

        entry = HistoryEntryV1(
            version=chart.version,
            graphId=chart.graphId,
            comments=comments,
            userId=user_id,
            date=utcnow(),
        )
        updated = self._store.update_chart(
            chart_id,
            push={"history": entry},
            set_fields={"version": version, "graphId": graph_id},
        )
        logger.info(
            "Chart %s moved from graph %s (v%s) to graph %s (v%s).",
            chart_id,
            chart.graphId,
            chart.version,
            graph_id,
            version,
        )
        return updated

    def publish(
        self,
        chart_id: str,
        comments: str,
        user_id: str | None,
        *,
        version: str | None = None,
    ) -> int | bool:
        """Promote the chart's editing graph to published.

        The chart's current version is carried over unless ``version`` is given.
        Returns False when there is no chart, no pending editing graph, or no
        acting identity to record the change under.
        """
        chart = self._store.find_chart(chart_id)
        if chart is None or not chart.editingGraphId:
            return False

        recorded = self.record_graph_change(
            chart_id,
            chart.editingGraphId,
            version if version is not None else chart.version,
            comments,
            user_id,
        )
        if recorded is None:
            return False

        return self._store.update_chart(chart_id, unset_fields=("editingGraphId",))
