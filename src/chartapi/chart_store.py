from __future__ import annotations

import json
import logging
import os
import sqlite3
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path
from threading import RLock
from typing import Any

from pydantic import BaseModel, ValidationError

from .chart_contract import ChartV1, GraphDocumentV1, new_document_id

logger = logging.getLogger(__name__)

_IMMUTABLE_CHART_FIELDS = frozenset({"chartId", "schemaVersion"})


class ChartStoreError(Exception):
    def __init__(
        self,
        *,
        status_code: int,
        code: str,
        message: str,
        details: dict | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details


class ChartStore:
    """SQLite-backed document store for charts and graphs.

    Documents are kept as JSON payloads next to the few columns that queries
    filter or sort on. Every public method is a single atomic store operation;
    multi-step flows are composed by the callers and are not transactional.
    """

    def __init__(self, storage_path: Path) -> None:
        self._storage_path = storage_path
        self._lock = RLock()
        self._conn: sqlite3.Connection | None = None

    @classmethod
    def from_env(cls) -> "ChartStore":
        raw = os.getenv("CHARTAPI_DB_PATH", "").strip()
        if raw:
            return cls(Path(raw).expanduser())
        return cls(Path.home() / ".cache" / "chartapi" / "charts.v1.sqlite3")

    @property
    def storage_path(self) -> Path:
        return self._storage_path

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def open(self) -> "ChartStore":
        with self._lock:
            if self._conn is None:
                self._storage_path.parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(str(self._storage_path), timeout=30.0, check_same_thread=False)
                conn.row_factory = sqlite3.Row
                self._ensure_schema(conn)
                self._conn = conn
                logger.debug("Opened chart store at %s", self._storage_path)
        return self

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                logger.debug("Closed chart store at %s", self._storage_path)

    def __enter__(self) -> "ChartStore":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    # Charts

    def insert_chart(self, chart: ChartV1) -> str:
        payload = self._chart_to_json(chart)
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO charts (chart_id, owner, in_catalog, downloads, payload)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (chart.chartId, chart.owner, int(chart.inCatalog), chart.downloads, payload),
                )
        except sqlite3.IntegrityError as exc:
            raise ChartStoreError(
                status_code=409,
                code="CHART_ALREADY_EXISTS",
                message=f"Chart '{chart.chartId}' already exists.",
            ) from exc
        return chart.chartId

    def find_chart(self, chart_id: str) -> ChartV1 | None:
        with self._lock:
            row = self._connection().execute(
                "SELECT payload FROM charts WHERE chart_id = ?",
                (chart_id,),
            ).fetchone()
        if row is None:
            return None
        return self._chart_from_json(str(row["payload"]))

    def find_charts(
        self,
        *,
        chart_ids: list[str] | None = None,
        owner: str | None = None,
        in_catalog: bool | None = None,
        order_by_downloads: bool = False,
        limit: int | None = None,
    ) -> list[ChartV1]:
        clauses: list[str] = []
        params: list[Any] = []
        if chart_ids is not None:
            if not chart_ids:
                return []
            clauses.append(f"chart_id IN ({', '.join('?' for _ in chart_ids)})")
            params.extend(chart_ids)
        if owner is not None:
            clauses.append("owner = ?")
            params.append(owner)
        if in_catalog is not None:
            clauses.append("in_catalog = ?")
            params.append(int(in_catalog))

        query = "SELECT payload FROM charts"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        # Equal download counts fall back to rowid (insertion) order.
        query += " ORDER BY downloads DESC, rowid ASC" if order_by_downloads else " ORDER BY rowid ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._lock:
            rows = self._connection().execute(query, params).fetchall()
        return [self._chart_from_json(str(row["payload"])) for row in rows]

    def update_chart(
        self,
        chart_id: str,
        *,
        set_fields: Mapping[str, Any] | None = None,
        unset_fields: tuple[str, ...] = (),
        push: Mapping[str, Any] | None = None,
        add_to_set: Mapping[str, Any] | None = None,
        pull: Mapping[str, Any] | None = None,
        inc: Mapping[str, int] | None = None,
        only_if_absent: str | None = None,
    ) -> int:
        """Apply one combined modification to a single chart document.

        Returns the number of documents matched (0 or 1). When ``only_if_absent``
        names a field that already holds a value, nothing is written and 0 is
        returned. The resulting document is validated as a whole before it is
        written.
        """
        touched = set(set_fields or {}) | set(unset_fields) | set(push or {})
        touched |= set(add_to_set or {}) | set(pull or {}) | set(inc or {})
        forbidden = sorted(touched & _IMMUTABLE_CHART_FIELDS)
        if forbidden:
            raise ChartStoreError(
                status_code=400,
                code="INVALID_CHART",
                message="Chart identity fields cannot be modified.",
                details={"fields": forbidden},
            )

        with self._transaction() as conn:
            row = conn.execute(
                "SELECT payload FROM charts WHERE chart_id = ?",
                (chart_id,),
            ).fetchone()
            if row is None:
                return 0
            document = self._chart_from_json(str(row["payload"])).model_dump(mode="json")
            if only_if_absent is not None and document.get(only_if_absent) is not None:
                return 0

            for field, value in (set_fields or {}).items():
                document[field] = _jsonable(value)
            for field in unset_fields:
                document.pop(field, None)
            for field, value in (push or {}).items():
                document.setdefault(field, []).append(_jsonable(value))
            for field, value in (add_to_set or {}).items():
                items = document.setdefault(field, [])
                value = _jsonable(value)
                if value not in items:
                    items.append(value)
            for field, value in (pull or {}).items():
                value = _jsonable(value)
                document[field] = [item for item in document.get(field, []) if item != value]
            for field, amount in (inc or {}).items():
                document[field] = int(document.get(field) or 0) + int(amount)

            try:
                chart = ChartV1.model_validate(document)
            except ValidationError as exc:
                raise ChartStoreError(
                    status_code=400,
                    code="INVALID_CHART",
                    message="Chart update produced an invalid document.",
                    details={"errors": exc.errors(include_url=False, include_context=False, include_input=False)},
                ) from exc

            conn.execute(
                """
                UPDATE charts
                SET owner = ?, in_catalog = ?, downloads = ?, payload = ?
                WHERE chart_id = ?
                """,
                (chart.owner, int(chart.inCatalog), chart.downloads, self._chart_to_json(chart), chart_id),
            )
            return 1

    def delete_chart(self, chart_id: str) -> int:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM charts WHERE chart_id = ?", (chart_id,))
            return cursor.rowcount

    # Graphs

    def insert_graph(self, graph: GraphDocumentV1) -> str | None:
        """Insert a graph under a freshly assigned identifier; any ``graphId`` on the input is ignored."""
        graph_id = new_document_id()
        stored = graph.model_copy(update={"graphId": graph_id})
        try:
            with self._transaction() as conn:
                conn.execute(
                    "INSERT INTO graphs (graph_id, owner, payload) VALUES (?, ?, ?)",
                    (graph_id, stored.owner, self._graph_to_json(stored)),
                )
        except sqlite3.IntegrityError:
            logger.error("Graph identifier collision on insert: %s", graph_id)
            return None
        return graph_id

    def find_graph(self, graph_id: str) -> GraphDocumentV1 | None:
        with self._lock:
            row = self._connection().execute(
                "SELECT payload FROM graphs WHERE graph_id = ?",
                (graph_id,),
            ).fetchone()
        if row is None:
            return None
        return self._graph_from_json(str(row["payload"]))

    def replace_graph(self, graph_id: str, graph: GraphDocumentV1) -> int:
        try:
            stored = GraphDocumentV1.model_validate(graph.model_dump(mode="json") | {"graphId": graph_id})
        except ValidationError as exc:
            raise ChartStoreError(
                status_code=400,
                code="INVALID_GRAPH",
                message="Graph replacement is not a valid graph document.",
                details={"errors": exc.errors(include_url=False, include_context=False, include_input=False)},
            ) from exc
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE graphs SET owner = ?, payload = ? WHERE graph_id = ?",
                (stored.owner, self._graph_to_json(stored), graph_id),
            )
            return cursor.rowcount

    def delete_graphs(self, graph_ids: list[str]) -> int:
        unique_ids = sorted(set(graph_ids))
        if not unique_ids:
            return 0
        with self._transaction() as conn:
            cursor = conn.execute(
                f"DELETE FROM graphs WHERE graph_id IN ({', '.join('?' for _ in unique_ids)})",
                unique_ids,
            )
            return cursor.rowcount

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise ChartStoreError(
                status_code=500,
                code="CHART_STORE_CLOSED",
                message="Chart store is not open.",
            )
        return self._conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connection()
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            else:
                conn.commit()

    @staticmethod
    def _ensure_schema(conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS charts (
                chart_id TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                in_catalog INTEGER NOT NULL DEFAULT 0,
                downloads INTEGER NOT NULL DEFAULT 0,
                payload TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS charts_owner_idx ON charts (owner);
            CREATE INDEX IF NOT EXISTS charts_downloads_idx ON charts (downloads DESC);

            CREATE TABLE IF NOT EXISTS graphs (
                graph_id TEXT PRIMARY KEY,
                owner TEXT,
                payload TEXT NOT NULL
            );
            """
        )

    @staticmethod
    def _chart_to_json(chart: ChartV1) -> str:
        return json.dumps(chart.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))

    @staticmethod
    def _chart_from_json(raw: str) -> ChartV1:
        try:
            return ChartV1.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise ChartStoreError(
                status_code=500,
                code="CHART_STORAGE_CORRUPTED",
                message="Chart storage payload is unreadable or invalid.",
            ) from exc

    @staticmethod
    def _graph_to_json(graph: GraphDocumentV1) -> str:
        return json.dumps(graph.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))

    @staticmethod
    def _graph_from_json(raw: str) -> GraphDocumentV1:
        try:
            return GraphDocumentV1.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise ChartStoreError(
                status_code=500,
                code="CHART_STORAGE_CORRUPTED",
                message="Graph storage payload is unreadable or invalid.",
            ) from exc


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value
