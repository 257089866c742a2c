from __future__ import annotations

from fastapi.testclient import TestClient

from payloads import graph_payload

OWNER = {"X-User-Id": "u1"}
EDITOR = {"X-User-Id": "u2"}
STRANGER = {"X-User-Id": "u9"}


def _create_chart(client: TestClient, name: str = "Solar system") -> str:
    response = client.post("/v1/charts", json={"name": name, "description": "Planets"}, headers=OWNER)
    assert response.status_code == 201
    return response.json()["chartId"]


def test_chart_edit_publish_flow(client: TestClient) -> None:
    chart_id = _create_chart(client)
    chart = client.get(f"/v1/charts/{chart_id}").json()
    assert chart["owner"] == "u1"
    assert chart["version"] == "1.0"
    assert chart["editingGraphId"] is None

    editing = client.get(f"/v1/charts/{chart_id}/editing-graph")
    assert editing.status_code == 200
    editing_graph_id = editing.json()["graphId"]
    assert editing_graph_id != chart["graphId"]
    assert editing.json()["graph"]["owner"] == "u1"

    updated = client.put(f"/v1/charts/{chart_id}/editing-graph", json=graph_payload(), headers=OWNER)
    assert updated.status_code == 200
    assert updated.json() == {"updated": 1}

    edited = client.put(
        f"/v1/charts/{chart_id}/editing-graph/nodes/b",
        json={"name": "Beta", "details": "edited", "images": [], "resources": ["https://docs.example/b.pdf/"]},
        headers=OWNER,
    )
    assert edited.status_code == 200
    node_b = next(node for node in edited.json()["nodes"] if node["nodeId"] == "b")
    assert node_b["resources"] == ["https://docs.example/b.pdf"]

    published = client.post(
        f"/v1/charts/{chart_id}/publish",
        json={"comments": "first edit", "version": "1.1"},
        headers=OWNER,
    )
    assert published.status_code == 200

    chart_after = client.get(f"/v1/charts/{chart_id}").json()
    assert chart_after["graphId"] == editing_graph_id
    assert chart_after["editingGraphId"] is None
    assert chart_after["version"] == "1.1"
    assert len(chart_after["history"]) == 1
    assert chart_after["history"][0]["graphId"] == chart["graphId"]
    assert chart_after["history"][0]["version"] == "1.0"
    assert chart_after["history"][0]["comments"] == "first edit"
    assert chart_after["history"][0]["userId"] == "u1"

    graph = client.get(f"/v1/graphs/{editing_graph_id}")
    assert graph.status_code == 200
    assert [node["nodeId"] for node in graph.json()["nodes"]] == ["a", "b"]

    nothing_pending = client.post(f"/v1/charts/{chart_id}/publish", json={"comments": "again"}, headers=OWNER)
    assert nothing_pending.status_code == 409
    assert nothing_pending.json()["detail"]["code"] == "CHART_NOTHING_TO_PUBLISH"

    resources = client.get(f"/v1/charts/{chart_id}/resources")
    assert resources.status_code == 200
    assert "https://docs.example/b.pdf" in resources.json()["resources"]

    users = client.get(f"/v1/charts/{chart_id}/users")
    assert users.json()["userIds"] == ["u1"]


def test_chart_access_errors_are_mapped(client: TestClient) -> None:
    anonymous = client.post("/v1/charts", json={"name": "No owner"})
    assert anonymous.status_code == 403
    assert anonymous.json()["detail"]["code"] == "CHART_ACCESS_DENIED"

    chart_id = _create_chart(client)

    denied_update = client.put(f"/v1/charts/{chart_id}/editing-graph", json=graph_payload(), headers=STRANGER)
    assert denied_update.status_code == 403

    invalid_graph = client.put(
        f"/v1/charts/{chart_id}/editing-graph",
        json=graph_payload(links=[{"source": "a", "target": "a"}]),
        headers=OWNER,
    )
    assert invalid_graph.status_code == 400
    assert invalid_graph.json()["detail"]["code"] == "INVALID_GRAPH"
    assert invalid_graph.json()["detail"]["details"]["errors"][0]["field"] == "links.0"

    client.get(f"/v1/charts/{chart_id}/editing-graph")
    denied_publish = client.post(f"/v1/charts/{chart_id}/publish", json={"comments": "x"}, headers=STRANGER)
    assert denied_publish.status_code == 403
    assert denied_publish.json()["detail"]["code"] == "CHART_ACCESS_DENIED"

    bad_version = client.post(
        f"/v1/charts/{chart_id}/graph-changes",
        json={"graphId": "23456789ABCDEFGHJ", "version": "v2"},
        headers=OWNER,
    )
    assert bad_version.status_code == 400
    assert bad_version.json()["detail"]["code"] == "INVALID_VERSION"

    bad_ids = client.post(
        f"/v1/charts/{chart_id}/graph-changes",
        json={"graphId": "23456789ABCDEFGHJ", "version": "2.0"},
        headers=OWNER,
    )
    assert bad_ids.status_code == 404
    assert bad_ids.json()["detail"]["code"] == "CHART_BAD_IDS"

    missing = client.get("/v1/charts/23456789ABCDEFGHJ")
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "CHART_NOT_FOUND"

    assert client.get("/v1/graphs/23456789ABCDEFGHJ").status_code == 404
    assert client.get("/v1/charts/23456789ABCDEFGHJ/resources").status_code == 404


def test_editing_graph_routes_distinguish_missing_chart_denied_and_nothing_pending(client: TestClient) -> None:
    missing_id = "23456789ABCDEFGHJ"

    missing_update = client.put(f"/v1/charts/{missing_id}/editing-graph", json=graph_payload(), headers=OWNER)
    assert missing_update.status_code == 404
    assert missing_update.json()["detail"]["code"] == "CHART_NOT_FOUND"

    missing_publish = client.post(f"/v1/charts/{missing_id}/publish", json={"comments": "x"}, headers=OWNER)
    assert missing_publish.status_code == 404
    assert missing_publish.json()["detail"]["code"] == "CHART_NOT_FOUND"

    chart_id = _create_chart(client)
    client.get(f"/v1/charts/{chart_id}/editing-graph")

    anonymous_publish = client.post(f"/v1/charts/{chart_id}/publish", json={"comments": "x"})
    assert anonymous_publish.status_code == 403
    assert anonymous_publish.json()["detail"]["code"] == "CHART_ACCESS_DENIED"
    assert client.get(f"/v1/charts/{chart_id}").json()["editingGraphId"] is not None

    denied_update = client.put(f"/v1/charts/{chart_id}/editing-graph", json=graph_payload(), headers=STRANGER)
    assert denied_update.status_code == 403
    assert denied_update.json()["detail"]["code"] == "CHART_ACCESS_DENIED"

    assert client.post(f"/v1/charts/{chart_id}/publish", json={"comments": "ok"}, headers=OWNER).status_code == 200
    nothing_pending = client.post(f"/v1/charts/{chart_id}/publish", json={"comments": "again"}, headers=OWNER)
    assert nothing_pending.status_code == 409
    assert nothing_pending.json()["detail"]["code"] == "CHART_NOTHING_TO_PUBLISH"


def test_upsert_permissions_and_remove(client: TestClient) -> None:
    chart_id = _create_chart(client)

    upserted = client.put(
        "/v1/charts",
        json={"chartId": chart_id, "name": "Shared", "editors": ["u2"], "inCatalog": True},
        headers=OWNER,
    )
    assert upserted.status_code == 200
    assert upserted.json()["numberAffected"] == 1

    permissions = client.get(f"/v1/charts/{chart_id}/permissions", headers=EDITOR).json()
    assert permissions == {"chartId": chart_id, "canEdit": True, "isOwner": False}

    hijack = client.put("/v1/charts", json={"chartId": chart_id, "name": "Mine now"}, headers=EDITOR)
    assert hijack.status_code == 403

    catalog = client.get("/v1/charts/catalog").json()["charts"]
    assert [chart["chartId"] for chart in catalog] == [chart_id]

    mine = client.get("/v1/charts/mine", headers=OWNER).json()["charts"]
    assert [chart["chartId"] for chart in mine] == [chart_id]
    assert client.get("/v1/charts/mine").json()["charts"] == []

    editor_remove = client.delete(f"/v1/charts/{chart_id}", headers=EDITOR)
    assert editor_remove.status_code == 404
    assert client.get(f"/v1/charts/{chart_id}").status_code == 200

    owner_remove = client.delete(f"/v1/charts/{chart_id}", headers=OWNER)
    assert owner_remove.status_code == 200
    assert client.get(f"/v1/charts/{chart_id}").status_code == 404


def test_downloads_top_and_get_many(client: TestClient) -> None:
    first = _create_chart(client, "First")
    second = _create_chart(client, "Second")

    assert client.post(f"/v1/charts/{second}/downloads").json() == {"updated": 1}

    top = client.get("/v1/charts/top", params={"n": 1}).json()["charts"]
    assert [chart["chartId"] for chart in top] == [second]
    assert top[0]["downloads"] == 1

    many = client.get("/v1/charts", params=[("ids", first), ("ids", second)]).json()["charts"]
    assert {chart["chartId"] for chart in many} == {first, second}


def test_feedback_requires_matching_identity(client: TestClient) -> None:
    chart_id = _create_chart(client)

    mismatch = client.put(
        f"/v1/charts/{chart_id}/feedback",
        json={"userId": "u3", "feedback": True},
        headers=STRANGER,
    )
    assert mismatch.status_code == 403
    assert mismatch.json()["detail"]["code"] == "FEEDBACK_USER_MISMATCH"

    upvote = client.put(
        f"/v1/charts/{chart_id}/feedback",
        json={"userId": "u9", "feedback": True},
        headers=STRANGER,
    )
    assert upvote.json() == {"ok": True}
    assert client.get(f"/v1/charts/{chart_id}").json()["upvotedIds"] == ["u9"]

    cleared = client.put(
        f"/v1/charts/{chart_id}/feedback",
        json={"userId": "u9", "feedback": False, "clear": True},
        headers=STRANGER,
    )
    assert cleared.json() == {"ok": True}
    assert client.get(f"/v1/charts/{chart_id}").json()["upvotedIds"] == []


def test_openapi_includes_chart_endpoints(client: TestClient) -> None:
    response = client.get("/openapi.json")

    assert response.status_code == 200
    paths = response.json()["paths"]
    assert "/v1/charts" in paths
    assert "/v1/charts/{chart_id}" in paths
    assert "/v1/charts/{chart_id}/editing-graph" in paths
    assert "/v1/charts/{chart_id}/publish" in paths
    assert "/v1/charts/{chart_id}/feedback" in paths

    schemas = response.json()["components"]["schemas"]
    assert "ChartV1" in schemas
    assert "GraphDocumentV1" in schemas
    assert "HistoryEntryV1" in schemas
