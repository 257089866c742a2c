from __future__ import annotations

import importlib

import pytest
from fastapi.testclient import TestClient

from chartapi.chart_service import ChartService
from chartapi.chart_store import ChartStore


chartapi_module = importlib.import_module("chartapi.app")


@pytest.fixture()
def store(tmp_path):
    chart_store = ChartStore(tmp_path / "charts.v1.sqlite3")
    chart_store.open()
    yield chart_store
    chart_store.close()


@pytest.fixture()
def service(store):
    return ChartService(store)


@pytest.fixture()
def client(service, monkeypatch):
    monkeypatch.setattr(chartapi_module, "chart_service", service)
    return TestClient(chartapi_module.app)
