from __future__ import annotations

import inspect
from dataclasses import replace

from fastapi import FastAPI
from fastapi.routing import APIRoute
from fastapi.testclient import TestClient

from plazas.controllers.allocation_controller import router as allocation_router
from plazas.controllers.facility_controller import router as facility_router
from plazas.repository.data_repository import (
    ConcurrentModificationError,
    DataRepository,
    StoreUnavailableError,
)
from plazas.services.allocation_service import AllocationEngine
from plazas.utils.config import get_settings


def _build_test_settings(tmp_path, filename: str):
    get_settings.cache_clear()
    return replace(get_settings(), database_path=tmp_path / filename)


def _build_test_app(tmp_path) -> tuple[FastAPI, DataRepository]:
    settings = _build_test_settings(tmp_path, "api_flow.db")
    repository = DataRepository(settings)
    repository.initialize_database()

    app = FastAPI()
    app.include_router(facility_router)
    app.include_router(allocation_router)
    app.state.repository = repository
    app.state.allocation_engine = AllocationEngine(repository=repository, settings=settings)
    return app, repository


def test_allocation_end_to_end_flow(tmp_path):
    app, repository = _build_test_app(tmp_path)

    with TestClient(app) as client:
        facility_response = client.put(
            "/facilities/C005",
            json={"name": "CEIP La Paz", "capacity": 1, "locality": "Torrevieja"},
        )
        assert facility_response.status_code == 200
        assert facility_response.json()["spare_capacity"] == 1

        low_priority = client.post(
            "/requests",
            json={"priority_key": 10, "preferences": ["C005"], "submitter": "family-10"},
        )
        assert low_priority.status_code == 201
        assert low_priority.json()["preferences"] == ["C005"]

        first_pass = client.post("/process_pending")
        assert first_pass.status_code == 200
        assert first_pass.json()["assigned_count"] == 1

        high_priority = client.post(
            "/requests",
            json={"priority_key": 5, "preferences": ["C005"], "submitter": "family-5"},
        )
        assert high_priority.status_code == 201

        outcome = client.post("/process_one", json={"priority_key": 5})
        assert outcome.status_code == 200
        body = outcome.json()
        assert body["kind"] == "ASSIGNED"
        assert body["facility_id"] == "C005"
        assert body["displaced_priority_key"] == 10

        assignments = client.get("/assignments").json()
        assert [item["priority_key"] for item in assignments] == [5]

        pending = client.get("/requests").json()
        assert [(item["priority_key"], item["displaced_from"]) for item in pending] == [(10, "C005")]

        history = client.get("/history", params={"priority_key": 10}).json()
        assert [item["outcome"] for item in history] == ["ASSIGNED", "DISPLACED"]

        facilities = client.get("/facilities").json()
        assert facilities[0]["occupied"] == 1

        reassign = client.post("/assignments/5/reassign", json={})
        assert reassign.status_code == 200
        assert reassign.json()["preferences"] == ["C005"]

        full_pass = client.post("/process_all")
        assert full_pass.status_code == 200
        assert full_pass.json()["assigned_count"] == 1
        assert [item["priority_key"] for item in client.get("/assignments").json()] == [5]

        released = client.delete("/assignments/5")
        assert released.status_code == 200
        assert released.json()["facility_id"] == "C005"

        assert client.post("/rebalance").json()["corrected_facility_count"] == 0
        assert client.post("/remove_duplicates").json()["duplicate_count"] == 0
        assert client.post("/correct_overcommit").json()["evicted_count"] == 0

    assert repository.get_facility("C005").occupied == 0


def test_error_mapping(tmp_path, monkeypatch):
    app, _ = _build_test_app(tmp_path)

    with TestClient(app) as client:
        payload = {
            "priority_key": 3,
            "preferences": ["C001"],
            "submitter": "family-3",
            "submitted_at": "2026-03-02T08:30:00+00:00",
        }
        assert client.post("/requests", json=payload).status_code == 201
        assert client.post("/requests", json=payload).status_code == 409

        assert client.post("/requests", json={"priority_key": 4, "preferences": []}).status_code == 422
        assert client.post("/requests", json={"priority_key": 4, "preferences": [" "]}).status_code == 422
        assert client.put("/facilities/C001", json={"name": "x", "capacity": -1}).status_code == 422

        assert client.delete("/assignments/99").status_code == 404
        assert client.post("/assignments/99/reassign", json={}).status_code == 404
        assert client.post("/process_one", json={"priority_key": 99}).status_code == 404

        def unavailable(*args, **kwargs):
            raise StoreUnavailableError("database file is gone")

        monkeypatch.setattr(app.state.allocation_engine, "process_all", unavailable)
        response = client.post("/process_all")
        assert response.status_code == 503
        assert "database file is gone" in response.json()["detail"]


def test_missing_engine_returns_503():
    app = FastAPI()
    app.include_router(allocation_router)

    with TestClient(app) as client:
        response = client.post("/process_pending")

    assert response.status_code == 503


def test_handlers_run_in_the_threadpool():
    routes = [
        route
        for router in (facility_router, allocation_router)
        for route in router.routes
        if isinstance(route, APIRoute)
    ]

    assert routes
    assert [route.path for route in routes if inspect.iscoroutinefunction(route.endpoint)] == []


def test_locked_store_on_listing_returns_503(tmp_path, monkeypatch):
    app, repository = _build_test_app(tmp_path)

    def locked():
        raise ConcurrentModificationError("database is locked")

    monkeypatch.setattr(repository, "list_facilities", locked)
    monkeypatch.setattr(repository, "list_pending_requests", locked)

    with TestClient(app) as client:
        assert client.get("/facilities").status_code == 503
        assert client.get("/requests").status_code == 503
        response = client.post("/process_pending")

    assert response.status_code == 503
    assert "database is locked" in response.json()["detail"]
