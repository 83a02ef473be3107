"""Tests for the HTTP API, served in-process over ASGI."""

import httpx
import pytest
from fastapi import FastAPI

from matatu_tracker.api import diagnostics as diagnostics_api
from matatu_tracker.api import routes as routes_api
from matatu_tracker.api import tracking as tracking_api
from matatu_tracker.api.errors import register_error_handlers
from matatu_tracker.core.aggregator import RouteAggregator
from matatu_tracker.core.geometry_resolver import GeometryResolver
from matatu_tracker.core.scheduler import create_scheduler
from matatu_tracker.core.tracking import TrackingEngine

from fakes import FakeDirections, FakeStore, coords, make_route, make_stage, make_vehicle

PATH = ((-1.2840, 36.8200), (-1.2840, 36.8250), (-1.2840, 36.8300))


def _store():
    return FakeStore(
        routes=[
            make_route("r1", PATH, start_location="Kencom", end_location="Railways"),
            make_route("bare", start_location="A", end_location="B"),
        ],
        stages=[
            make_stage("s1", "r1", *PATH[0], congestion="medium"),
            make_stage("s2", "r1", *PATH[2], congestion="low"),
        ],
        vehicles=[make_vehicle("v1", "r1", *PATH[0])],
    )


@pytest.fixture
def store():
    return _store()


@pytest.fixture
def directions():
    return FakeDirections({("Kencom", "Railways"): coords(*PATH)})


@pytest.fixture
def client(monkeypatch, store, directions):
    aggregator = RouteAggregator(store)
    resolver = GeometryResolver(directions, store)
    engine = TrackingEngine(aggregator, resolver, create_scheduler())
    monkeypatch.setattr(routes_api, "aggregator", aggregator)
    monkeypatch.setattr(routes_api, "resolver", resolver)
    monkeypatch.setattr(tracking_api, "engine", engine)
    monkeypatch.setattr(diagnostics_api, "engine", engine)

    app = FastAPI()
    register_error_handlers(app)
    app.include_router(routes_api.router)
    app.include_router(tracking_api.router)
    app.include_router(diagnostics_api.router)
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_get_route(client):
    async with client:
        resp = await client.get("/api/routes/r1")
    assert resp.status_code == 200
    body = resp.json()
    assert body["congestion"] == "medium"
    assert body["congestion_level"] == "medium"
    assert [s["id"] for s in body["stages"]] == ["s1", "s2"]


@pytest.mark.asyncio
async def test_unknown_route_is_404(client):
    async with client:
        resp = await client.get("/api/routes/nope")
    assert resp.status_code == 404
    assert resp.json()["error"] == "NotFound"


@pytest.mark.asyncio
async def test_list_routes(client):
    async with client:
        resp = await client.get("/api/routes")
    body = resp.json()
    assert sorted(r["id"] for r in body["routes"]) == ["bare", "r1"]
    assert body["skipped"] == []


@pytest.mark.asyncio
async def test_list_routes_reports_rejected_route(client, store):
    store.stages.append(make_stage("bad", "r1", -91.0, 36.8))
    async with client:
        resp = await client.get("/api/routes")
    body = resp.json()
    assert [r["id"] for r in body["routes"]] == ["bare"]
    assert [s["id"] for s in body["skipped"]] == ["r1"]


@pytest.mark.asyncio
async def test_geometry_from_provider(client):
    async with client:
        resp = await client.get("/api/routes/r1/geometry")
    body = resp.json()
    assert body["source"] == "provider"
    assert body["status_label"] == "route loaded"
    assert len(body["points"]) == 3
    assert body["region"]["center"]["latitude"] == pytest.approx(-1.2840)


@pytest.mark.asyncio
async def test_empty_geometry_uses_default_region(client):
    async with client:
        resp = await client.get("/api/routes/bare/geometry")
    body = resp.json()
    assert resp.status_code == 200
    assert body["source"] == "none"
    assert body["status_label"] == "basic route"
    assert body["region"]["span_lat"] == 0.05


@pytest.mark.asyncio
async def test_required_geometry_missing_is_422(client):
    async with client:
        resp = await client.get("/api/routes/bare/geometry", params={"require_points": "true"})
    assert resp.status_code == 422
    assert resp.json()["attempts"]


@pytest.mark.asyncio
async def test_stage_times(client):
    async with client:
        resp = await client.get("/api/routes/r1/stage-times")
    assert resp.json() == [{"from_stage": "Stage s1", "to_stage": "Stage s2", "minutes": 2}]


@pytest.mark.asyncio
async def test_generate_geometry(client, store):
    async with client:
        resp = await client.post("/api/routes/r1/geometry/generate")
    assert resp.status_code == 200
    assert resp.json() == {"route_id": "r1", "points_stored": 3}
    assert len(store.written["r1"]) == 3


@pytest.mark.asyncio
async def test_generate_geometry_provider_failure_is_502(client):
    async with client:
        resp = await client.post("/api/routes/bare/geometry/generate")
    assert resp.status_code == 502


@pytest.mark.asyncio
async def test_store_failure_is_502(client, store):
    store.failures["vehicles"] = ConnectionError("db down")
    async with client:
        resp = await client.get("/api/routes/r1")
    assert resp.status_code == 502


@pytest.mark.asyncio
async def test_bad_stored_coordinate_is_422(client, store):
    store.stages.append(make_stage("bad", "r1", -91.0, 36.8))
    async with client:
        resp = await client.get("/api/routes/r1")
    assert resp.status_code == 422
    assert resp.json()["error"] == "InvalidCoordinate"


@pytest.mark.asyncio
async def test_tracking_session_lifecycle(client):
    async with client:
        resp = await client.post("/api/tracking", json={"vehicle_id": "v1"})
        assert resp.status_code == 201
        sid = resp.json()["session_id"]

        frame = (await client.get(f"/api/tracking/{sid}", params={"wait": "true"})).json()
        assert frame["state"] == "tracking"
        assert frame["auto_follow"] is True

        frame = (await client.post(f"/api/tracking/{sid}/pan")).json()
        assert frame["state"] == "manual_override"

        frame = (await client.post(f"/api/tracking/{sid}/follow")).json()
        assert frame["state"] == "tracking"

        resp = await client.post(f"/api/tracking/{sid}/retry")
        assert resp.status_code == 409

        resp = await client.post(
            f"/api/tracking/{sid}/location", json={"latitude": -1.30, "longitude": 36.82},
        )
        assert resp.json()["camera"]["center"]["latitude"] == pytest.approx(-1.292)

        resp = await client.post(
            f"/api/tracking/{sid}/location", json={"latitude": 200, "longitude": 36.82},
        )
        assert resp.status_code == 422

        diag = (await client.get("/api/diagnostics")).json()
        assert diag["total_sessions"] == 1

        assert (await client.delete(f"/api/tracking/{sid}")).status_code == 204
        assert (await client.get(f"/api/tracking/{sid}")).status_code == 404


@pytest.mark.asyncio
async def test_switch_vehicle_endpoint(client, store):
    store.vehicles.append(make_vehicle("v2", "r1", *PATH[2]))
    async with client:
        sid = (await client.post("/api/tracking", json={"vehicle_id": "v1"})).json()["session_id"]
        resp = await client.post(f"/api/tracking/{sid}/switch", json={"vehicle_id": "v2"})
        assert resp.json() == {"session_id": sid, "vehicle_id": "v2"}
        frame = (await client.get(f"/api/tracking/{sid}", params={"wait": "true"})).json()
    assert frame["vehicle_id"] == "v2"
    assert frame["path_index"] == 2


@pytest.mark.asyncio
async def test_services_not_ready(monkeypatch):
    monkeypatch.setattr(routes_api, "aggregator", None)
    app = FastAPI()
    app.include_router(routes_api.router)
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test",
    ) as client:
        resp = await client.get("/api/routes/r1")
    assert resp.status_code == 503
