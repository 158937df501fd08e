import time

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from loadbench.api.routes import runs, scenarios
from loadbench.connectors.memory import (
    InMemoryArtifactStore,
    InMemoryScenarioStore,
    SimulatedContainerService,
)
from loadbench.core.orchestrator import OrchestratorService, set_orchestrator
from loadbench.core.state_machine import RunSettings
from loadbench.models import RunStatus, Scenario


def _service(**containers_kwargs) -> OrchestratorService:
    artifacts = InMemoryArtifactStore()
    return OrchestratorService(
        scenario_store=InMemoryScenarioStore(),
        container_service=SimulatedContainerService(artifact_store=artifacts, **containers_kwargs),
        artifact_store=artifacts,
        settings=RunSettings(
            poll_interval_seconds=0.01,
            cancel_grace_seconds=1.0,
            max_fleet_size=10,
        ),
    )


def _scenario_body(**overrides) -> dict:
    body = {
        "scenario_id": "scn1",
        "name": "checkout",
        "concurrency": 40,
        "worker_capacity": 20,
        "duration_seconds": 1,
        "regions": ["us-east-1", "eu-west-1"],
    }
    body.update(overrides)
    return body


@pytest.fixture
def service():
    svc = _service(run_seconds=0.05)
    set_orchestrator(svc)
    yield svc
    set_orchestrator(None)


@pytest.mark.asyncio
async def test_create_and_cancel_run_routes(service):
    await scenarios.create_scenario(Scenario(**_scenario_body()))

    created = await runs.create_run(runs.RunCreateRequest(scenario_id="scn1"))
    assert created.status == RunStatus.PENDING.value

    cancelled = await runs.cancel_run(created.test_id)
    assert cancelled.test_id == created.test_id

    run = await service.wait_for_run(created.test_id, timeout=5)
    assert run.status == RunStatus.CANCELLED

    with pytest.raises(HTTPException) as exc:
        await runs.cancel_run(created.test_id)
    assert exc.value.status_code == 409


@pytest.mark.asyncio
async def test_unknown_ids_map_to_404(service):
    for call in (
        runs.get_run("missing"),
        runs.cancel_run("missing"),
        runs.create_run(runs.RunCreateRequest(scenario_id="missing")),
        scenarios.get_scenario("missing"),
        scenarios.list_scenario_runs("missing"),
    ):
        with pytest.raises(HTTPException) as exc:
            await call
        assert exc.value.status_code == 404


@pytest.mark.asyncio
async def test_capacity_exceeded_maps_to_422(service):
    await scenarios.create_scenario(Scenario(**_scenario_body(concurrency=1000)))

    with pytest.raises(HTTPException) as exc:
        await runs.create_run(runs.RunCreateRequest(scenario_id="scn1"))

    assert exc.value.status_code == 422
    assert exc.value.detail["reason"] == "CapacityExceeded"
    assert service.active_run_count == 0


@pytest.mark.asyncio
async def test_telemetry_is_relayed_not_stored(service):
    sub = service.telemetry.subscribe("run-x")

    await runs.ingest_telemetry("run-x", runs.TelemetrySample(worker="w0", metrics={"rps": 12}))

    event = sub.get_nowait()
    assert event["kind"] == "sample"
    assert event["worker"] == "w0"
    assert event["metrics"] == {"rps": 12}
    with pytest.raises(HTTPException) as exc:
        await runs.get_run("run-x")
    assert exc.value.status_code == 404


def test_http_run_lifecycle(service):
    from loadbench.main import app

    with TestClient(app) as client:
        assert client.get("/health").json()["status"] == "healthy"

        resp = client.post("/api/scenarios/", json=_scenario_body())
        assert resp.status_code == 201

        resp = client.post("/api/scenarios/", json=_scenario_body(regions=[]))
        assert resp.status_code == 422

        resp = client.post("/api/runs/", json={"scenario_id": "scn1"})
        assert resp.status_code == 201
        test_id = resp.json()["test_id"]

        status = None
        deadline = time.monotonic() + 5.0
        while time.monotonic() < deadline:
            status = client.get(f"/api/runs/{test_id}").json()["status"]
            if status in ("COMPLETE", "PARTIAL", "FAILED", "CANCELLED"):
                break
            time.sleep(0.02)
        assert status == "COMPLETE"

        history = client.get("/api/scenarios/scn1/runs").json()
        assert history["total"] == 1
        assert history["runs"][0]["result"]["worker_count"] == 2

        assert client.post(f"/api/runs/{test_id}/cancel").status_code == 409
        assert client.post("/api/runs/missing/cancel").status_code == 404


def test_websocket_streams_relayed_samples(service):
    from loadbench.main import app

    with TestClient(app) as client:
        with client.websocket_connect("/ws/runs/run-ws") as ws:
            hello = ws.receive_json()
            assert hello["kind"] == "connected"
            assert hello["run"] is None

            resp = client.post(
                "/api/runs/run-ws/telemetry",
                json={"worker": "w1", "region": "us-east-1", "metrics": {"p99_ms": 42.0}},
            )
            assert resp.status_code == 204

            sample = ws.receive_json()
            assert sample["kind"] == "sample"
            assert sample["region"] == "us-east-1"
            assert sample["metrics"]["p99_ms"] == 42.0
