"""Integration tests for the REST adapter."""

import pytest
from fastapi.testclient import TestClient

from superpod_sim.adapters.inbound.rest_api import create_app


@pytest.fixture
def client(engine):
    return TestClient(create_app(engine))


@pytest.mark.integration
class TestSystemEndpoints:
    """Health, stats and command listing."""

    def test_health(self, client):
        """Health reports the cluster shape."""
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["cluster"] == "DGX SuperPOD"
        assert body["total_nodes"] == 8
        assert body["total_gpus"] == 64
        assert body["drift_running"] is False

    def test_stats(self, client):
        body = client.get("/stats").json()
        assert body["healthy_gpus"] == 64
        assert body["nodes_by_slurm_state"] == {"idle": 8}

    def test_list_commands(self, client, engine):
        assert client.get("/commands").json() == engine.commands


@pytest.mark.integration
class TestCommandEndpoint:
    """Running command lines over HTTP."""

    def test_run_in_session(self, client):
        """Commands without a node run in the engine session."""
        body = client.post("/commands", json={"command": "hostname"}).json()
        assert body == {"output": "dgx-00\n", "exit_code": 0, "node": "dgx-00"}

    def test_run_on_node(self, client):
        body = client.post("/commands", json={"command": "hostname", "node": "dgx-05"}).json()
        assert body["output"] == "dgx-05\n"
        assert body["node"] == "dgx-05"

    def test_unknown_node(self, client):
        response = client.post("/commands", json={"command": "hostname", "node": "dgx-99"})
        assert response.status_code == 404

    def test_command_failure_is_not_http_error(self, client):
        """Tool failures come back as exit codes."""
        response = client.post("/commands", json={"command": "frobnicate"})
        assert response.status_code == 200
        assert response.json()["exit_code"] == 127


@pytest.mark.integration
class TestFaultEndpoints:
    """Fault injection and clearing."""

    def test_inject_and_clear(self, client, engine):
        """Injected faults show up in tool output and clear exactly."""
        baseline = engine.snapshot()
        response = client.post("/faults", json={"node_id": "dgx-00", "gpu_id": 0, "kind": "xid"})
        assert response.status_code == 200
        body = response.json()
        assert body["health_status"] == "Critical"
        assert body["xid_errors"] == [43]

        output = client.post("/commands", json={"command": "nvidia-smi -q -i 0"}).json()["output"]
        assert "Xid 43" in output

        cleared = client.post("/faults/clear", json={"node_id": "dgx-00", "gpu_id": 0}).json()
        assert cleared["cleared"] == 1
        assert cleared["gpu"]["health_status"] == "OK"
        assert engine.snapshot() == baseline

    def test_catalogued_xid(self, client):
        body = client.post(
            "/faults", json={"node_id": "dgx-01", "gpu_id": 2, "kind": "xid", "xid_code": 48}
        ).json()
        assert body["xid_errors"] == [48]

    def test_clear_all(self, client):
        client.post("/faults", json={"node_id": "dgx-02", "gpu_id": 3, "kind": "thermal"})
        assert client.post("/faults/clear", json={}).json() == {"cleared": 64}

    def test_bad_requests(self, client):
        """Unknown targets are 404, bad kinds are 400."""
        assert client.post("/faults", json={"node_id": "dgx-99", "gpu_id": 0, "kind": "xid"}).status_code == 404
        assert client.post("/faults", json={"node_id": "dgx-00", "gpu_id": 0, "kind": "gremlin"}).status_code == 400
        assert client.post("/faults", json={"node_id": "dgx-00", "gpu_id": -1, "kind": "xid"}).status_code == 422
        assert client.post("/faults/clear", json={"node_id": "dgx-00"}).status_code == 400


@pytest.mark.integration
class TestClusterEndpoints:
    """Scheduler state, reset and persistence."""

    def test_slurm_state(self, client):
        response = client.put("/nodes/dgx-01/slurm-state", json={"state": "DRAIN", "reason": "maintenance"})
        assert response.status_code == 200
        assert response.json()["slurm_state"] == "drain"
        assert response.json()["slurm_reason"] == "maintenance"
        assert client.put("/nodes/dgx-01/slurm-state", json={"state": "asleep"}).status_code == 400
        assert client.put("/nodes/dgx-42/slurm-state", json={"state": "idle"}).status_code == 404

    def test_reset(self, client, engine):
        client.post("/faults", json={"node_id": "dgx-00", "gpu_id": 0, "kind": "ecc"})
        assert client.post("/cluster/reset").json() == {"status": "reset"}
        assert engine.stats().critical_gpus == 0

    def test_export_import(self, client, engine):
        """An exported document imports back unchanged."""
        client.post("/faults", json={"node_id": "dgx-00", "gpu_id": 1, "kind": "power"})
        exported = client.get("/cluster/export")
        assert exported.headers["content-type"].startswith("application/json")

        client.post("/cluster/reset")
        response = client.post("/cluster/import", content=exported.content)
        assert response.json() == {"status": "imported", "name": "DGX SuperPOD", "nodes": 8}
        assert engine.export_cluster() == exported.text

    def test_invalid_import(self, client, engine):
        before = engine.snapshot()
        response = client.post("/cluster/import", content=b'{"name": "x", "nodes": [{"id": "a"}]}')
        assert response.status_code == 422
        assert isinstance(response.json()["detail"], list)
        assert engine.snapshot() == before


@pytest.mark.integration
class TestDriftEndpoints:
    """Starting and stopping drift."""

    def test_start_stop(self, client):
        assert client.post("/drift/start").json() == {"drift_running": True}
        assert client.get("/health").json()["drift_running"] is True
        assert client.post("/drift/stop").json() == {"drift_running": False}
