"""Tests for the HTTP service wrapping the orchestrator."""

import time

import pytest
from fastapi.testclient import TestClient
from prometheus_client import CollectorRegistry

from doubles import FakeDecomposer, FakeResearchAgent, make_agents, make_escalation
from src.swarm import main
from src.swarm.events.metrics import SwarmMetrics
from src.swarm.orchestrator import Orchestrator


def _wait_for_status(client, execution_id, statuses, timeout=5.0):
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/executions/{execution_id}").json()
        if body["status"] in statuses or time.monotonic() > deadline:
            return body
        time.sleep(0.01)


@pytest.fixture
def service_env(monkeypatch, tmp_path):
    monkeypatch.setenv("SWARM_RUNTIME_DIR", str(tmp_path / "metrics"))
    monkeypatch.setenv("SWARM_MAX_RETRIES", "0")
    return tmp_path / "metrics"


@pytest.fixture
def wired(monkeypatch, service_env):
    """Serve an orchestrator over fake agents with an isolated registry."""
    built = {}

    def _agents():
        return built.get("agents") or make_agents()

    def build(cfg):
        built["metrics"] = SwarmMetrics(registry=CollectorRegistry())
        built["orchestrator"] = Orchestrator(
            agents=_agents(),
            decomposer=FakeDecomposer(),
            settings=cfg,
            metrics=built["metrics"],
            escalation=make_escalation(),
        )
        return built["orchestrator"]

    monkeypatch.setattr(main, "_build_orchestrator", build)
    return built


class TestUnconfiguredService:
    def test_health_without_agents(self, service_env):
        with TestClient(main.app) as client:
            response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    @pytest.mark.parametrize(
        "method,path",
        [
            ("get", "/status"),
            ("post", "/executions"),
            ("get", "/executions/exec_1_abcdefghi"),
        ],
    )
    def test_execution_endpoints_need_agents(self, service_env, method, path):
        with TestClient(main.app) as client:
            kwargs = {"json": {"task": "x"}} if method == "post" else {}
            response = getattr(client, method)(path, **kwargs)

        assert response.status_code == 503


class TestExecutions:
    def test_submit_and_poll_until_completed(self, wired):
        with TestClient(main.app) as client:
            response = client.post(
                "/executions",
                json={"task": "Build a todo API", "options": {"priority": "high"}},
            )
            assert response.status_code == 202
            body = response.json()
            assert body["status"] == "accepted"

            execution = _wait_for_status(
                client, body["execution_id"], {"completed", "failed"}
            )

        assert execution["status"] == "completed"
        assert execution["current_stage"] == "completed"
        assert execution["options"] == {"priority": "high"}
        assert execution["results"]["result"]["code"] == "integrated code"

    def test_failed_execution_is_reported_not_raised(self, wired):
        wired["agents"] = make_agents(research=FakeResearchAgent(RuntimeError("down")))

        with TestClient(main.app) as client:
            execution_id = client.post("/executions", json={"task": "t"}).json()[
                "execution_id"
            ]
            execution = _wait_for_status(client, execution_id, {"failed"})
            health = client.get("/health")

        assert execution["status"] == "failed"
        assert execution["error"]["phase"] == "research"
        assert execution["error"]["message"] == "down"
        assert health.status_code == 200

    def test_unknown_execution_is_404(self, wired):
        with TestClient(main.app) as client:
            response = client.get("/executions/exec_0_missing00")

        assert response.status_code == 404
        assert "exec_0_missing00" in response.json()["detail"]

    def test_status_lists_agents_and_executions(self, wired):
        with TestClient(main.app) as client:
            execution_id = client.post("/executions", json={"task": "t"}).json()[
                "execution_id"
            ]
            _wait_for_status(client, execution_id, {"completed"})
            status = client.get("/status").json()

        assert set(status["agents"]) == {"research", "spec", "dev", "qa", "integration"}
        assert [e["id"] for e in status["executions"]] == [execution_id]
        assert status["metrics"]["tasks_completed"] == 1

    def test_metrics_endpoint_serves_orchestrator_registry(self, wired):
        with TestClient(main.app) as client:
            execution_id = client.post("/executions", json={"task": "t"}).json()[
                "execution_id"
            ]
            _wait_for_status(client, execution_id, {"completed"})
            response = client.get("/metrics")

        assert response.status_code == 200
        assert "text/plain" in response.headers["content-type"]
        assert "swarm_tasks_completed_total 1.0" in response.text

    def test_shutdown_writes_metrics_snapshot(self, wired, service_env):
        with TestClient(main.app):
            pass

        snapshots = list(service_env.glob("metrics_*.json"))
        assert len(snapshots) == 1
        assert main.orchestrator is None


def test_factories_are_loaded_from_settings(monkeypatch, service_env):
    monkeypatch.setenv("SWARM_AGENT_FACTORY", "doubles:build_agents")
    monkeypatch.setenv("SWARM_DECOMPOSER_FACTORY", "doubles:build_decomposer")

    with TestClient(main.app) as client:
        response = client.get("/status")

    assert response.status_code == 200
    assert set(response.json()["agents"]) == {
        "research",
        "spec",
        "dev",
        "qa",
        "integration",
    }


def test_redact_secret():
    assert main._redact_secret(None) == "<unset>"
    assert main._redact_secret("abc") == "***"
    assert main._redact_secret("ghp_abcdef") == "ghp_******"
