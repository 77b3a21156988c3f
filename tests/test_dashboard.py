"""
Tests for the decision state dashboard API.
"""

import asyncio
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from conftest import START_TIME, ScriptedWorker, red_report
from prp_loop.circuit_breaker import CircuitBreaker
from prp_loop.dashboard import create_dashboard_app, format_time_remaining, time_ago
from prp_loop.models import Phase
from prp_loop.orchestrator import LoopOrchestrator
from prp_loop.state_store import SESSION_FILE


@pytest.fixture
def client(test_config, store, clock):
    return TestClient(create_dashboard_app(config=test_config, store=store, clock=clock))


@pytest.fixture
def session_id(test_config, store, clock, fake_sleep):
    """Session with two recorded ticks."""
    worker = ScriptedWorker([red_report(1), red_report(2)])
    orchestrator = LoopOrchestrator(worker, config=test_config, store=store, clock=clock, sleep=fake_sleep)
    session = orchestrator.start("PRPs/feature.md")
    asyncio.run(orchestrator.run(max_ticks=2))
    return session.session_id


class TestTimeHelpers:

    @pytest.mark.parametrize("delta,expected", [
        (timedelta(seconds=30), "just now"),
        (timedelta(minutes=5), "5m ago"),
        (timedelta(hours=3, minutes=10), "3h ago"),
        (timedelta(days=2, hours=1), "2d ago"),
    ])
    def test_time_ago(self, delta, expected):
        assert time_ago(START_TIME - delta, START_TIME) == expected

    def test_time_ago_never(self):
        assert time_ago(None) == "never"

    def test_format_time_remaining(self):
        assert format_time_remaining(12 * 60 + 5) == "12m 5s"
        assert format_time_remaining(0) is None


class TestReadEndpoints:

    def test_health(self, client, session_root):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "session_root": str(session_root)}

    def test_sessions(self, client, session_id):
        data = client.get("/api/sessions").json()
        assert [s["session_id"] for s in data] == [session_id]
        assert data[0]["current_iteration"] == 2
        assert data[0]["last_activity_ago"] == "just now"

    def test_status(self, client, session_id):
        data = client.get(f"/api/sessions/{session_id}/status").json()
        assert data["status"] == "running"
        assert data["current_phase"] == "RED"
        assert data["phases_completed"] == []

    def test_circuit_breaker(self, client, session_id):
        data = client.get(f"/api/sessions/{session_id}/circuit-breaker").json()
        assert data["state"] == "CLOSED"

    def test_dual_gate(self, client, session_id):
        data = client.get(f"/api/sessions/{session_id}/dual-gate").json()
        assert data["phase"] == "RED"
        assert data["can_exit"] is False

    def test_metrics(self, client, session_id):
        data = client.get(f"/api/sessions/{session_id}/metrics").json()
        assert data["current_phase"] == "RED"
        assert [s["counters"]["tests_generated"] for s in data["phases"]["RED"]] == [1, 2]

    def test_rate_limit(self, client, session_id):
        data = client.get(f"/api/sessions/{session_id}/rate-limit").json()
        assert data["hourly"]["calls_made"] == 2
        assert data["reset_in"] == "60m 0s"
        assert data["cooldown_remaining"] is None

    def test_history(self, client, session_id):
        data = client.get(f"/api/sessions/{session_id}/history?count=1").json()
        assert data["count"] == 1
        assert data["entries"][0]["ITERATION"] == 1

    def test_history_count_validated(self, client, session_id):
        assert client.get(f"/api/sessions/{session_id}/history?count=0").status_code == 422

    def test_all(self, client, session_id):
        data = client.get(f"/api/sessions/{session_id}/all").json()
        assert set(data) == {
            "timestamp", "session", "circuit_breaker", "dual_gate",
            "metrics", "rate_limit", "recent_history",
        }
        assert len(data["recent_history"]) == 2


class TestErrors:

    def test_unknown_session(self, client):
        response = client.get("/api/sessions/missing/status")
        assert response.status_code == 404
        assert response.json()["error"]["error_code"] == "SESSION_NOT_FOUND"

    def test_unknown_session_history(self, client):
        assert client.get("/api/sessions/missing/history").status_code == 404

    def test_corrupted_session(self, client, store, session_id):
        (store.session_dir(session_id) / SESSION_FILE).write_text("{")
        response = client.get(f"/api/sessions/{session_id}/status")
        assert response.status_code == 422
        assert response.json()["error"]["error_code"] == "STATE_CORRUPTION"


class TestActions:

    def test_pause_and_resume(self, client, session_id):
        response = client.post(f"/api/sessions/{session_id}/pause", json={"reason": "Checking output"})
        assert response.status_code == 200
        assert response.json()["session"]["status"] == "paused"
        assert response.json()["session"]["pause_reason"] == "Checking output"

        response = client.post(f"/api/sessions/{session_id}/resume")
        assert response.status_code == 200
        assert response.json()["session"]["status"] == "running"

    def test_pause_without_body(self, client, session_id):
        response = client.post(f"/api/sessions/{session_id}/pause")
        assert response.status_code == 200
        assert response.json()["session"]["pause_reason"] == "Paused from dashboard"

    def test_resume_refused_while_breaker_open(self, client, store, session_id, clock):
        client.post(f"/api/sessions/{session_id}/pause")
        breaker = CircuitBreaker(store.load_breaker(session_id), clock=clock)
        for _ in range(3):
            breaker.record_tick(Phase.RED, False)
        store.save_breaker(session_id, breaker.state)

        response = client.post(f"/api/sessions/{session_id}/resume")

        assert response.status_code == 409
        assert response.json()["error"]["error_code"] == "CB_OPEN"

    def test_resume_running_conflict(self, client, session_id):
        assert client.post(f"/api/sessions/{session_id}/resume").status_code == 409

    def test_resume_refused_at_hourly_limit(self, client, store, session_id, test_config):
        client.post(f"/api/sessions/{session_id}/pause")
        rate_limit = store.load_rate_limit(session_id)
        rate_limit.hourly.calls_made = test_config.rate_limit.hourly_limit
        store.save_rate_limit(session_id, rate_limit)

        response = client.post(f"/api/sessions/{session_id}/resume")

        assert response.status_code == 409
        assert response.json()["error"]["error_code"] == "HOURLY_LIMIT"
        assert store.load_session(session_id).status.value == "paused"
