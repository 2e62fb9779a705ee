"""
Tests for the execution REST API.

Runs the real orchestrator behind FastAPI's TestClient with in-memory
sessions, worktrees and merges.
"""

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

from api.execution_routes import create_app
from parallel_runner.config import RunnerConfig
from parallel_runner.parallel.events import EventChannel
from parallel_runner.parallel.orchestrator import ExecutionOrchestrator
from test_orchestrator import ConcurrencyTracker, FakeSession, MockMergeCoordinator, MockWorktreeManager


@pytest.fixture
def tracker():
    return ConcurrencyTracker()


@pytest.fixture
def orchestrator(tracker, tmp_path):
    worktrees = MockWorktreeManager()
    worktrees.project_path = tmp_path
    return ExecutionOrchestrator(
        config=RunnerConfig(max_parallel_sessions=2),
        worktree_manager=worktrees,
        merge_coordinator=MockMergeCoordinator(),
        events=EventChannel(),
        session_factory=lambda item, path: FakeSession(item, tracker),
    )


@pytest.fixture
def client(orchestrator):
    with TestClient(create_app(orchestrator)) as test_client:
        yield test_client


ITEMS = {
    'items': [
        {'id': "a", 'title': "First"},
        {'id': "b", 'title': "Second", 'dependencies': ["a"]},
        {'id': "c"},
    ]
}


class TestPlanEndpoint:

    def test_plan(self, client):
        print("\n=== Test: Plan Endpoint ===")

        response = client.post("/api/execution/plan", json=ITEMS)

        assert response.status_code == 200
        data = response.json()
        assert data['waves'] == [
            {'wave_number': 0, 'item_ids': ["a", "c"]},
            {'wave_number': 1, 'item_ids': ["b"]},
        ]
        assert data['total_items'] == 3
        assert data['estimated_parallelism'] == 2

        print("[PASS]")

    def test_plan_cycle(self, client):
        response = client.post("/api/execution/plan", json={
            'items': [{'id': "a", 'dependencies': ["b"]}, {'id': "b", 'dependencies': ["a"]}]
        })

        assert response.status_code == 400
        detail = response.json()['detail']
        assert detail['code'] == "E0042"
        assert detail['kind'] == "cycle"
        assert detail['cycle'][0] == detail['cycle'][-1]

    def test_plan_invalid_reference(self, client):
        response = client.post("/api/execution/plan", json={
            'items': [{'id': "a", 'dependencies': ["ghost"]}]
        })

        assert response.status_code == 400
        assert response.json()['detail']['references'] == [["a", "ghost"]]

    def test_plan_scans_specs(self, client, tmp_path):
        spec_dir = tmp_path / ".moai" / "specs" / "SPEC-001"
        spec_dir.mkdir(parents=True)
        (spec_dir / "spec.md").write_text("---\nid: SPEC-001\ntitle: Login\n---\n")

        response = client.post("/api/execution/plan", json={})

        assert response.status_code == 200
        assert response.json()['waves'] == [{'wave_number': 0, 'item_ids': ["SPEC-001"]}]

    def test_plan_rejects_empty_id(self, client):
        response = client.post("/api/execution/plan", json={'items': [{'id': ""}]})

        assert response.status_code == 422


class TestRunEndpoints:

    def test_start_runs_plan(self, client, tracker):
        print("\n=== Test: Start Endpoint ===")

        response = client.post("/api/execution/start", json=ITEMS)

        assert response.status_code == 202
        assert response.json()['status'] == "started"

        # TestClient returns once background tasks have finished
        status = client.get("/api/execution/status").json()
        assert status['state'] == "completed"
        assert sorted(status['completed_items']) == ["a", "b", "c"]
        assert tracker.max_concurrent <= 2

        snapshot = client.get("/api/execution/snapshot").json()
        assert snapshot['current_wave_index'] == 2

        print("[PASS]")

    def test_start_while_running(self, client, orchestrator):
        orchestrator._in_progress = True

        response = client.post("/api/execution/start", json=ITEMS)

        assert response.status_code == 409

    def test_start_while_reserved(self, client, orchestrator, tracker):
        orchestrator.reserve()

        response = client.post("/api/execution/start", json=ITEMS)

        assert response.status_code == 409
        assert tracker.started == []

    def test_start_releases_reservation(self, client, orchestrator):
        assert client.post("/api/execution/start", json=ITEMS).status_code == 202
        assert orchestrator.is_running is False

        assert client.post("/api/execution/start", json=ITEMS).status_code == 202
        assert client.get("/api/execution/status").json()["state"] == "completed"

    def test_invalid_plan_does_not_reserve(self, client, orchestrator):
        response = client.post("/api/execution/start", json={
            'items': [{'id': "a", 'dependencies': ["a"]}]
        })

        assert response.status_code == 400
        assert orchestrator.is_running is False

    def test_stop_when_idle(self, client):
        response = client.post("/api/execution/stop")

        assert response.status_code == 200
        assert response.json() == {'state': "idle", 'cancelled_sessions': 0}

    def test_restore(self, client):
        response = client.post("/api/execution/restore", json={
            'completed_work_item_ids': ["a"], 'current_wave_index': 1
        })

        assert response.status_code == 200
        assert client.get("/api/execution/snapshot").json() == {
            'completed_work_item_ids': ["a"], 'current_wave_index': 1
        }

    def test_restore_rejects_negative_wave(self, client):
        response = client.post("/api/execution/restore", json={'current_wave_index': -1})

        assert response.status_code == 422

    def test_events(self, client):
        client.post("/api/execution/start", json={'items': [{'id': "a"}]})

        types = [event['type'] for event in client.get("/api/events").json()]

        assert types == ["wave_started", "wave_completed", "execution_complete"]
        assert client.get("/api/events").json() == []


class TestSessionAndMergeEndpoints:

    def test_cancel_unknown_session(self, client):
        response = client.post("/api/sessions/missing/cancel")

        assert response.status_code == 404

    def test_retry_merge_without_worktree(self, client):
        response = client.post("/api/merges/a/retry")

        assert response.status_code == 404

    def test_retry_merge_after_conflict(self, client, orchestrator):
        orchestrator.merge_coordinator.conflict_ids.add("a")
        client.post("/api/execution/start", json={'items': [{'id': "a"}]})
        assert client.get("/api/execution/status").json()['completed_items'] == []

        response = client.post("/api/merges/a/retry")

        assert response.status_code == 200
        assert response.json()['success'] is True
        assert client.get("/api/execution/snapshot").json()['completed_work_item_ids'] == ["a"]


def test_unconfigured_router_returns_503():
    with TestClient(create_app(None)) as client:
        response = client.get("/api/execution/status")

    assert response.status_code == 503
