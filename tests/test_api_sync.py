from __future__ import annotations

import os
import threading
from datetime import datetime, timezone
from pathlib import Path

import dirsync.db.session as db_session_module
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from dirsync.api.app import create_app
from dirsync.core.config import get_settings
from dirsync.db.init_db import initialize_database
from dirsync.db.models import SyncRun, SyncRunStatus
from dirsync.runs.reporter import RunReporter

WAIT_SECONDS = 10


class GatedReconciler:
    def __init__(self) -> None:
        self.started = threading.Event()
        self.release = threading.Event()

    def __call__(self, reporter: RunReporter) -> None:
        self.started.set()
        reporter.on_group_processed(2)
        if not self.release.wait(timeout=WAIT_SECONDS):
            raise TimeoutError("reconciler was never released")
        reporter.on_member_added()


class SwitchableSessionFactory:
    def __init__(self) -> None:
        self._factory = db_session_module.get_session_factory()
        self.outage = threading.Event()

    def __call__(self) -> Session:
        if self.outage.is_set():
            raise OperationalError("SELECT sync_runs", {}, Exception("database is locked"))
        return self._factory()


def _prepare_env(tmp_path: Path) -> None:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)

    os.environ["DIRSYNC_STATE_ROOT"] = state_root.as_posix()
    os.environ["DIRSYNC_HISTORY_DEFAULT_LIMIT"] = "10"
    os.environ["DIRSYNC_HISTORY_MAX_LIMIT"] = "200"
    os.environ.pop("DIRSYNC_RECONCILER", None)
    os.environ.pop("DIRSYNC_RUN_STALE_AFTER_SECONDS", None)

    get_settings.cache_clear()
    db_session_module.reset_engine()
    initialize_database()


def test_sync_routes_follow_run_lifecycle(tmp_path: Path) -> None:
    _prepare_env(tmp_path)
    reconciler = GatedReconciler()
    app = create_app(reconciler=reconciler)

    with TestClient(app) as client:
        try:
            started = client.post("/api/v1/sync/uitvoeren", headers={"X-Triggered-By": "alice@example.org"})
            assert started.status_code == 202
            run = started.json()
            assert run["status"] == "Bezig"
            assert run["gestartDoor"] == "alice@example.org"
            assert run["voltooidOp"] is None
            assert isinstance(run["id"], str)

            conflict = client.post("/api/v1/sync/uitvoeren", headers={"X-Triggered-By": "bob"})
            assert conflict.status_code == 409
            assert f"run {run['id']}" in conflict.json()["detail"]

            assert reconciler.started.wait(WAIT_SECONDS)
            status = client.get("/api/v1/sync/status")
            assert status.status_code == 200
            assert status.json()["isSyncBezig"] is True
            assert status.json()["huidigeSyncId"] == run["id"]
        finally:
            reconciler.release.set()

        assert app.state.job_runner.wait(int(run["id"]), timeout=WAIT_SECONDS)

        history = client.get("/api/v1/sync/geschiedenis", params={"aantal": 1})
        assert history.status_code == 200
        items = history.json()
        assert len(items) == 1
        assert items[0]["id"] == run["id"]
        assert items[0]["status"] == "Voltooid"
        assert items[0]["groepenVerwerkt"] == 2
        assert items[0]["medewerkersToegevoegd"] == 1
        assert items[0]["voltooidOp"] is not None

        status = client.get("/api/v1/sync/status").json()
        assert status["isSyncBezig"] is False
        assert status["huidigeSyncId"] is None
        assert status["laatsteSyncStatus"] == "Voltooid"

        detail = client.get(f"/api/v1/sync/runs/{run['id']}")
        assert detail.status_code == 200
        assert detail.json() == items[0]

        assert client.get("/api/v1/sync/runs/999999").status_code == 404
        assert client.get("/api/v1/sync/geschiedenis", params={"aantal": 0}).status_code == 422


def test_history_defaults_to_ten_newest_runs(tmp_path: Path) -> None:
    _prepare_env(tmp_path)
    app = create_app(reconciler=lambda reporter: None)

    with TestClient(app) as client:
        runner = app.state.job_runner
        for index in range(12):
            run_id = runner.start_run(f"user-{index}")
            assert runner.wait(run_id, timeout=WAIT_SECONDS)

        history = client.get("/api/v1/sync/geschiedenis")
        assert history.status_code == 200
        items = history.json()

    assert len(items) == 10
    assert [item["gestartDoor"] for item in items] == [f"user-{index}" for index in range(11, 1, -1)]
    assert all(item["status"] == "Voltooid" for item in items)


def test_startup_fails_orphaned_running_record(tmp_path: Path) -> None:
    _prepare_env(tmp_path)
    now = datetime.now(tz=timezone.utc)
    with db_session_module.get_session_factory()() as session:
        session.add(SyncRun(status=SyncRunStatus.RUNNING, started_by="previous", started_at=now, updated_at=now))
        session.commit()

    app = create_app(reconciler=lambda reporter: None)
    with TestClient(app) as client:
        status = client.get("/api/v1/sync/status").json()
        history = client.get("/api/v1/sync/geschiedenis").json()

    assert status["isSyncBezig"] is False
    assert status["laatsteSyncStatus"] == "Mislukt"
    assert history[0]["status"] == "Mislukt"
    assert history[0]["voltooidOp"] is not None
    assert history[0]["foutmelding"]


def test_sync_routes_unavailable_before_startup(tmp_path: Path) -> None:
    _prepare_env(tmp_path)
    client = TestClient(create_app(reconciler=lambda reporter: None))

    assert client.get("/api/v1/sync/status").status_code == 503
    assert client.post("/api/v1/sync/uitvoeren").status_code == 503


def test_health_reports_database(tmp_path: Path) -> None:
    _prepare_env(tmp_path)
    with TestClient(create_app(reconciler=lambda reporter: None)) as client:
        response = client.get("/api/v1/health")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["database"] == "ok"
    assert payload["service"] == "DirSync"


def test_sync_routes_answer_503_while_store_is_down(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _prepare_env(tmp_path)
    sessions = SwitchableSessionFactory()
    monkeypatch.setattr("dirsync.api.app.get_session_factory", lambda: sessions)
    app = create_app(reconciler=lambda reporter: None)

    with TestClient(app) as client:
        sessions.outage.set()
        started = client.post("/api/v1/sync/uitvoeren", headers={"X-Triggered-By": "alice"})
        assert started.status_code == 503
        assert "unavailable" in started.json()["detail"]
        assert client.get("/api/v1/sync/geschiedenis").status_code == 503
        assert client.get("/api/v1/sync/status").status_code == 503

        sessions.outage.clear()
        retried = client.post("/api/v1/sync/uitvoeren", headers={"X-Triggered-By": "alice"})
        assert retried.status_code == 202
        assert app.state.job_runner.wait(int(retried.json()["id"]), timeout=WAIT_SECONDS)

        history = client.get("/api/v1/sync/geschiedenis").json()

    # The refused request left no record behind.
    assert [item["id"] for item in history] == [retried.json()["id"]]
    assert history[0]["status"] == "Voltooid"


def test_history_rejects_count_above_maximum(tmp_path: Path) -> None:
    _prepare_env(tmp_path)
    with TestClient(create_app(reconciler=lambda reporter: None)) as client:
        assert client.get("/api/v1/sync/geschiedenis", params={"aantal": 200}).status_code == 200
        rejected = client.get("/api/v1/sync/geschiedenis", params={"aantal": 201})

    assert rejected.status_code == 422
    assert "200" in rejected.json()["detail"]


def test_start_after_runner_shutdown_answers_503(tmp_path: Path) -> None:
    _prepare_env(tmp_path)
    app = create_app(reconciler=lambda reporter: None)

    with TestClient(app) as client:
        app.state.job_runner.shutdown()
        response = client.post("/api/v1/sync/uitvoeren", headers={"X-Triggered-By": "alice"})
        history = client.get("/api/v1/sync/geschiedenis").json()

    assert response.status_code == 503
    assert "shut down" in response.json()["detail"]
    assert history == []
