"""
Job and monitoring endpoints (TestClient, no running server).
- POST /api/jobs/{job}/run: trigger type header, secret check, 400 for unknown job, 500 on uncaught error
- pause/resume toggle the control row
- GET /api/notifications/summary returns cascading counts
"""
import sys
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

import job_runner


def test_run_unknown_job_is_400(client, monkeypatch):
    monkeypatch.delenv("JOB_TRIGGER_SECRET", raising=False)
    response = client.post("/api/jobs/does-not-exist/run")
    assert response.status_code == 400
    assert "generate-invoices" in response.json()["detail"]


def test_run_requires_secret_when_configured(client, monkeypatch):
    monkeypatch.setenv("JOB_TRIGGER_SECRET", "s3cret")
    response = client.post("/api/jobs/generate-invoices/run", headers={"X-Job-Secret": "wrong"})
    assert response.status_code == 401


def test_manual_run_returns_results(client, monkeypatch):
    monkeypatch.setenv("JOB_TRIGGER_SECRET", "s3cret")
    runner = AsyncMock(return_value={"processed": 3, "errors": [], "status": "success", "log_id": "log-1"})
    with patch.dict(job_runner.JOB_RUNNERS, {"generate-invoices": runner}), \
            patch("routes.jobs.create_audit_log", new_callable=AsyncMock) as audit:
        response = client.post(
            "/api/jobs/generate-invoices/run",
            json={"dry_run": True, "now": "2025-03-10T09:00:00Z"},
            headers={"X-Job-Secret": "s3cret"},
        )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["results"]["processed"] == 3
    kwargs = runner.await_args.kwargs
    assert kwargs["trigger_type"].value == "manual"
    assert kwargs["dry_run"] is True
    assert kwargs["now"] == datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)
    assert audit.call_args.kwargs["action"].value == "JOB_MANUAL_RUN"


def test_scheduled_trigger_header_and_paused_response(client, monkeypatch):
    monkeypatch.delenv("JOB_TRIGGER_SECRET", raising=False)
    runner = AsyncMock(return_value={"skipped": True, "message": "Job pausado", "log_id": "log-2"})
    with patch.dict(job_runner.JOB_RUNNERS, {"generate-invoices": runner}):
        response = client.post("/api/jobs/generate-invoices/run", headers={"X-Trigger-Type": "scheduled"})

    assert response.status_code == 200
    assert response.json() == {"success": True, "skipped": True, "message": "Job pausado"}
    assert runner.await_args.kwargs["trigger_type"].value == "scheduled"


def test_invalid_trigger_type_is_400(client, monkeypatch):
    monkeypatch.delenv("JOB_TRIGGER_SECRET", raising=False)
    response = client.post("/api/jobs/generate-invoices/run", headers={"X-Trigger-Type": "cron"})
    assert response.status_code == 400


def test_uncaught_job_error_is_500(client, monkeypatch):
    monkeypatch.delenv("JOB_TRIGGER_SECRET", raising=False)
    runner = AsyncMock(side_effect=RuntimeError("db down"))
    with patch.dict(job_runner.JOB_RUNNERS, {"sync-notification-status": runner}):
        response = client.post("/api/jobs/sync-notification-status/run")
    assert response.status_code == 500
    assert response.json() == {"success": False, "error": "db down"}


def test_pause_and_resume(client, monkeypatch):
    monkeypatch.delenv("JOB_TRIGGER_SECRET", raising=False)
    with patch(
        "routes.jobs.execution_log.set_paused",
        new_callable=AsyncMock,
        side_effect=lambda name, paused, actor_id=None: {"function_name": name, "paused": paused},
    ) as set_paused:
        paused = client.post("/api/jobs/generate-invoices/pause", json={"actor_id": "admin-1"})
        resumed = client.post("/api/jobs/generate-invoices/resume")

    assert paused.json()["paused"] is True
    assert resumed.json()["paused"] is False
    assert set_paused.await_args_list[0].kwargs["actor_id"] == "admin-1"


def test_job_logs(client, monkeypatch):
    monkeypatch.delenv("JOB_TRIGGER_SECRET", raising=False)
    logs = [{"id": "log-1", "function_name": "generate-invoices", "status": "success"}]
    with patch("routes.jobs.execution_log.recent", new_callable=AsyncMock, return_value=logs) as recent, \
            patch("routes.jobs.execution_log.is_paused", new_callable=AsyncMock, return_value=False):
        response = client.get("/api/jobs/generate-invoices/logs?limit=10")
    assert response.status_code == 200
    assert response.json()["count"] == 1
    recent.assert_awaited_once_with("generate-invoices", limit=10)


def test_notification_summary(client, monkeypatch):
    monkeypatch.delenv("JOB_TRIGGER_SECRET", raising=False)
    now = datetime.now(timezone.utc)
    db = MagicMock()
    db.notifications_sent.find.return_value.to_list = AsyncMock(return_value=[
        {"sent_at": now, "read_at": now},
        {"sent_at": now, "delivered_at": now},
        {"sent_at": now, "provider_status": "failed"},
    ])
    with patch("routes.notifications.database.get_db", return_value=db):
        response = client.get("/api/notifications/summary?days=7")
    assert response.status_code == 200
    assert response.json()["counts"] == {
        "total": 3, "pending": 0, "sent": 2, "delivered": 2, "read": 1, "failed": 1,
    }


def test_recent_notifications_have_derived_status(client, monkeypatch):
    monkeypatch.delenv("JOB_TRIGGER_SECRET", raising=False)
    db = MagicMock()
    cursor = db.notifications_sent.find.return_value.sort.return_value.limit.return_value
    cursor.to_list = AsyncMock(return_value=[
        {"id": "n1", "sent_at": "2025-03-10T09:00:00+00:00", "provider_status": "sent"},
    ])
    with patch("routes.notifications.database.get_db", return_value=db):
        response = client.get("/api/notifications/recent")
    assert response.status_code == 200
    assert response.json()["notifications"][0]["status"] == "sent"
