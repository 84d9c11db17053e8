from syncengine.db.migrate import _load_statements
from syncengine.jobs import celery_app
from syncengine.jobs import sync as sync_module
from syncengine.jobs.sync import SyncResponse


def test_beat_schedule_covers_sources_and_cleanup():
    schedule = celery_app.celery_app.conf.beat_schedule
    assert {entry["task"] for entry in schedule.values()} == {
        "syncengine.jobs.sync.run_source",
        "syncengine.jobs.joblog.cleanup_stuck_jobs",
    }
    assert {entry.get("args", (None,))[0] for entry in schedule.values()} == {"shopify", "google_ads", None}


def test_requested_sync_runs_through_run_sync(monkeypatch):
    seen = []

    async def fake_run_sync(source, payload=None, **kwargs):
        seen.append((source, payload))
        return SyncResponse(source=source, results=[])

    monkeypatch.setattr(sync_module, "run_sync", fake_run_sync)
    result = celery_app.requested_sync_task.run("shopify", {"tenantId": "t1"})
    assert result == {"source": "shopify", "results": []}
    assert seen == [("shopify", {"tenantId": "t1"})]


def test_request_sync_enqueues(monkeypatch):
    sent = []

    def fake_apply_async(args=None, **kwargs):
        sent.append(args)
        return "queued"

    monkeypatch.setattr(celery_app.requested_sync_task, "apply_async", fake_apply_async)
    assert celery_app.request_sync("shopify", tenantId="t1") == "queued"
    assert sent == [("shopify", {"tenantId": "t1"})]


def test_schema_statements_split():
    statements = list(_load_statements("-- comment\nCREATE TABLE a (id INT);\n\nCREATE INDEX b ON a (id);\n"))
    assert statements == ["CREATE TABLE a (id INT);", "CREATE INDEX b ON a (id);"]
