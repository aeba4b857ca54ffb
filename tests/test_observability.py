import json
import logging

from src import observability
from src.observability import (
    incr_metric,
    log_event,
    metric_total,
    metrics_snapshot,
    persist_metrics_snapshot,
)


class _FailingDb:
    def table(self, _name: str):
        raise Exception("db unavailable")


def test_metric_keys_are_label_sorted_and_totals_span_labels():
    incr_metric("beacon.notifications.created", kind="hot_lead")
    incr_metric("beacon.notifications.created", kind="proposal_accepted")
    incr_metric("beacon.ledger.written", value=3)
    incr_metric("beacon.webhook.failed", status_code=500, event_kind="view")

    snapshot = metrics_snapshot()
    assert snapshot["beacon.notifications.created|kind=hot_lead"] == 1
    assert snapshot["beacon.webhook.failed|event_kind=view,status_code=500"] == 1
    assert metric_total("beacon.notifications.created") == 2
    assert metric_total("beacon.ledger.written") == 3
    assert metric_total("beacon.ledger") == 0


def test_log_event_emits_json_with_request_id(caplog):
    with caplog.at_level(logging.INFO, logger="beacon_engagement"):
        log_event("beacon_report_created", request_id="req-1", report_type="proposal", fields=("report_type", "updated_at"))

    payload = json.loads(caplog.records[-1].getMessage())
    assert payload == {
        "event": "beacon_report_created",
        "request_id": "req-1",
        "report_type": "proposal",
        "fields": ["report_type", "updated_at"],
    }


def test_persist_snapshot_writes_row_and_optionally_resets(fake_db):
    incr_metric("beacon.webhook.received")

    assert persist_metrics_snapshot(supabase_client=fake_db, source="test", request_id="req-2") is True
    row = fake_db.tables["observability_metric_snapshots"][0]
    assert row["counters"] == {"beacon.webhook.received": 1}
    assert row["request_id"] == "req-2"
    assert metrics_snapshot() == {"beacon.webhook.received": 1}

    assert persist_metrics_snapshot(supabase_client=fake_db, source="test", reset_after_persist=True) is True
    assert metrics_snapshot() == {}


def test_persist_snapshot_failure_is_reported_not_raised():
    incr_metric("beacon.webhook.received")
    assert persist_metrics_snapshot(supabase_client=_FailingDb(), source="test") is False
    assert metric_total("beacon.webhook.received") == 1


def test_snapshot_export_posts_counters(monkeypatch, fake_db):
    posted: list[dict] = []

    class _FakeResponse:
        status_code = 202
        text = ""

    class _FakeClient:
        def __init__(self, timeout):
            self.timeout = timeout

        def __enter__(self):
            return self

        def __exit__(self, *_exc):
            return False

        def post(self, url, headers, json):
            posted.append({"url": url, "headers": headers, "json": json, "timeout": self.timeout})
            return _FakeResponse()

    monkeypatch.setattr(observability.httpx, "Client", _FakeClient)
    incr_metric("beacon.sync.completed")

    assert persist_metrics_snapshot(
        supabase_client=fake_db,
        source="beacon_sync",
        export_url="https://metrics.example/ingest",
        export_bearer_token="tok",
        export_timeout_seconds=1.5,
    )
    assert posted[0]["url"] == "https://metrics.example/ingest"
    assert posted[0]["headers"]["Authorization"] == "Bearer tok"
    assert posted[0]["json"]["counters"] == {"beacon.sync.completed": 1}
    assert posted[0]["timeout"] == 1.5
