from fastapi.testclient import TestClient

from src.main import app
from src.observability import metric_total
from src.providers.beacon.client import BeaconProviderError
from src.routers import internal_beacon_sync as sync_router


SYNC_URL = "/api/internal/beacon/sync-engagement"
SECRET_HEADERS = {"X-Internal-Scheduler-Secret": "sched-secret"}


def _client(monkeypatch, fake_db, engagement=None) -> tuple[TestClient, list[tuple]]:
    calls: list[tuple] = []

    def _fake_get_report_engagement(api_key, report_id, *, base_url, timeout_seconds):
        calls.append((api_key, report_id, base_url, timeout_seconds))
        if isinstance(engagement, Exception):
            raise engagement
        return engagement if engagement is not None else {}

    monkeypatch.setattr(sync_router, "supabase", fake_db)
    monkeypatch.setattr(sync_router, "get_report_engagement", _fake_get_report_engagement)
    monkeypatch.setattr(sync_router.settings, "internal_scheduler_secret", "sched-secret")
    monkeypatch.setattr(sync_router.settings, "beacon_api_key", "beacon-key")
    monkeypatch.setattr(sync_router.settings, "beacon_api_url", "https://beacon.example")
    monkeypatch.setattr(sync_router.settings, "observability_export_url", None)
    return TestClient(app), calls


def test_sync_returns_503_when_scheduler_secret_not_configured(monkeypatch, fake_db):
    client, _ = _client(monkeypatch, fake_db)
    monkeypatch.setattr(sync_router.settings, "internal_scheduler_secret", None)

    response = client.post(SYNC_URL, json={"appraisal_id": "lead-1"})
    assert response.status_code == 503
    assert response.json()["detail"] == "internal scheduler secret is not configured"


def test_sync_rejects_invalid_secret(monkeypatch, fake_db):
    client, calls = _client(monkeypatch, fake_db)

    response = client.post(
        SYNC_URL,
        json={"appraisal_id": "lead-1"},
        headers={"X-Internal-Scheduler-Secret": "wrong-secret"},
    )
    assert response.status_code == 401
    assert response.json()["detail"] == "invalid scheduler secret"
    assert calls == []


def test_sync_pulls_engagement_and_reconciles_without_notifying(monkeypatch, fake_db, report_row):
    fake_db.tables["beacon_reports"].append(report_row("r-1", propensity_score=10, total_views=1))
    client, calls = _client(
        monkeypatch,
        fake_db,
        engagement={
            "reportType": "appraisal",
            "propensityScore": 77,
            "totalViews": 4,
            "totalTimeSeconds": 300,
            "lastActivity": "2024-05-01T00:00:00Z",
        },
    )

    response = client.post(SYNC_URL, json={"appraisal_id": "lead-1"}, headers=SECRET_HEADERS)
    assert response.status_code == 200
    body = response.json()
    assert body["beacon_report_id"] == "bcn-r-1"
    assert body["report_kind"] == "market_appraisal"
    assert body["report_row_id"] == "r-1"
    assert body["propensity_score"] == 77
    assert body["is_hot_lead"] is True
    assert body["report_count"] == 1
    assert body["mirrored_to_pipeline"] is False
    assert calls == [("beacon-key", "bcn-r-1", "https://beacon.example", 12.0)]

    lead = fake_db.tables["logged_appraisals"][0]
    assert lead["beacon_propensity_score"] == 77
    assert lead["beacon_total_views"] == 4
    assert lead["beacon_last_activity"] == "2024-05-01T00:00:00+00:00"
    assert lead["beacon_synced_at"]
    assert fake_db.tables["notifications"] == []
    snapshots = fake_db.tables["observability_metric_snapshots"]
    assert len(snapshots) == 1
    assert snapshots[0]["source"] == "beacon_sync"
    assert metric_total("beacon.sync.completed") == 1


def test_sync_prefers_requested_report_id(monkeypatch, fake_db, report_row):
    fake_db.tables["beacon_reports"].append(report_row("r-1"))
    client, calls = _client(monkeypatch, fake_db, engagement={"propensityScore": 5})

    response = client.post(
        SYNC_URL,
        json={"appraisal_id": "lead-1", "beacon_report_id": "bcn-explicit"},
        headers=SECRET_HEADERS,
    )
    assert response.status_code == 200
    assert calls[0][1] == "bcn-explicit"


def test_sync_returns_404_for_unknown_appraisal(monkeypatch, fake_db):
    client, calls = _client(monkeypatch, fake_db)

    response = client.post(SYNC_URL, json={"appraisal_id": "nope"}, headers=SECRET_HEADERS)
    assert response.status_code == 404
    assert response.json()["detail"] == "Appraisal not found"
    assert calls == []


def test_sync_returns_400_when_no_report_is_linked(monkeypatch, fake_db):
    client, calls = _client(monkeypatch, fake_db)

    response = client.post(SYNC_URL, json={"appraisal_id": "lead-1"}, headers=SECRET_HEADERS)
    assert response.status_code == 400
    assert response.json()["detail"] == "No Beacon report linked to this appraisal"
    assert calls == []


def test_sync_maps_transient_provider_error_to_503(monkeypatch, fake_db, report_row):
    fake_db.tables["beacon_reports"].append(report_row("r-1"))
    client, _ = _client(monkeypatch, fake_db, engagement=BeaconProviderError("Beacon API returned HTTP 503: down"))

    response = client.post(SYNC_URL, json={"appraisal_id": "lead-1"}, headers=SECRET_HEADERS)
    assert response.status_code == 503
    detail = response.json()["detail"]
    assert detail["type"] == "provider_error"
    assert detail["provider"] == "beacon"
    assert detail["operation"] == "get_report_engagement"
    assert detail["category"] == "transient"
    assert detail["retryable"] is True
    assert detail["beacon_report_id"] == "bcn-r-1"


def test_sync_maps_terminal_provider_error_to_502(monkeypatch, fake_db, report_row):
    fake_db.tables["beacon_reports"].append(report_row("r-1"))
    client, _ = _client(monkeypatch, fake_db, engagement=BeaconProviderError("Invalid Beacon API key"))

    response = client.post(SYNC_URL, json={"appraisal_id": "lead-1"}, headers=SECRET_HEADERS)
    assert response.status_code == 502
    assert response.json()["detail"]["category"] == "terminal"
    assert fake_db.tables["beacon_reports"][0]["propensity_score"] == 0


def test_sync_rejects_malformed_engagement_payload(monkeypatch, fake_db, report_row):
    fake_db.tables["beacon_reports"].append(report_row("r-1"))
    client, _ = _client(monkeypatch, fake_db, engagement={"lastActivity": "yesterday-ish"})

    response = client.post(SYNC_URL, json={"appraisal_id": "lead-1"}, headers=SECRET_HEADERS)
    assert response.status_code == 502
    assert response.json()["detail"] == "Unexpected Beacon engagement payload"


def test_sync_writes_to_the_row_owning_the_report_id(monkeypatch, fake_db, report_row):
    fake_db.tables["beacon_reports"].extend(
        [
            report_row("r-app", beacon_report_id="bcn-app", propensity_score=10, total_views=2),
            report_row(
                "r-prop",
                beacon_report_id="bcn-prop",
                report_type="proposal",
                propensity_score=20,
                total_views=1,
                created_at="2023-12-01T00:00:00+00:00",
            ),
        ]
    )
    client, calls = _client(monkeypatch, fake_db, engagement={"propensityScore": 90, "totalViews": 5})

    response = client.post(
        SYNC_URL,
        json={"appraisal_id": "lead-1", "beacon_report_id": "bcn-prop"},
        headers=SECRET_HEADERS,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["report_row_id"] == "r-prop"
    assert body["report_kind"] == "proposal"
    assert calls[0][1] == "bcn-prop"

    by_id = {row["id"]: row for row in fake_db.tables["beacon_reports"]}
    assert by_id["r-prop"]["propensity_score"] == 90
    assert by_id["r-prop"]["total_views"] == 5
    assert by_id["r-app"]["propensity_score"] == 10
    assert by_id["r-app"]["total_views"] == 2
    lead = fake_db.tables["logged_appraisals"][0]
    assert lead["beacon_propensity_score"] == 90
    assert lead["beacon_total_views"] == 7
