from __future__ import annotations

from typing import Any

from src.domain.beacon_events import ReportKind, now_iso
from src.domain.engagement import ReportMetrics, build_report_fields, set_once
from src.observability import incr_metric, log_event


REPORT_COLUMNS = (
    "id, appraisal_id, beacon_report_id, report_type, report_url, personalized_url, "
    "propensity_score, total_views, total_time_seconds, email_opens, is_hot_lead, "
    "first_viewed_at, last_activity, sent_at, proposal_accepted_at, proposal_declined_at, "
    "proposal_decline_reason, campaign_started_at, days_on_market, created_at"
)


def find_latest_report(db: Any, *, appraisal_id: str, kind: ReportKind) -> dict[str, Any] | None:
    result = (
        db.table("beacon_reports")
        .select(REPORT_COLUMNS)
        .eq("appraisal_id", appraisal_id)
        .eq("report_type", kind)
        .order("created_at", desc=True)
        .limit(1)
        .execute()
    )
    return result.data[0] if result.data else None


def find_report_by_beacon_id(db: Any, *, appraisal_id: str, beacon_report_id: str) -> dict[str, Any] | None:
    result = (
        db.table("beacon_reports")
        .select(REPORT_COLUMNS)
        .eq("appraisal_id", appraisal_id)
        .eq("beacon_report_id", beacon_report_id)
        .order("created_at", desc=True)
        .limit(1)
        .execute()
    )
    return result.data[0] if result.data else None


def _identity_fields(
    existing: dict[str, Any] | None,
    *,
    report_id: str | None,
    report_url: str | None,
    personalized_url: str | None,
) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    fields.update(set_once(existing, "beacon_report_id", report_id))
    fields.update(set_once(existing, "report_url", report_url))
    fields.update(set_once(existing, "personalized_url", personalized_url))
    return fields


def _write_report(
    db: Any,
    *,
    appraisal_id: str,
    kind: ReportKind,
    existing: dict[str, Any] | None,
    fields: dict[str, Any],
    report_id: str | None,
    request_id: str | None,
) -> dict[str, Any] | None:
    now = now_iso()
    if existing:
        update_payload = {**fields, "updated_at": now}
        db.table("beacon_reports").update(update_payload).eq("id", existing["id"]).execute()
        incr_metric("beacon.reports.updated", report_type=kind)
        log_event(
            "beacon_report_updated",
            request_id=request_id,
            appraisal_id=appraisal_id,
            report_type=kind,
            report_row_id=existing["id"],
            fields=sorted(update_payload),
        )
        return {**existing, **update_payload}

    if not report_id:
        # Reports can be created by a separate flow after engagement starts.
        incr_metric("beacon.reports.skipped", report_type=kind)
        log_event(
            "beacon_report_skipped",
            request_id=request_id,
            appraisal_id=appraisal_id,
            report_type=kind,
            reason="no_matching_report_and_no_report_id",
        )
        return None

    insert_payload = {
        **fields,
        "appraisal_id": appraisal_id,
        "report_type": kind,
        "created_at": now,
        "updated_at": now,
    }
    created = db.table("beacon_reports").insert(insert_payload).execute()
    row = created.data[0] if created.data else insert_payload
    incr_metric("beacon.reports.created", report_type=kind)
    log_event(
        "beacon_report_created",
        request_id=request_id,
        appraisal_id=appraisal_id,
        report_type=kind,
        beacon_report_id=report_id,
        report_row_id=row.get("id"),
    )
    return row


def reconcile_report(
    db: Any,
    *,
    appraisal_id: str,
    kind: ReportKind,
    metrics: ReportMetrics,
    report_id: str | None = None,
    report_url: str | None = None,
    personalized_url: str | None = None,
    request_id: str | None = None,
    match_report_id: bool = False,
) -> dict[str, Any] | None:
    """Apply one engagement snapshot to the newest report of ``(lead, kind)``.

    With ``match_report_id`` the row already carrying ``report_id`` wins over
    the newest row of the kind. Returns the written row, or ``None`` when no
    row matched and the delivery carried no Beacon report id to adopt one with.
    """
    existing = None
    if match_report_id and report_id:
        existing = find_report_by_beacon_id(db, appraisal_id=appraisal_id, beacon_report_id=report_id)
        if existing and existing.get("report_type"):
            kind = existing["report_type"]
    if existing is None:
        existing = find_latest_report(db, appraisal_id=appraisal_id, kind=kind)
    fields = build_report_fields(metrics, existing)
    fields.update(
        _identity_fields(existing, report_id=report_id, report_url=report_url, personalized_url=personalized_url)
    )
    return _write_report(
        db,
        appraisal_id=appraisal_id,
        kind=kind,
        existing=existing,
        fields=fields,
        report_id=report_id,
        request_id=request_id,
    )


def mark_report_sent(
    db: Any,
    *,
    appraisal_id: str,
    kind: ReportKind,
    sent_at: str,
    report_id: str | None = None,
    report_url: str | None = None,
    personalized_url: str | None = None,
    request_id: str | None = None,
) -> dict[str, Any] | None:
    existing = find_latest_report(db, appraisal_id=appraisal_id, kind=kind)
    fields = set_once(existing, "sent_at", sent_at)
    fields.update(
        _identity_fields(existing, report_id=report_id, report_url=report_url, personalized_url=personalized_url)
    )
    if existing and not fields:
        log_event(
            "beacon_report_sent_unchanged",
            request_id=request_id,
            appraisal_id=appraisal_id,
            report_type=kind,
            report_row_id=existing["id"],
        )
        return existing
    return _write_report(
        db,
        appraisal_id=appraisal_id,
        kind=kind,
        existing=existing,
        fields=fields,
        report_id=report_id,
        request_id=request_id,
    )
