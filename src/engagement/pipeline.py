"""Reconciliation of one Beacon delivery against a lead and its reports.

Steps run in a fixed order: per-report reconcile, aggregate recompute, ledger
append, pipeline mirror, notifications. The first two are required and raise
``WebhookInternalError`` on any storage failure so the sender redelivers; the
rest are best effort.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from src.config import settings
from src.domain.beacon_events import (
    BeaconEventKind,
    ReportKind,
    now_iso,
    report_kind_for_type,
    resolve_report_kind,
    to_utc_iso,
)
from src.domain.engagement import (
    EngagementAggregate,
    ReportMetrics,
    extract_report_metrics,
    plan_notifications,
    set_once,
)
from src.domain.webhook_errors import WebhookInternalError
from src.engagement.aggregates import recompute_lead_engagement
from src.engagement.ledger import write_engagement_events
from src.engagement.notifications import emit_notifications
from src.engagement.propagation import mirror_to_pipeline
from src.engagement.reports import mark_report_sent, reconcile_report
from src.models.beacon import BeaconWebhookData, BeaconWebhookPayload
from src.observability import log_event


LEAD_COLUMNS = (
    "id, user_id, address, vendor_name, beacon_report_id, beacon_is_hot_lead, "
    "beacon_first_viewed_at, beacon_report_sent_at"
)


@dataclass
class EngagementOutcome:
    report_kind: ReportKind
    metrics: ReportMetrics
    report: dict[str, Any] | None
    aggregate: EngagementAggregate
    was_hot_lead: bool
    ledger_rows_written: int = 0
    mirrored_to_pipeline: bool = False
    notifications: list[str] = field(default_factory=list)


def _is_unresolvable_id_error(exc: Exception) -> bool:
    # PostgREST rejects a malformed uuid filter instead of returning no rows.
    return "invalid input syntax" in str(exc).lower()


def fetch_lead(db: Any, lead_id: str, *, request_id: str | None = None) -> dict[str, Any] | None:
    try:
        result = db.table("logged_appraisals").select(LEAD_COLUMNS).eq("id", lead_id).limit(1).execute()
    except Exception as exc:
        if _is_unresolvable_id_error(exc):
            return None
        log_event(
            "beacon_lead_lookup_failed",
            level=logging.ERROR,
            request_id=request_id,
            appraisal_id=lead_id,
            error=str(exc),
        )
        raise WebhookInternalError("Failed to load appraisal") from exc
    return result.data[0] if result.data else None


def run_engagement_pipeline(
    db: Any,
    *,
    lead: dict[str, Any],
    payload: BeaconWebhookPayload,
    event_kind: BeaconEventKind,
    request_id: str | None = None,
    notify: bool = True,
    extra_lead_fields: dict[str, Any] | None = None,
    match_report_id: bool = False,
) -> EngagementOutcome:
    data = payload.data
    was_hot_lead = bool(lead.get("beacon_is_hot_lead"))
    kind = resolve_report_kind(data.report_type, event_kind)
    if data.report_type and report_kind_for_type(data.report_type) is None:
        log_event(
            "beacon_report_kind_defaulted",
            level=logging.WARNING,
            request_id=request_id,
            appraisal_id=lead["id"],
            report_type=data.report_type,
            report_kind=kind,
        )
    metrics = extract_report_metrics(
        data,
        event_kind=event_kind,
        event_timestamp=to_utc_iso(payload.timestamp),
        hot_lead_threshold=settings.beacon_hot_lead_threshold,
    )

    try:
        report = reconcile_report(
            db,
            appraisal_id=lead["id"],
            kind=kind,
            metrics=metrics,
            report_id=payload.report_id,
            report_url=payload.report_url,
            personalized_url=payload.personalized_url,
            request_id=request_id,
            match_report_id=match_report_id,
        )
    except Exception as exc:
        log_event(
            "beacon_report_write_failed",
            level=logging.ERROR,
            request_id=request_id,
            appraisal_id=lead["id"],
            report_type=kind,
            error=str(exc),
        )
        raise WebhookInternalError("Failed to update report") from exc
    if report and report.get("report_type"):
        kind = report["report_type"]

    try:
        aggregate = recompute_lead_engagement(
            db,
            lead=lead,
            fallback=metrics,
            request_id=request_id,
            extra_fields=extra_lead_fields,
        )
    except Exception as exc:
        log_event(
            "beacon_aggregate_failed",
            level=logging.ERROR,
            request_id=request_id,
            appraisal_id=lead["id"],
            error=str(exc),
        )
        raise WebhookInternalError("Failed to update appraisal") from exc

    outcome = EngagementOutcome(
        report_kind=kind,
        metrics=metrics,
        report=report,
        aggregate=aggregate,
        was_hot_lead=was_hot_lead,
    )
    outcome.ledger_rows_written = write_engagement_events(
        db,
        appraisal_id=lead["id"],
        report_kind=kind,
        events=data.events,
        request_id=request_id,
    )
    outcome.mirrored_to_pipeline = mirror_to_pipeline(
        db,
        appraisal_id=lead["id"],
        aggregate=aggregate,
        request_id=request_id,
    )
    if notify:
        planned = plan_notifications(
            event_kind=event_kind,
            was_hot_lead=was_hot_lead,
            is_hot_lead=aggregate.is_hot_lead,
            lead=lead,
            decline_reason=data.proposal_decline_reason,
        )
        emit_notifications(
            db,
            lead=lead,
            planned=planned,
            base_path=settings.app_base_path,
            request_id=request_id,
        )
        outcome.notifications = [item.kind for item in planned]
    return outcome


def sync_owner_info(
    db: Any,
    *,
    lead_id: str,
    data: BeaconWebhookData,
    request_id: str | None = None,
) -> bool:
    fields = {
        column: value.strip()
        for column, value in (
            ("vendor_name", data.owner_name),
            ("vendor_email", data.owner_email),
            ("vendor_mobile", data.owner_phone),
        )
        if value and value.strip()
    }
    if not fields:
        log_event("beacon_owner_sync_empty", request_id=request_id, appraisal_id=lead_id)
        return False
    try:
        updated = db.table("logged_appraisals").update(fields).eq("id", lead_id).execute()
    except Exception as exc:
        if _is_unresolvable_id_error(exc):
            updated = None
        else:
            raise WebhookInternalError("Failed to update owner info") from exc
    if not (updated and updated.data):
        log_event(
            "beacon_owner_sync_lead_missing",
            level=logging.WARNING,
            request_id=request_id,
            appraisal_id=lead_id,
        )
        return False
    log_event("beacon_owner_synced", request_id=request_id, appraisal_id=lead_id, fields=sorted(fields))
    return True


def record_report_sent(
    db: Any,
    *,
    lead_id: str,
    payload: BeaconWebhookPayload,
    request_id: str | None = None,
) -> bool:
    data = payload.data
    sent_at = (
        to_utc_iso(data.report_sent_at)
        or to_utc_iso(data.sent_at)
        or to_utc_iso(payload.timestamp)
        or now_iso()
    )
    lead = fetch_lead(db, lead_id, request_id=request_id)
    if lead is None:
        log_event(
            "beacon_report_sent_lead_missing",
            level=logging.WARNING,
            request_id=request_id,
            appraisal_id=lead_id,
        )
        return False
    kind = resolve_report_kind(data.report_type, "report_sent")
    try:
        mark_report_sent(
            db,
            appraisal_id=lead_id,
            kind=kind,
            sent_at=sent_at,
            report_id=payload.report_id,
            report_url=payload.report_url,
            personalized_url=payload.personalized_url,
            request_id=request_id,
        )
        lead_fields = set_once(lead, "beacon_report_sent_at", sent_at)
        if lead_fields:
            db.table("logged_appraisals").update(lead_fields).eq("id", lead_id).execute()
    except Exception as exc:
        log_event(
            "beacon_report_sent_failed",
            level=logging.ERROR,
            request_id=request_id,
            appraisal_id=lead_id,
            error=str(exc),
        )
        raise WebhookInternalError("Failed to record report sent") from exc
    log_event(
        "beacon_report_sent_recorded",
        request_id=request_id,
        appraisal_id=lead_id,
        report_type=kind,
        sent_at=sent_at,
    )
    return True
