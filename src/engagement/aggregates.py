from __future__ import annotations

from typing import Any

from src.domain.engagement import (
    EngagementAggregate,
    ReportMetrics,
    aggregate_from_metrics,
    build_lead_fields,
    recompute_aggregate,
)
from src.engagement.reports import REPORT_COLUMNS
from src.observability import incr_metric, log_event


def list_reports(db: Any, *, appraisal_id: str) -> list[dict[str, Any]]:
    result = db.table("beacon_reports").select(REPORT_COLUMNS).eq("appraisal_id", appraisal_id).execute()
    return result.data or []


def recompute_lead_engagement(
    db: Any,
    *,
    lead: dict[str, Any],
    fallback: ReportMetrics,
    request_id: str | None = None,
    extra_fields: dict[str, Any] | None = None,
) -> EngagementAggregate:
    """Re-derive the lead's engagement cache from all of its reports and store it."""
    reports = list_reports(db, appraisal_id=lead["id"])
    aggregate = recompute_aggregate(reports)
    source = "reports"
    if aggregate is None:
        aggregate = aggregate_from_metrics(fallback)
        source = "payload_fallback"

    fields = build_lead_fields(aggregate, lead)
    if extra_fields:
        fields.update(extra_fields)
    db.table("logged_appraisals").update(fields).eq("id", lead["id"]).execute()
    incr_metric("beacon.aggregate.recomputed", source=source)
    log_event(
        "beacon_aggregate_recomputed",
        request_id=request_id,
        appraisal_id=lead["id"],
        source=source,
        report_count=aggregate.report_count,
        propensity_score=aggregate.propensity_score,
        total_views=aggregate.total_views,
        is_hot_lead=aggregate.is_hot_lead,
    )
    return aggregate
