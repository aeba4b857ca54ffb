from __future__ import annotations

import hmac
import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Header, HTTPException, Request, status
from pydantic import ValidationError

from src.config import settings
from src.db import supabase
from src.domain.provider_errors import provider_error_detail, provider_error_http_status
from src.domain.webhook_errors import BeaconWebhookError
from src.engagement.pipeline import fetch_lead, run_engagement_pipeline
from src.models.beacon import BeaconSyncRequest, BeaconSyncResponse, BeaconWebhookPayload
from src.observability import incr_metric, log_event, persist_metrics_snapshot
from src.providers.beacon.client import BeaconProviderError, get_report_engagement


router = APIRouter(prefix="/api/internal/beacon", tags=["internal-beacon"])


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _resolve_report_id(lead: dict[str, Any], requested: str | None) -> str | None:
    if requested:
        return requested
    if lead.get("beacon_report_id"):
        return str(lead["beacon_report_id"])
    rows = (
        supabase.table("beacon_reports")
        .select("beacon_report_id, created_at")
        .eq("appraisal_id", lead["id"])
        .order("created_at", desc=True)
        .execute()
    ).data or []
    for row in rows:
        if row.get("beacon_report_id"):
            return str(row["beacon_report_id"])
    return None


def _run_sync(data: BeaconSyncRequest, *, request_id: str | None = None) -> BeaconSyncResponse:
    incr_metric("beacon.sync.started")
    try:
        lead = fetch_lead(supabase, data.appraisal_id, request_id=request_id)
    except BeaconWebhookError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    if lead is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Appraisal not found")

    report_id = _resolve_report_id(lead, data.beacon_report_id)
    if not report_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No Beacon report linked to this appraisal",
        )

    try:
        engagement = get_report_engagement(
            settings.beacon_api_key,
            report_id,
            base_url=settings.beacon_api_url,
            timeout_seconds=settings.beacon_timeout_seconds,
        )
    except BeaconProviderError as exc:
        incr_metric("beacon.sync.provider_failed", category=exc.category)
        log_event(
            "beacon_sync_provider_failed",
            level=logging.WARNING,
            request_id=request_id,
            appraisal_id=lead["id"],
            beacon_report_id=report_id,
            category=exc.category,
            error=str(exc),
        )
        raise HTTPException(
            status_code=provider_error_http_status(exc),
            detail=provider_error_detail(
                provider="beacon",
                operation="get_report_engagement",
                exc=exc,
                beacon_report_id=report_id,
            ),
        ) from exc

    try:
        payload = BeaconWebhookPayload.model_validate(
            {"event": "sync", "externalLeadId": lead["id"], "reportId": report_id, "data": engagement}
        )
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Unexpected Beacon engagement payload",
        ) from exc

    synced_at = _now_utc()
    try:
        outcome = run_engagement_pipeline(
            supabase,
            lead=lead,
            payload=payload,
            event_kind="generic",
            request_id=request_id,
            notify=False,
            extra_lead_fields={"beacon_synced_at": synced_at.isoformat()},
            match_report_id=True,
        )
    except BeaconWebhookError as exc:
        incr_metric("beacon.sync.failed")
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc

    incr_metric("beacon.sync.completed")
    log_event(
        "beacon_sync_completed",
        request_id=request_id,
        appraisal_id=lead["id"],
        beacon_report_id=report_id,
        report_count=outcome.aggregate.report_count,
    )
    persist_metrics_snapshot(
        supabase_client=supabase,
        source="beacon_sync",
        request_id=request_id,
        reset_after_persist=False,
        export_url=settings.observability_export_url,
        export_bearer_token=settings.observability_export_bearer_token,
        export_timeout_seconds=settings.observability_export_timeout_seconds,
    )
    metrics = outcome.metrics
    return BeaconSyncResponse(
        appraisal_id=lead["id"],
        beacon_report_id=report_id,
        report_kind=outcome.report_kind,
        report_row_id=(outcome.report or {}).get("id"),
        propensity_score=metrics.propensity_score,
        total_views=metrics.total_views,
        total_time_seconds=metrics.total_time_seconds,
        email_opens=metrics.email_opens,
        is_hot_lead=metrics.is_hot_lead,
        last_activity=metrics.last_activity,
        report_count=outcome.aggregate.report_count,
        mirrored_to_pipeline=outcome.mirrored_to_pipeline,
        synced_at=synced_at,
    )


@router.post("/sync-engagement", response_model=BeaconSyncResponse)
async def sync_beacon_engagement(
    data: BeaconSyncRequest,
    request: Request,
    x_internal_scheduler_secret: str | None = Header(default=None),
):
    request_id = getattr(request.state, "request_id", None)
    configured_secret = settings.internal_scheduler_secret
    if not configured_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="internal scheduler secret is not configured",
        )
    if not x_internal_scheduler_secret or not hmac.compare_digest(
        x_internal_scheduler_secret,
        configured_secret,
    ):
        incr_metric("beacon.sync.auth_failed")
        log_event("beacon_sync_auth_failed", request_id=request_id)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid scheduler secret",
        )
    return _run_sync(data, request_id=request_id)
