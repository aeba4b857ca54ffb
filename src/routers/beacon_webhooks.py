from __future__ import annotations

import hmac
import json
import logging
from typing import Any

from fastapi import APIRouter, Request, Response
from pydantic import ValidationError

from src.config import settings
from src.db import supabase
from src.domain.beacon_events import BeaconEventKind, normalize_event_kind
from src.domain.webhook_errors import (
    BeaconWebhookError,
    LeadNotFoundError,
    WebhookAuthError,
    WebhookInternalError,
    WebhookValidationError,
)
from src.engagement.pipeline import fetch_lead, record_report_sent, run_engagement_pipeline, sync_owner_info
from src.models.beacon import BeaconWebhookPayload, BeaconWebhookResponse
from src.observability import incr_metric, log_event


router = APIRouter(tags=["beacon-webhooks"])

WEBHOOK_PATH = "/beacon-propensity-webhook"
CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": (
        "authorization, x-client-info, apikey, content-type, x-api-key, "
        "x-webhook-source, x-idempotency-key"
    ),
}


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _verify_api_key_or_raise(provided: str | None, configured: str | None) -> None:
    # An unconfigured secret rejects everything rather than accepting everything.
    if not provided or not configured:
        raise WebhookAuthError("Unauthorized")
    if not hmac.compare_digest(provided.encode(), configured.encode()):
        raise WebhookAuthError("Unauthorized")


def _decode_payload_or_raise(raw_body: bytes) -> tuple[BeaconWebhookPayload, str]:
    try:
        decoded = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise WebhookValidationError("Invalid JSON payload") from exc
    if not isinstance(decoded, dict):
        raise WebhookValidationError("Invalid JSON payload")
    try:
        payload = BeaconWebhookPayload.model_validate(decoded)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise WebhookValidationError(f"Invalid payload: {location}: {first.get('msg')}") from exc
    if not payload.external_lead_id:
        raise WebhookValidationError("Missing externalLeadId")
    if not payload.event:
        raise WebhookValidationError("Missing event")
    return payload, payload.external_lead_id


def _dispatch(
    *,
    payload: BeaconWebhookPayload,
    lead_id: str,
    event_kind: BeaconEventKind,
    request_id: str | None,
) -> str:
    if event_kind == "owner_added":
        synced = sync_owner_info(supabase, lead_id=lead_id, data=payload.data, request_id=request_id)
        return "Owner info synced" if synced else "Owner info skipped"

    if event_kind == "report_sent":
        recorded = record_report_sent(supabase, lead_id=lead_id, payload=payload, request_id=request_id)
        return "Report sent recorded" if recorded else "Report sent skipped: appraisal not found"

    lead = fetch_lead(supabase, lead_id, request_id=request_id)
    if lead is None:
        raise LeadNotFoundError("Appraisal not found")
    run_engagement_pipeline(
        supabase,
        lead=lead,
        payload=payload,
        event_kind=event_kind,
        request_id=request_id,
    )
    return "Webhook processed successfully"


@router.options(WEBHOOK_PATH)
async def beacon_webhook_preflight() -> Response:
    return Response(status_code=200, headers=CORS_HEADERS)


@router.post(WEBHOOK_PATH, response_model=BeaconWebhookResponse, response_model_exclude_none=True)
async def ingest_beacon_webhook(request: Request) -> dict[str, Any]:
    req_id = _request_id(request)
    incr_metric("beacon.webhook.received")
    webhook_source = request.headers.get("X-Webhook-Source")
    idempotency_key = request.headers.get("X-Idempotency-Key")
    try:
        _verify_api_key_or_raise(request.headers.get("X-API-Key"), settings.beacon_api_key)
    except WebhookAuthError:
        incr_metric("beacon.webhook.auth_failed")
        log_event(
            "beacon_webhook_auth_failed",
            level=logging.WARNING,
            request_id=req_id,
            webhook_source=webhook_source,
        )
        raise

    raw_body = await request.body()
    try:
        payload, lead_id = _decode_payload_or_raise(raw_body)
    except WebhookValidationError as exc:
        incr_metric("beacon.webhook.rejected", reason="validation")
        log_event(
            "beacon_webhook_rejected",
            level=logging.WARNING,
            request_id=req_id,
            webhook_source=webhook_source,
            idempotency_key=idempotency_key,
            error=exc.message,
        )
        raise

    event_kind = normalize_event_kind(payload.event)
    # The idempotency key is advisory; replays are absorbed by the stages themselves.
    log_event(
        "beacon_webhook_received",
        request_id=req_id,
        webhook_source=webhook_source,
        idempotency_key=idempotency_key,
        beacon_event=payload.event,
        event_kind=event_kind,
        appraisal_id=lead_id,
        beacon_report_id=payload.report_id,
        ledger_events=len(payload.data.events),
    )

    try:
        message = _dispatch(payload=payload, lead_id=lead_id, event_kind=event_kind, request_id=req_id)
    except BeaconWebhookError as exc:
        incr_metric("beacon.webhook.failed", event_kind=event_kind, status_code=exc.status_code)
        log_event(
            "beacon_webhook_failed",
            level=logging.ERROR if exc.retryable else logging.WARNING,
            request_id=req_id,
            event_kind=event_kind,
            appraisal_id=lead_id,
            status_code=exc.status_code,
            error=exc.message,
        )
        raise
    except Exception as exc:
        incr_metric("beacon.webhook.failed", event_kind=event_kind, status_code=500)
        log_event(
            "beacon_webhook_failed",
            level=logging.ERROR,
            request_id=req_id,
            event_kind=event_kind,
            appraisal_id=lead_id,
            status_code=500,
            error=str(exc),
        )
        raise WebhookInternalError(str(exc) or "Internal error") from exc

    incr_metric("beacon.webhook.processed", event_kind=event_kind)
    log_event(
        "beacon_webhook_processed",
        request_id=req_id,
        event_kind=event_kind,
        appraisal_id=lead_id,
        message=message,
    )
    return {"success": True, "message": message}
