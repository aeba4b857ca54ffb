from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from src.domain.beacon_events import ReportKind, to_utc_iso
from src.models.beacon import BeaconEngagementEventIn
from src.observability import incr_metric, log_event


LEDGER_CONFLICT_TARGET = "appraisal_id,event_type,occurred_at"


def build_ledger_rows(
    *,
    appraisal_id: str,
    report_kind: ReportKind,
    events: list[Any],
) -> tuple[list[dict[str, Any]], int]:
    """Turn event descriptors into ledger rows keyed by ``(lead, type, occurred_at)``.

    Returns the rows and the number of descriptors dropped because they cannot
    be parsed into a keyed event or repeat a key already in the batch.
    """
    rows: list[dict[str, Any]] = []
    seen: set[tuple[str, str]] = set()
    dropped = 0
    for raw_event in events:
        try:
            event = BeaconEngagementEventIn.model_validate(raw_event)
        except ValidationError:
            dropped += 1
            continue
        occurred_at = to_utc_iso(event.occurred_at)
        if occurred_at is None:
            dropped += 1
            continue
        event_type = (event.type or "view").strip().lower() or "view"
        if (event_type, occurred_at) in seen:
            dropped += 1
            continue
        seen.add((event_type, occurred_at))

        metadata = dict(event.metadata or {})
        if event.link_url:
            metadata.setdefault("link_url", event.link_url)
        if event.link_label:
            metadata.setdefault("link_label", event.link_label)
        metadata.setdefault("report_type", report_kind)
        rows.append(
            {
                "appraisal_id": appraisal_id,
                "event_type": event_type,
                "occurred_at": occurred_at,
                "duration_seconds": max(0, int(round(event.duration_seconds or 0))),
                "metadata": metadata,
            }
        )
    return rows, dropped


def write_engagement_events(
    db: Any,
    *,
    appraisal_id: str,
    report_kind: ReportKind,
    events: list[Any],
    request_id: str | None = None,
) -> int:
    """Append engagement events, ignoring rows whose natural key already exists.

    Failures are logged and reported as zero rows written; the ledger never
    blocks acknowledgement of a delivery.
    """
    if not events:
        return 0
    rows, dropped = build_ledger_rows(appraisal_id=appraisal_id, report_kind=report_kind, events=events)
    if dropped:
        log_event(
            "beacon_ledger_events_dropped",
            level=logging.WARNING,
            request_id=request_id,
            appraisal_id=appraisal_id,
            dropped=dropped,
        )
    if not rows:
        return 0
    try:
        db.table("beacon_engagement_events").upsert(
            rows,
            on_conflict=LEDGER_CONFLICT_TARGET,
            ignore_duplicates=True,
        ).execute()
    except Exception as exc:
        incr_metric("beacon.ledger.failed")
        log_event(
            "beacon_ledger_failed",
            level=logging.ERROR,
            request_id=request_id,
            appraisal_id=appraisal_id,
            attempted=len(rows),
            error=str(exc),
        )
        return 0
    incr_metric("beacon.ledger.written", value=len(rows))
    log_event(
        "beacon_ledger_written",
        request_id=request_id,
        appraisal_id=appraisal_id,
        attempted=len(rows),
    )
    return len(rows)
