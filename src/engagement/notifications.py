from __future__ import annotations

import logging
from typing import Any

from src.domain.engagement import PlannedNotification
from src.observability import incr_metric, log_event


def emit_notifications(
    db: Any,
    *,
    lead: dict[str, Any],
    planned: list[PlannedNotification],
    base_path: str,
    request_id: str | None = None,
) -> int:
    created = 0
    for notification in planned:
        try:
            db.table("notifications").insert(
                {
                    "user_id": lead.get("user_id"),
                    "title": notification.title,
                    "message": notification.message,
                    "type": notification.kind,
                    "action_url": f"{base_path}?appraisal={lead['id']}",
                }
            ).execute()
        except Exception as exc:
            incr_metric("beacon.notifications.failed", kind=notification.kind)
            log_event(
                "beacon_notification_failed",
                level=logging.ERROR,
                request_id=request_id,
                appraisal_id=lead["id"],
                kind=notification.kind,
                error=str(exc),
            )
            continue
        created += 1
        incr_metric("beacon.notifications.created", kind=notification.kind)
        log_event(
            "beacon_notification_created",
            request_id=request_id,
            appraisal_id=lead["id"],
            user_id=lead.get("user_id"),
            kind=notification.kind,
        )
    return created
