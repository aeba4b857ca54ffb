from __future__ import annotations

import logging
from typing import Any

from src.domain.engagement import EngagementAggregate
from src.observability import incr_metric, log_event


def mirror_to_pipeline(
    db: Any,
    *,
    appraisal_id: str,
    aggregate: EngagementAggregate,
    request_id: str | None = None,
) -> bool:
    """Copy score, hot flag and last activity onto the converted listing, if any."""
    try:
        listing = (
            db.table("listings_pipeline")
            .select("id")
            .eq("appraisal_id", appraisal_id)
            .limit(1)
            .execute()
        )
        if not listing.data:
            return False
        fields: dict[str, Any] = {
            "beacon_propensity_score": aggregate.propensity_score,
            "beacon_is_hot_lead": aggregate.is_hot_lead,
        }
        if aggregate.last_activity is not None:
            fields["beacon_last_activity"] = aggregate.last_activity
        db.table("listings_pipeline").update(fields).eq("id", listing.data[0]["id"]).execute()
    except Exception as exc:
        incr_metric("beacon.pipeline_mirror.failed")
        log_event(
            "beacon_pipeline_mirror_failed",
            level=logging.WARNING,
            request_id=request_id,
            appraisal_id=appraisal_id,
            error=str(exc),
        )
        return False
    incr_metric("beacon.pipeline_mirror.updated")
    log_event(
        "beacon_pipeline_mirrored",
        request_id=request_id,
        appraisal_id=appraisal_id,
        listing_id=listing.data[0]["id"],
    )
    return True
