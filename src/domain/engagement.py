"""Pure engagement rules shared by the webhook and the pull sync.

Nothing in this module touches the database. Report rows and lead rows are
plain dicts shaped like the ``beacon_reports`` and ``logged_appraisals``
tables; timestamps are UTC ISO-8601 strings, so ``min``/``max`` over them is
chronological.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from src.domain.beacon_events import BeaconEventKind, now_iso, to_utc_iso
from src.models.beacon import BeaconWebhookData


REPORT_SET_ONCE_FIELDS = ("first_viewed_at", "sent_at")
LEAD_SET_ONCE_FIELDS = ("beacon_first_viewed_at", "beacon_report_sent_at")


@dataclass(frozen=True)
class ReportMetrics:
    """Point-in-time engagement snapshot for one report, as sent by Beacon."""

    propensity_score: int
    total_views: int
    total_time_seconds: int
    email_opens: int
    is_hot_lead: bool
    last_activity: str | None
    first_viewed_at: str | None = None
    sent_at: str | None = None
    proposal_accepted_at: str | None = None
    proposal_declined_at: str | None = None
    proposal_decline_reason: str | None = None
    campaign_started_at: str | None = None
    days_on_market: int | None = None
    # Kind timestamps taken from the delivery itself rather than stated by Beacon.
    implied_fields: frozenset[str] = frozenset()


@dataclass(frozen=True)
class EngagementAggregate:
    propensity_score: int
    total_views: int
    total_time_seconds: int
    email_opens: int
    is_hot_lead: bool
    last_activity: str | None
    first_viewed_at: str | None
    report_sent_at: str | None
    report_count: int


@dataclass(frozen=True)
class PlannedNotification:
    kind: str
    title: str
    message: str


_EVENT_IMPLIED_FIELDS: dict[str, str] = {
    "proposal_accepted": "proposal_accepted_at",
    "proposal_declined": "proposal_declined_at",
    "campaign_started": "campaign_started_at",
}


def _clamp_score(value: float | None) -> int:
    if value is None:
        return 0
    return max(0, min(100, int(round(value))))


def _non_negative(value: float | None) -> int:
    if value is None:
        return 0
    return max(0, int(round(value)))


def extract_report_metrics(
    data: BeaconWebhookData,
    *,
    event_kind: BeaconEventKind,
    event_timestamp: str | None,
    hot_lead_threshold: int,
) -> ReportMetrics:
    score = _clamp_score(data.propensity_score)
    email_opens = data.email_open_count if data.email_open_count is not None else data.email_opens
    kind_timestamps = {
        "proposal_accepted_at": to_utc_iso(data.proposal_accepted_at),
        "proposal_declined_at": to_utc_iso(data.proposal_declined_at),
        "campaign_started_at": to_utc_iso(data.campaign_started_at),
    }
    implied_field = _EVENT_IMPLIED_FIELDS.get(event_kind)
    implied_fields: frozenset[str] = frozenset()
    if implied_field and kind_timestamps[implied_field] is None:
        kind_timestamps[implied_field] = event_timestamp or now_iso()
        implied_fields = frozenset({implied_field})

    return ReportMetrics(
        propensity_score=score,
        total_views=_non_negative(data.total_views),
        total_time_seconds=_non_negative(data.total_time_seconds),
        email_opens=_non_negative(email_opens),
        is_hot_lead=bool(data.is_hot_lead) or score >= hot_lead_threshold,
        last_activity=(
            to_utc_iso(data.last_activity)
            or to_utc_iso(data.last_viewed_at)
            or event_timestamp
        ),
        first_viewed_at=to_utc_iso(data.first_viewed_at),
        sent_at=to_utc_iso(data.report_sent_at) or to_utc_iso(data.sent_at),
        proposal_accepted_at=kind_timestamps["proposal_accepted_at"],
        proposal_declined_at=kind_timestamps["proposal_declined_at"],
        proposal_decline_reason=data.proposal_decline_reason,
        campaign_started_at=kind_timestamps["campaign_started_at"],
        days_on_market=data.days_on_market,
        implied_fields=implied_fields,
    )


def set_once(current: dict[str, Any] | None, field: str, value: str | None) -> dict[str, Any]:
    """Return ``{field: value}`` only when the stored value is still null."""
    if value is None:
        return {}
    if current is not None and current.get(field) is not None:
        return {}
    return {field: value}


def build_report_fields(metrics: ReportMetrics, existing: dict[str, Any] | None) -> dict[str, Any]:
    # Counters are snapshots from the sender, so last delivery wins.
    fields: dict[str, Any] = {
        "propensity_score": metrics.propensity_score,
        "total_views": metrics.total_views,
        "total_time_seconds": metrics.total_time_seconds,
        "email_opens": metrics.email_opens,
        "is_hot_lead": metrics.is_hot_lead,
    }
    # Without any time source in the delivery the stored value is left alone.
    if metrics.last_activity is not None:
        fields["last_activity"] = metrics.last_activity
    fields.update(set_once(existing, "first_viewed_at", metrics.first_viewed_at))
    fields.update(set_once(existing, "sent_at", metrics.sent_at))
    optional = {
        "proposal_accepted_at": metrics.proposal_accepted_at,
        "proposal_declined_at": metrics.proposal_declined_at,
        "proposal_decline_reason": metrics.proposal_decline_reason,
        "campaign_started_at": metrics.campaign_started_at,
        "days_on_market": metrics.days_on_market,
    }
    for key, value in optional.items():
        if value is None:
            continue
        if key in metrics.implied_fields:
            fields.update(set_once(existing, key, value))
        else:
            fields[key] = value
    return fields


def _present(values: Iterable[Any]) -> list[Any]:
    return [value for value in values if value is not None]


def recompute_aggregate(reports: list[dict[str, Any]]) -> EngagementAggregate | None:
    """Fold every report of a lead into the lead-level engagement cache.

    Returns ``None`` when the lead has no reports so the caller can fall back
    to the raw delivery instead of zeroing the lead.
    """
    if not reports:
        return None
    first_viewed = _present(row.get("first_viewed_at") for row in reports)
    last_activity = _present(row.get("last_activity") for row in reports)
    sent = _present(row.get("sent_at") for row in reports)
    return EngagementAggregate(
        propensity_score=max(int(row.get("propensity_score") or 0) for row in reports),
        total_views=sum(int(row.get("total_views") or 0) for row in reports),
        total_time_seconds=sum(int(row.get("total_time_seconds") or 0) for row in reports),
        email_opens=sum(int(row.get("email_opens") or 0) for row in reports),
        is_hot_lead=any(bool(row.get("is_hot_lead")) for row in reports),
        last_activity=max(last_activity) if last_activity else None,
        first_viewed_at=min(first_viewed) if first_viewed else None,
        report_sent_at=min(sent) if sent else None,
        report_count=len(reports),
    )


def aggregate_from_metrics(metrics: ReportMetrics) -> EngagementAggregate:
    return EngagementAggregate(
        propensity_score=metrics.propensity_score,
        total_views=metrics.total_views,
        total_time_seconds=metrics.total_time_seconds,
        email_opens=metrics.email_opens,
        is_hot_lead=metrics.is_hot_lead,
        last_activity=metrics.last_activity,
        first_viewed_at=metrics.first_viewed_at,
        report_sent_at=metrics.sent_at,
        report_count=0,
    )


def build_lead_fields(aggregate: EngagementAggregate, lead: dict[str, Any]) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "beacon_propensity_score": aggregate.propensity_score,
        "beacon_total_views": aggregate.total_views,
        "beacon_total_time_seconds": aggregate.total_time_seconds,
        "beacon_email_opens": aggregate.email_opens,
        "beacon_is_hot_lead": aggregate.is_hot_lead,
    }
    if aggregate.last_activity is not None:
        fields["beacon_last_activity"] = aggregate.last_activity
    fields.update(set_once(lead, "beacon_first_viewed_at", aggregate.first_viewed_at))
    fields.update(set_once(lead, "beacon_report_sent_at", aggregate.report_sent_at))
    return fields


def plan_notifications(
    *,
    event_kind: BeaconEventKind,
    was_hot_lead: bool,
    is_hot_lead: bool,
    lead: dict[str, Any],
    decline_reason: str | None = None,
) -> list[PlannedNotification]:
    vendor = lead.get("vendor_name") or "A vendor"
    address = lead.get("address") or "their property"
    planned: list[PlannedNotification] = []
    # Only the cold -> hot edge notifies; a lead cooling down is silent.
    if event_kind == "hot_lead" and is_hot_lead and not was_hot_lead:
        planned.append(
            PlannedNotification(
                kind="hot_lead",
                title="🔥 Hot Lead Alert!",
                message=f"{vendor} at {address} has high engagement with their Beacon report!",
            )
        )
    elif event_kind == "proposal_accepted":
        planned.append(
            PlannedNotification(
                kind="proposal_accepted",
                title="🎉 Proposal Accepted!",
                message=f"{vendor} at {address} has accepted your listing proposal.",
            )
        )
    elif event_kind == "proposal_declined":
        message = f"{vendor} at {address} has declined your listing proposal."
        if decline_reason:
            message = f"{message} Reason: {decline_reason}"
        planned.append(
            PlannedNotification(
                kind="proposal_declined",
                title="Proposal Declined",
                message=message,
            )
        )
    return planned

