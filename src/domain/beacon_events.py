from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal


BeaconEventKind = Literal[
    "owner_added",
    "report_sent",
    "hot_lead",
    "view",
    "proposal_accepted",
    "proposal_declined",
    "campaign_started",
    "generic",
]
ReportKind = Literal["market_appraisal", "proposal", "update_campaign"]

PRIMARY_REPORT_KIND: ReportKind = "market_appraisal"

# Events handled outside the engagement reconciliation path.
INFORMATIONAL_EVENT_KINDS: frozenset[str] = frozenset({"owner_added", "report_sent"})


def normalize_event_kind(value: str | None) -> BeaconEventKind:
    if not value:
        return "generic"
    key = str(value).strip().lower().replace("-", "_").replace(".", "_")
    mapping: dict[str, BeaconEventKind] = {
        "owner_added": "owner_added",
        "owner_updated": "owner_added",
        "report_sent": "report_sent",
        "hot_lead": "hot_lead",
        "view": "view",
        "viewed": "view",
        "report_viewed": "view",
        "proposal_accepted": "proposal_accepted",
        "proposal_declined": "proposal_declined",
        "campaign_started": "campaign_started",
    }
    return mapping.get(key, "generic")


def report_kind_for_type(value: str | None) -> ReportKind | None:
    """Map the sender's ``reportType`` vocabulary onto our report kinds.

    Returns ``None`` for unrecognized values so the caller can decide (and log)
    the fallback.
    """
    if not value:
        return None
    key = str(value).strip().lower().replace("-", "_").replace(" ", "_")
    mapping: dict[str, ReportKind] = {
        "appraisal": "market_appraisal",
        "market_appraisal": "market_appraisal",
        "proposal": "proposal",
        "listing_proposal": "proposal",
        "campaign": "update_campaign",
        "update_campaign": "update_campaign",
    }
    return mapping.get(key)


def resolve_report_kind(report_type: str | None, event_kind: BeaconEventKind) -> ReportKind:
    kind = report_kind_for_type(report_type)
    if kind:
        return kind
    if report_type:
        return PRIMARY_REPORT_KIND
    if event_kind in {"proposal_accepted", "proposal_declined"}:
        return "proposal"
    if event_kind == "campaign_started":
        return "update_campaign"
    return PRIMARY_REPORT_KIND


def to_utc_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
