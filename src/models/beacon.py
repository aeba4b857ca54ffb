from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator


_WIRE_CONFIG = {"populate_by_name": True, "extra": "ignore"}


class BeaconEngagementEventIn(BaseModel):
    type: str | None = None
    occurred_at: datetime | None = Field(default=None, alias="occurredAt")
    duration_seconds: float | None = Field(default=None, alias="durationSeconds")
    metadata: dict[str, Any] | None = None
    link_url: str | None = Field(default=None, alias="linkUrl")
    link_label: str | None = Field(default=None, alias="linkLabel")

    model_config = _WIRE_CONFIG


class BeaconWebhookData(BaseModel):
    report_type: str | None = Field(default=None, alias="reportType")
    propensity_score: float | None = Field(default=None, alias="propensityScore")
    total_views: int | None = Field(default=None, alias="totalViews")
    total_time_seconds: float | None = Field(default=None, alias="totalTimeSeconds")
    email_open_count: int | None = Field(default=None, alias="emailOpenCount")
    email_opens: int | None = Field(default=None, alias="emailOpens")
    is_hot_lead: bool | None = Field(default=None, alias="isHotLead")
    first_viewed_at: datetime | None = Field(default=None, alias="firstViewedAt")
    last_activity: datetime | None = Field(default=None, alias="lastActivity")
    last_viewed_at: datetime | None = Field(default=None, alias="lastViewedAt")
    report_sent_at: datetime | None = Field(default=None, alias="reportSentAt")
    sent_at: datetime | None = Field(default=None, alias="sentAt")
    owner_name: str | None = Field(default=None, alias="ownerName")
    owner_email: str | None = Field(default=None, alias="ownerEmail")
    owner_phone: str | None = Field(default=None, alias="ownerPhone")
    proposal_accepted_at: datetime | None = Field(default=None, alias="proposalAcceptedAt")
    proposal_declined_at: datetime | None = Field(default=None, alias="proposalDeclinedAt")
    proposal_decline_reason: str | None = Field(default=None, alias="proposalDeclineReason")
    campaign_started_at: datetime | None = Field(default=None, alias="campaignStartedAt")
    days_on_market: int | None = Field(default=None, alias="daysOnMarket")
    # Parsed one descriptor at a time by the ledger.
    events: list[Any] = Field(default_factory=list)

    model_config = _WIRE_CONFIG

    @field_validator("events", mode="before")
    @classmethod
    def _events_list_or_empty(cls, value: Any) -> Any:
        return value if isinstance(value, list) else []


class BeaconWebhookPayload(BaseModel):
    event: str | None = None
    external_lead_id: str | None = Field(default=None, alias="externalLeadId")
    report_id: str | None = Field(default=None, alias="reportId")
    report_url: str | None = Field(default=None, alias="reportUrl")
    personalized_url: str | None = Field(default=None, alias="personalizedUrl")
    timestamp: datetime | None = None
    data: BeaconWebhookData = Field(default_factory=BeaconWebhookData)

    model_config = _WIRE_CONFIG

    @field_validator("external_lead_id", "report_id", mode="before")
    @classmethod
    def _coerce_identifier(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value or None
        return str(value)

    @field_validator("data", mode="before")
    @classmethod
    def _data_or_empty(cls, value: Any) -> Any:
        return {} if value is None else value


class BeaconWebhookResponse(BaseModel):
    success: bool
    message: str | None = None
    error: str | None = None


class BeaconSyncRequest(BaseModel):
    appraisal_id: str
    beacon_report_id: str | None = None


class BeaconSyncResponse(BaseModel):
    appraisal_id: str
    beacon_report_id: str
    report_kind: str
    report_row_id: str | None = None
    propensity_score: int
    total_views: int
    total_time_seconds: int
    email_opens: int
    is_hot_lead: bool
    last_activity: str | None = None
    report_count: int
    mirrored_to_pipeline: bool
    synced_at: datetime
