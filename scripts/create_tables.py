#!/usr/bin/env python3
"""Create the Beacon engagement tables and columns."""

import os
import psycopg2
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")

SQL = """
-- 1. engagement cache on appraisals (rows are owned by the appraisal flow)
ALTER TABLE logged_appraisals
    ADD COLUMN IF NOT EXISTS beacon_report_id TEXT,
    ADD COLUMN IF NOT EXISTS beacon_propensity_score INTEGER NOT NULL DEFAULT 0,
    ADD COLUMN IF NOT EXISTS beacon_total_views INTEGER NOT NULL DEFAULT 0,
    ADD COLUMN IF NOT EXISTS beacon_total_time_seconds INTEGER NOT NULL DEFAULT 0,
    ADD COLUMN IF NOT EXISTS beacon_email_opens INTEGER NOT NULL DEFAULT 0,
    ADD COLUMN IF NOT EXISTS beacon_is_hot_lead BOOLEAN NOT NULL DEFAULT FALSE,
    ADD COLUMN IF NOT EXISTS beacon_last_activity TIMESTAMPTZ,
    ADD COLUMN IF NOT EXISTS beacon_first_viewed_at TIMESTAMPTZ,
    ADD COLUMN IF NOT EXISTS beacon_report_sent_at TIMESTAMPTZ,
    ADD COLUMN IF NOT EXISTS beacon_synced_at TIMESTAMPTZ;

-- 2. beacon_reports (many per appraisal)
CREATE TABLE IF NOT EXISTS beacon_reports (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    appraisal_id UUID NOT NULL REFERENCES logged_appraisals(id) ON DELETE CASCADE,
    beacon_report_id TEXT,
    report_type VARCHAR(30) NOT NULL DEFAULT 'market_appraisal'
        CHECK (report_type IN ('market_appraisal', 'proposal', 'update_campaign')),
    report_url TEXT,
    personalized_url TEXT,
    propensity_score INTEGER NOT NULL DEFAULT 0,
    total_views INTEGER NOT NULL DEFAULT 0,
    total_time_seconds INTEGER NOT NULL DEFAULT 0,
    email_opens INTEGER NOT NULL DEFAULT 0,
    is_hot_lead BOOLEAN NOT NULL DEFAULT FALSE,
    first_viewed_at TIMESTAMPTZ,
    last_activity TIMESTAMPTZ,
    sent_at TIMESTAMPTZ,
    proposal_accepted_at TIMESTAMPTZ,
    proposal_declined_at TIMESTAMPTZ,
    proposal_decline_reason TEXT,
    campaign_started_at TIMESTAMPTZ,
    days_on_market INTEGER,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_beacon_reports_appraisal_kind
    ON beacon_reports(appraisal_id, report_type, created_at DESC);

-- 3. beacon_engagement_events (append-only ledger)
CREATE TABLE IF NOT EXISTS beacon_engagement_events (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    appraisal_id UUID NOT NULL REFERENCES logged_appraisals(id) ON DELETE CASCADE,
    event_type VARCHAR(50) NOT NULL,
    occurred_at TIMESTAMPTZ NOT NULL,
    duration_seconds INTEGER NOT NULL DEFAULT 0,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE(appraisal_id, event_type, occurred_at)
);

-- 4. notifications
CREATE TABLE IF NOT EXISTS notifications (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id UUID NOT NULL,
    title VARCHAR(255) NOT NULL,
    message TEXT NOT NULL,
    type VARCHAR(50) NOT NULL,
    action_url TEXT,
    read BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_notifications_user_id ON notifications(user_id);

-- 5. mirror columns on converted listings
ALTER TABLE listings_pipeline
    ADD COLUMN IF NOT EXISTS beacon_propensity_score INTEGER,
    ADD COLUMN IF NOT EXISTS beacon_is_hot_lead BOOLEAN,
    ADD COLUMN IF NOT EXISTS beacon_last_activity TIMESTAMPTZ;

-- 6. observability_metric_snapshots
CREATE TABLE IF NOT EXISTS observability_metric_snapshots (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    source VARCHAR(100) NOT NULL,
    request_id VARCHAR(100),
    counters JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


def main():
    print("Connecting to database...")
    conn = psycopg2.connect(DATABASE_URL)
    conn.autocommit = True
    cur = conn.cursor()

    print("Creating tables...")
    cur.execute(SQL)

    # Verify
    cur.execute(
        "SELECT table_name FROM information_schema.tables WHERE table_schema = 'public' "
        "AND table_name IN ('beacon_reports', 'beacon_engagement_events', 'notifications', "
        "'observability_metric_snapshots') ORDER BY table_name;"
    )
    tables = cur.fetchall()
    print(f"\nTables present: {[t[0] for t in tables]}")

    cur.close()
    conn.close()
    print("\nDone!")


if __name__ == "__main__":
    main()
