#!/usr/bin/env python3
"""Create the delivery ledger, tracking and audit tables for Conversions Bridge."""

import os
import psycopg2
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")

SQL = """
-- 1. meta_capi_queue: append-only delivery ledger, one row per state change
CREATE TABLE IF NOT EXISTS meta_capi_queue (
    row_id BIGSERIAL PRIMARY KEY,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    queue_id UUID NOT NULL,
    source VARCHAR(20) NOT NULL,
    brand VARCHAR(20) NOT NULL,
    event_name VARCHAR(40) NOT NULL,
    email VARCHAR(255),
    email_hash VARCHAR(64),
    keap_contact_id VARCHAR(40),
    order_id VARCHAR(40),
    event_id VARCHAR(255),
    pixel_id VARCHAR(40),
    event_time BIGINT NOT NULL,
    action_source VARCHAR(40) NOT NULL,
    event_source_url TEXT,
    capi_payload_json TEXT NOT NULL,
    status VARCHAR(10) NOT NULL,
    attempt_count INTEGER NOT NULL DEFAULT 0,
    next_attempt_at TIMESTAMPTZ NOT NULL,
    last_http_status INTEGER,
    last_error_message TEXT,
    last_response_json TEXT,
    last_latency_ms INTEGER,
    CONSTRAINT meta_capi_queue_status_check CHECK (status IN ('PENDING', 'SENT', 'FAILED', 'DEAD')),
    CONSTRAINT meta_capi_queue_source_check CHECK (source IN ('subscribe', 'purchase')),
    UNIQUE(queue_id, updated_at)
);
CREATE INDEX IF NOT EXISTS idx_meta_capi_queue_queue_id ON meta_capi_queue(queue_id, updated_at DESC);
CREATE INDEX IF NOT EXISTS idx_meta_capi_queue_event_id ON meta_capi_queue(source, event_id, created_at);
CREATE INDEX IF NOT EXISTS idx_meta_capi_queue_next_attempt ON meta_capi_queue(status, next_attempt_at);

-- 2. meta_capi_queue_latest: latest row per queue_id
CREATE OR REPLACE VIEW meta_capi_queue_latest AS
SELECT DISTINCT ON (queue_id) *
FROM meta_capi_queue
ORDER BY queue_id, updated_at DESC;

-- 3. tracking_context: browser attribution captured at signup
CREATE TABLE IF NOT EXISTS tracking_context (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    brand VARCHAR(20) NOT NULL,
    email VARCHAR(255) NOT NULL,
    keap_contact_id VARCHAR(40),
    pixel_id VARCHAR(40),
    fbp VARCHAR(255),
    fbc VARCHAR(255),
    fbclid VARCHAR(255),
    event_id VARCHAR(255),
    utm_source VARCHAR(255),
    utm_medium VARCHAR(255),
    utm_campaign VARCHAR(255),
    utm_content VARCHAR(255),
    utm_term VARCHAR(255),
    source_url TEXT,
    user_agent TEXT,
    ip_address VARCHAR(64)
);
CREATE INDEX IF NOT EXISTS idx_tracking_context_contact ON tracking_context(keap_contact_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_tracking_context_email ON tracking_context(email, created_at DESC);

-- 4. keap_webhook_log: one row per classified payment
CREATE TABLE IF NOT EXISTS keap_webhook_log (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    payment_id BIGINT NOT NULL,
    contact_id BIGINT,
    brand VARCHAR(20),
    event_name VARCHAR(40),
    subscription_plan_id BIGINT,
    prior_order_count INTEGER,
    order_id VARCHAR(40),
    amount NUMERIC(12, 2),
    currency VARCHAR(3),
    raw_transaction_json TEXT,
    raw_order_json TEXT,
    classification_note TEXT
);
CREATE INDEX IF NOT EXISTS idx_keap_webhook_log_payment ON keap_webhook_log(payment_id);
"""


def main():
    print("Connecting to database...")
    conn = psycopg2.connect(DATABASE_URL)
    conn.autocommit = True
    cur = conn.cursor()

    print("Creating tables...")
    cur.execute(SQL)

    # Verify
    cur.execute("SELECT table_name FROM information_schema.tables WHERE table_schema = 'public' ORDER BY table_name;")
    tables = cur.fetchall()
    print(f"\nTables created: {[t[0] for t in tables]}")

    cur.execute("SELECT status, COUNT(*) FROM meta_capi_queue_latest GROUP BY status ORDER BY status;")
    print(f"Ledger status counts: {cur.fetchall()}")

    cur.close()
    conn.close()
    print("\nDone!")

if __name__ == "__main__":
    main()
