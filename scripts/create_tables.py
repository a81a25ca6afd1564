#!/usr/bin/env python3
"""Create the webhook record and dispatch queue tables for Metform Dispatch."""

import os
import psycopg2
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")

SQL = """
-- 1. metform_webhooks
CREATE TABLE IF NOT EXISTS metform_webhooks (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    payload JSONB NOT NULL,
    processed BOOLEAN NOT NULL DEFAULT FALSE,
    processed_at TIMESTAMPTZ,
    error_message TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT metform_webhooks_processed_at_consistent
        CHECK ((processed AND processed_at IS NOT NULL) OR (NOT processed))
);
CREATE INDEX IF NOT EXISTS idx_metform_webhooks_processed ON metform_webhooks(processed);
CREATE INDEX IF NOT EXISTS idx_metform_webhooks_created_at ON metform_webhooks(created_at DESC);

-- 2. webhook_dispatch_jobs
CREATE TABLE IF NOT EXISTS webhook_dispatch_jobs (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    webhook_id UUID NOT NULL REFERENCES metform_webhooks(id) ON DELETE CASCADE,
    status VARCHAR(20) NOT NULL DEFAULT 'queued',
    attempt_count INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    next_attempt_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    last_error TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_webhook_dispatch_jobs_due ON webhook_dispatch_jobs(status, next_attempt_at);
CREATE INDEX IF NOT EXISTS idx_webhook_dispatch_jobs_webhook_id ON webhook_dispatch_jobs(webhook_id);
"""


def main():
    if not DATABASE_URL:
        print("Error: DATABASE_URL must be set in .env")
        raise SystemExit(1)

    print("Connecting to database...")
    conn = psycopg2.connect(DATABASE_URL)
    conn.autocommit = True
    cur = conn.cursor()

    print("Creating tables...")
    cur.execute(SQL)

    # Verify
    cur.execute(
        "SELECT table_name FROM information_schema.tables "
        "WHERE table_schema = 'public' AND table_name IN ('metform_webhooks', 'webhook_dispatch_jobs') "
        "ORDER BY table_name;"
    )
    tables = cur.fetchall()
    print(f"\nTables created: {[t[0] for t in tables]}")

    cur.close()
    conn.close()
    print("\nDone!")

if __name__ == "__main__":
    main()
