"""
PostgreSQL schema for the issuance pipeline.

`batches`, `inspections` and `notifications` mirror the tables owned by the
surrounding services; the pipeline only reads the first two and inserts into
the third.
"""

from __future__ import annotations

import psycopg
import structlog

log = structlog.get_logger()

DDL = """
CREATE TABLE IF NOT EXISTS issuance_jobs (
    id              UUID PRIMARY KEY,
    batch_id        TEXT NOT NULL,
    inspection_id   TEXT,
    certificate_id  UUID,
    status          TEXT NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'processing', 'success', 'failed')),
    attempts        INTEGER NOT NULL DEFAULT 0,
    max_attempts    INTEGER NOT NULL DEFAULT 3,
    worker_id       TEXT,
    last_error      TEXT,
    result          JSONB,
    created_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
    CHECK (attempts <= max_attempts)
);
CREATE INDEX IF NOT EXISTS issuance_jobs_claimable_idx
    ON issuance_jobs (status, created_at);
CREATE INDEX IF NOT EXISTS issuance_jobs_batch_idx
    ON issuance_jobs (batch_id, status);

CREATE TABLE IF NOT EXISTS certificates (
    id                      UUID PRIMARY KEY,
    batch_id                TEXT NOT NULL UNIQUE,
    credential_document     JSONB NOT NULL,
    provider_credential_id  TEXT,
    retrieval_url           TEXT,
    content_hash            TEXT NOT NULL,
    qr_envelope             TEXT NOT NULL,
    status                  TEXT NOT NULL DEFAULT 'active'
                            CHECK (status IN ('active', 'revoked', 'expired')),
    revoked                 BOOLEAN NOT NULL DEFAULT FALSE,
    issued_by               TEXT NOT NULL,
    issued_at               TIMESTAMPTZ NOT NULL,
    expires_at              TIMESTAMPTZ,
    revoked_at              TIMESTAMPTZ,
    revoked_by              TEXT,
    revocation_reason       TEXT
);
CREATE INDEX IF NOT EXISTS certificates_hash_idx ON certificates (content_hash);
CREATE INDEX IF NOT EXISTS certificates_provider_idx ON certificates (provider_credential_id);

CREATE TABLE IF NOT EXISTS revocations (
    id                      UUID PRIMARY KEY,
    certificate_id          UUID,
    content_hash            TEXT,
    provider_credential_id  TEXT,
    revoked_by              TEXT NOT NULL,
    reason                  TEXT NOT NULL,
    revoked_at              TIMESTAMPTZ NOT NULL,
    CHECK (
        certificate_id IS NOT NULL
        OR content_hash IS NOT NULL
        OR provider_credential_id IS NOT NULL
    )
);
CREATE INDEX IF NOT EXISTS revocations_certificate_idx ON revocations (certificate_id);
CREATE INDEX IF NOT EXISTS revocations_hash_idx ON revocations (content_hash);
CREATE INDEX IF NOT EXISTS revocations_provider_idx ON revocations (provider_credential_id);

CREATE TABLE IF NOT EXISTS batches (
    id                   TEXT PRIMARY KEY,
    product_type         TEXT NOT NULL,
    product_name         TEXT NOT NULL,
    farmer_id            TEXT NOT NULL,
    farmer_name          TEXT,
    farmer_organization  TEXT,
    quantity             NUMERIC,
    unit                 TEXT,
    harvest_date         DATE,
    location             JSONB NOT NULL DEFAULT '{}'::jsonb,
    status               TEXT NOT NULL DEFAULT 'submitted',
    certified_at         TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS inspections (
    id              TEXT PRIMARY KEY,
    batch_id        TEXT NOT NULL REFERENCES batches (id),
    inspector_id    TEXT NOT NULL,
    inspector_name  TEXT,
    status          TEXT NOT NULL,
    outcome         JSONB,
    quality_grade   TEXT,
    readings        JSONB,
    notes           TEXT,
    overall_score   NUMERIC,
    inspected_at    TIMESTAMPTZ,
    completed_at    TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS notifications (
    id          UUID PRIMARY KEY,
    user_id     TEXT NOT NULL,
    type        TEXT NOT NULL,
    title       TEXT NOT NULL,
    message     TEXT NOT NULL,
    payload     JSONB,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

TABLES = (
    "notifications",
    "inspections",
    "batches",
    "revocations",
    "certificates",
    "issuance_jobs",
)


def apply_schema(dsn: str) -> None:
    """Create all tables and indexes if they do not exist yet."""
    with psycopg.connect(dsn) as conn:
        conn.execute(DDL)
        conn.commit()
    log.info("schema.applied", tables=len(TABLES))
