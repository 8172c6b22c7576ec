"""Database schema for the insider filing ingestion pipeline.

SQLite is the primary target; the Postgres schema is generated from it with a
small set of transformations (types + autoincrement).

Timestamps are ISO-8601 TEXT (UTC, with 'Z'). ISO strings sort
lexicographically in time order, so comparisons like `run_after <= now_iso`
behave correctly on both engines.
"""

from __future__ import annotations

import re


SCHEMA_SQLITE = r"""
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS companies (
    company_id INTEGER PRIMARY KEY AUTOINCREMENT,
    cik TEXT UNIQUE,
    ticker TEXT,
    name TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_companies_ticker ON companies (ticker);
CREATE INDEX IF NOT EXISTS idx_companies_name ON companies (name);
-- Companies without a CIK are keyed by ticker, or by name when there is no ticker.
CREATE UNIQUE INDEX IF NOT EXISTS ux_companies_ticker_no_cik ON companies (ticker)
    WHERE cik IS NULL AND ticker IS NOT NULL;
CREATE UNIQUE INDEX IF NOT EXISTS ux_companies_name_no_cik ON companies (name)
    WHERE cik IS NULL AND ticker IS NULL;

CREATE TABLE IF NOT EXISTS persons (
    person_id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    person_type TEXT NOT NULL,
    title TEXT,
    is_officer INTEGER,
    is_director INTEGER,
    name_normalized TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (name, person_type)
);

-- One fetched source document. checksum is the only de-duplication key.
CREATE TABLE IF NOT EXISTS filings (
    filing_id INTEGER PRIMARY KEY AUTOINCREMENT,
    source TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    form_type TEXT,
    url TEXT,
    filing_date TEXT,
    accession_number TEXT NOT NULL,
    checksum TEXT NOT NULL UNIQUE,
    raw_content TEXT,
    status TEXT NOT NULL CHECK (status IN ('pending','completed','failed')),
    error_message TEXT,
    processed_at TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_filings_status ON filings (status, created_at);
CREATE INDEX IF NOT EXISTS idx_filings_entity_date ON filings (entity_id, filing_date);

CREATE TABLE IF NOT EXISTS transactions (
    transaction_id INTEGER PRIMARY KEY AUTOINCREMENT,
    filing_id INTEGER NOT NULL,
    line_index INTEGER NOT NULL,
    person_id INTEGER NOT NULL,
    company_id INTEGER NOT NULL,
    trade_type TEXT NOT NULL CHECK (trade_type IN ('buy','sell')),
    transaction_code TEXT,
    security_title TEXT NOT NULL,
    quantity REAL NOT NULL,
    price REAL,
    estimated_value REAL,
    shares_owned_after REAL,
    transaction_date TEXT,
    reported_date TEXT,
    ownership_type TEXT NOT NULL CHECK (ownership_type IN ('direct','indirect')),
    source_confidence REAL NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (filing_id, line_index),
    FOREIGN KEY (filing_id) REFERENCES filings(filing_id),
    FOREIGN KEY (person_id) REFERENCES persons(person_id),
    FOREIGN KEY (company_id) REFERENCES companies(company_id)
);
CREATE INDEX IF NOT EXISTS idx_transactions_company_date ON transactions (company_id, transaction_date);
CREATE INDEX IF NOT EXISTS idx_transactions_person_date ON transactions (person_id, transaction_date);

-- Scheduled work. status: pending (waiting or delayed) | running | success | error
CREATE TABLE IF NOT EXISTS jobs (
    job_id INTEGER PRIMARY KEY AUTOINCREMENT,
    queue_name TEXT NOT NULL,
    job_type TEXT NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('pending','running','success','error')),
    priority INTEGER NOT NULL DEFAULT 0,
    dedupe_key TEXT UNIQUE,
    payload_json TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL,
    backoff_type TEXT NOT NULL CHECK (backoff_type IN ('fixed','exponential')),
    backoff_delay_seconds REAL NOT NULL,
    last_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    run_after TEXT,
    finished_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_jobs_queue_status ON jobs (queue_name, status, priority, created_at);
CREATE INDEX IF NOT EXISTS idx_jobs_run_after ON jobs (run_after);

-- Recurring job definitions, one row per dedup key.
CREATE TABLE IF NOT EXISTS recurring_jobs (
    dedup_key TEXT PRIMARY KEY,
    queue_name TEXT NOT NULL,
    job_type TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    cron_pattern TEXT NOT NULL,
    next_run_at TEXT NOT NULL,
    last_enqueued_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


def _sqlite_to_postgres(ddl: str) -> str:
    # Remove SQLite pragmas
    lines: list[str] = []
    for line in ddl.splitlines():
        if line.strip().upper().startswith("PRAGMA "):
            continue
        lines.append(line)
    out = "\n".join(lines)

    # Types
    out = re.sub(r"\bREAL\b", "DOUBLE PRECISION", out)

    # AUTOINCREMENT primary keys
    out = re.sub(
        r"INTEGER\s+PRIMARY\s+KEY\s+AUTOINCREMENT",
        "BIGSERIAL PRIMARY KEY",
        out,
        flags=re.IGNORECASE,
    )
    out = re.sub(r"\bAUTOINCREMENT\b", "", out, flags=re.IGNORECASE)

    return out


SCHEMA_POSTGRES = _sqlite_to_postgres(SCHEMA_SQLITE)


def get_schema_sql(dialect: str) -> str:
    d = (dialect or "").lower()
    if d.startswith("post"):
        return SCHEMA_POSTGRES
    return SCHEMA_SQLITE
