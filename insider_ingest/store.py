"""Persistence operations used by the ingestion pipeline.

Natural-key creation (person, company, filing checksum) is always
`INSERT ... ON CONFLICT DO NOTHING` followed by a re-query, so two workers
resolving the same key at once end up with one row.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from insider_ingest.models import (
    FILING_COMPLETED,
    FILING_FAILED,
    FILING_PENDING,
    FILING_SOURCE_SEC,
    FilingSummary,
    TransactionDraft,
)
from insider_ingest.util.time import utcnow_iso


def _row(r: Any) -> Optional[Dict[str, Any]]:
    return dict(r) if r is not None else None


# -----------------------------------------------------------------------------
# Filings
# -----------------------------------------------------------------------------


def find_filing_by_checksum(conn: Any, checksum: str) -> Optional[Dict[str, Any]]:
    r = conn.execute(
        "SELECT filing_id, accession_number, status FROM filings WHERE checksum=?",
        (checksum,),
    ).fetchone()
    return _row(r)


def get_filing(conn: Any, filing_id: int) -> Optional[Dict[str, Any]]:
    r = conn.execute("SELECT * FROM filings WHERE filing_id=?", (int(filing_id),)).fetchone()
    return _row(r)


def insert_filing(
    conn: Any,
    *,
    summary: FilingSummary,
    checksum: str,
    url: str,
    raw_content: str,
) -> Optional[int]:
    """Insert a pending filing. Returns None if the checksum already exists."""
    row = conn.execute(
        """
        INSERT INTO filings (source, entity_id, form_type, url, filing_date, accession_number, checksum,
                             raw_content, status, error_message, processed_at, created_at)
        VALUES (?,?,?,?,?,?,?,?,?,NULL,NULL,?)
        ON CONFLICT(checksum) DO NOTHING
        RETURNING filing_id
        """,
        (
            FILING_SOURCE_SEC,
            summary.entity_id,
            summary.form_type,
            url,
            summary.filing_date,
            summary.accession_number,
            checksum,
            raw_content,
            FILING_PENDING,
            utcnow_iso(),
        ),
    ).fetchone()
    return int(row["filing_id"]) if row is not None else None


def mark_filing_completed(conn: Any, filing_id: int) -> None:
    conn.execute(
        "UPDATE filings SET status=?, error_message=NULL, processed_at=? WHERE filing_id=?",
        (FILING_COMPLETED, utcnow_iso(), int(filing_id)),
    )


def mark_filing_failed(conn: Any, filing_id: int, error: str) -> None:
    conn.execute(
        "UPDATE filings SET status=?, error_message=?, processed_at=? WHERE filing_id=?",
        (FILING_FAILED, str(error)[:5000], utcnow_iso(), int(filing_id)),
    )


# -----------------------------------------------------------------------------
# Reference entities
# -----------------------------------------------------------------------------


def find_or_create_person(
    conn: Any,
    *,
    name: str,
    person_type: str,
    title: str | None = None,
    is_officer: bool | None = None,
    is_director: bool | None = None,
    name_normalized: str | None = None,
) -> int:
    conn.execute(
        """
        INSERT INTO persons (name, person_type, title, is_officer, is_director, name_normalized, created_at)
        VALUES (?,?,?,?,?,?,?)
        ON CONFLICT(name, person_type) DO NOTHING
        """,
        (
            name,
            person_type,
            title or None,
            None if is_officer is None else int(bool(is_officer)),
            None if is_director is None else int(bool(is_director)),
            name_normalized,
            utcnow_iso(),
        ),
    )
    r = conn.execute(
        "SELECT person_id FROM persons WHERE name=? AND person_type=?",
        (name, person_type),
    ).fetchone()
    return int(r["person_id"])


def _company_by(conn: Any, column: str, value: str, *, without_cik: bool = False) -> Optional[int]:
    extra = " AND cik IS NULL" if without_cik else ""
    r = conn.execute(
        f"SELECT company_id FROM companies WHERE {column}=?{extra} ORDER BY company_id LIMIT 1",
        (value,),
    ).fetchone()
    return int(r["company_id"]) if r is not None else None


def find_or_create_company(conn: Any, *, cik: str | None, ticker: str | None, name: str | None) -> int:
    """Resolve a company by CIK, then ticker, then name; create it if unseen.

    A company first seen without a CIK (e.g. seeded by ticker) gets the CIK
    filled in when it is later matched by ticker or name.
    """
    ticker = (ticker or "").strip().upper() or None
    name = (name or "").strip() or None
    now = utcnow_iso()

    if cik:
        found = _company_by(conn, "cik", cik)
        if found is not None:
            return found

        for column, value in (("ticker", ticker), ("name", name)):
            if not value:
                continue
            found = _company_by(conn, column, value, without_cik=True)
            if found is not None:
                conn.execute(
                    """
                    UPDATE companies SET cik=?, updated_at=?
                    WHERE company_id=? AND cik IS NULL
                      AND NOT EXISTS (SELECT 1 FROM companies WHERE cik=?)
                    """,
                    (cik, now, found, cik),
                )
                return _company_by(conn, "cik", cik) or found

        conn.execute(
            """
            INSERT INTO companies (cik, ticker, name, created_at, updated_at)
            VALUES (?,?,?,?,?)
            ON CONFLICT(cik) DO NOTHING
            """,
            (cik, ticker, name or ticker or cik, now, now),
        )
        found = _company_by(conn, "cik", cik)
        if found is None:
            raise RuntimeError(f"Company row for cik={cik} vanished after insert")
        return found

    for column, value in (("ticker", ticker), ("name", name)):
        if value:
            found = _company_by(conn, column, value)
            if found is not None:
                return found

    if not (ticker or name):
        raise ValueError("Cannot resolve a company without cik, ticker or name")

    if ticker:
        column, value, target = "ticker", ticker, "(ticker) WHERE cik IS NULL AND ticker IS NOT NULL"
    else:
        column, value, target = "name", name, "(name) WHERE cik IS NULL AND ticker IS NULL"
    conn.execute(
        f"""
        INSERT INTO companies (cik, ticker, name, created_at, updated_at)
        VALUES (NULL,?,?,?,?)
        ON CONFLICT {target} DO NOTHING
        """,
        (ticker, name or ticker, now, now),
    )
    found = _company_by(conn, column, value)
    if found is None:
        raise RuntimeError(f"Company row for {column}={value} vanished after insert")
    return found


def get_company(conn: Any, company_id: int) -> Optional[Dict[str, Any]]:
    r = conn.execute("SELECT * FROM companies WHERE company_id=?", (int(company_id),)).fetchone()
    return _row(r)


def update_company_identifiers(conn: Any, company_id: int, *, cik: str | None, ticker: str | None) -> None:
    """Fill a missing CIK/ticker; never overwrites known values."""
    conn.execute(
        """
        UPDATE companies
        SET ticker=COALESCE(NULLIF(ticker, ''), ?),
            cik=CASE
                WHEN cik IS NOT NULL THEN cik
                WHEN EXISTS (SELECT 1 FROM companies c2 WHERE c2.cik=?) THEN NULL
                ELSE ?
            END,
            updated_at=?
        WHERE company_id=?
        """,
        (ticker, cik, cik, utcnow_iso(), int(company_id)),
    )


def get_person(conn: Any, person_id: int) -> Optional[Dict[str, Any]]:
    r = conn.execute("SELECT * FROM persons WHERE person_id=?", (int(person_id),)).fetchone()
    return _row(r)


def set_person_name_normalized(conn: Any, person_id: int, name_normalized: str | None) -> None:
    conn.execute(
        "UPDATE persons SET name_normalized=? WHERE person_id=?",
        (name_normalized, int(person_id)),
    )


def list_default_entity_ids(conn: Any, limit: int) -> List[str]:
    """Known companies with a resolvable archive identifier."""
    rows = conn.execute(
        """
        SELECT cik FROM companies
        WHERE cik IS NOT NULL AND cik <> ''
        ORDER BY company_id
        LIMIT ?
        """,
        (int(limit),),
    ).fetchall()
    return [str(r["cik"]) for r in rows]


# -----------------------------------------------------------------------------
# Transactions
# -----------------------------------------------------------------------------


def insert_transaction(
    conn: Any,
    *,
    filing_id: int,
    person_id: int,
    company_id: int,
    draft: TransactionDraft,
    reported_date: str | None,
    source_confidence: float,
) -> bool:
    """Insert one extracted line. Returns False if the line was already stored."""
    cur = conn.execute(
        """
        INSERT INTO transactions (
            filing_id, line_index, person_id, company_id,
            trade_type, transaction_code, security_title,
            quantity, price, estimated_value, shares_owned_after,
            transaction_date, reported_date, ownership_type, source_confidence, created_at
        ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
        ON CONFLICT(filing_id, line_index) DO NOTHING
        """,
        (
            int(filing_id),
            draft.line_index,
            int(person_id),
            int(company_id),
            draft.trade_type,
            draft.transaction_code or None,
            draft.security_title,
            draft.shares,
            draft.price_per_share,
            draft.estimated_value,
            draft.shares_owned_after,
            draft.transaction_date,
            reported_date,
            draft.ownership_type,
            float(source_confidence),
            utcnow_iso(),
        ),
    )
    return cur.rowcount > 0
