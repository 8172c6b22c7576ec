from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from insider_ingest.config import Config
from insider_ingest.db import connect
from insider_ingest.models import (
    FILING_COMPLETED,
    FILING_FAILED,
    FILING_PENDING,
    PERSON_CORPORATE_INSIDER,
    FilingSummary,
    IngestStats,
    TransactionDraft,
)
from insider_ingest.sec.parser import parse_form4
from insider_ingest.sec.source import FilingSource
from insider_ingest.store import (
    find_filing_by_checksum,
    find_or_create_company,
    find_or_create_person,
    get_filing,
    insert_filing,
    insert_transaction,
    list_default_entity_ids,
    mark_filing_completed,
    mark_filing_failed,
)
from insider_ingest.util.hashing import filing_checksum
from insider_ingest.util.normalization import EntityRef, normalize_person_name, parse_entity_ref
from insider_ingest.util.time import parse_date_safe, utcnow


def _debug(msg: str) -> None:
    print(f"[ingest] {msg}")


MIN_LOOKBACK_DAYS = 1
MAX_LOOKBACK_DAYS = 30

UNKNOWN_PERSON_NAME = "UNKNOWN REPORTING OWNER"


def check_lookback_days(lookback_days: int) -> int:
    lookback = int(lookback_days)
    if not (MIN_LOOKBACK_DAYS <= lookback <= MAX_LOOKBACK_DAYS):
        raise ValueError(f"lookback_days must be within {MIN_LOOKBACK_DAYS}..{MAX_LOOKBACK_DAYS}, got {lookback}")
    return lookback


@dataclass(frozen=True)
class FetchOutcome:
    filing_id: int
    status: str
    created: bool


@dataclass(frozen=True)
class ParseOutcome:
    filing_id: int
    status: str
    transactions: int
    error: str | None = None


class IngestionOrchestrator:
    """Discover -> checksum guard -> fetch -> parse -> persist.

    Used directly by `ingest_recent` (one synchronous sweep) and piecewise by
    the filing queue handlers (discover / fetch / parse jobs).
    """

    def __init__(
        self,
        cfg: Config,
        source: FilingSource,
        *,
        db_dsn: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = utcnow,
    ):
        self.cfg = cfg
        self.source = source
        self.db_dsn = db_dsn or cfg.DB_DSN
        self._sleep = sleep
        self._now = now
        self._form_types = {f.strip().upper() for f in cfg.INGEST_FORM_TYPES if f.strip()}

    # -------------------------------------------------------------------------
    # Discovery
    # -------------------------------------------------------------------------

    def resolve_targets(self, entity_ids: Optional[Sequence[str]]) -> List[EntityRef]:
        raw = [str(e) for e in (entity_ids or []) if str(e).strip()]
        if not raw:
            with connect(self.db_dsn) as conn:
                raw = list_default_entity_ids(conn, self.cfg.INGEST_DEFAULT_ENTITY_LIMIT)
            _debug(f"No entities given; using {len(raw)} known companies")

        refs: List[EntityRef] = []
        seen: set[Tuple[str, Optional[str]]] = set()
        for e in raw:
            ref = parse_entity_ref(e)
            if ref is None:
                _debug(f"Ignoring unrecognized entity id: {e!r}")
                continue
            key = (ref.cik, ref.accession_number)
            if key not in seen:
                seen.add(key)
                refs.append(ref)
        return refs

    def _accepts(self, summary: FilingSummary, ref: EntityRef, cutoff: datetime) -> bool:
        if ref.accession_number and summary.accession_number != ref.accession_number:
            return False
        if (summary.form_type or "").strip().upper() not in self._form_types:
            return False
        filed = parse_date_safe(summary.filing_date)
        return filed is not None and filed >= cutoff.date()

    def discover(self, entity_ids: Optional[Sequence[str]], lookback_days: int) -> Tuple[List[FilingSummary], int]:
        """Candidate filings (newest first) and the number of entities whose listing failed."""
        lookback_days = check_lookback_days(lookback_days)
        refs = self.resolve_targets(entity_ids)
        cutoff = self._now() - timedelta(days=lookback_days)
        _debug(f"Targeting {len(refs)} entities, lookback={lookback_days}d")

        found: Dict[Tuple[str, str], FilingSummary] = {}
        errors = 0
        for i, ref in enumerate(refs):
            if i > 0 and self.cfg.INGEST_ENTITY_DELAY_SECONDS > 0:
                self._sleep(self.cfg.INGEST_ENTITY_DELAY_SECONDS)
            try:
                listing = self.source.list_filings(ref.cik)
            except Exception as e:
                errors += 1
                _debug(f"Listing failed for CIK {ref.cik}: {e}")
                continue
            for s in listing:
                if self._accepts(s, ref, cutoff):
                    found[(s.entity_id, s.accession_number)] = s

        discoveries = sorted(
            found.values(),
            key=lambda s: (s.filing_date or "", s.accession_number),
            reverse=True,
        )
        _debug(f"Discovered {len(discoveries)} candidate filings")
        return discoveries, errors

    def discover_new(
        self, entity_ids: Optional[Sequence[str]], lookback_days: int
    ) -> Tuple[List[FilingSummary], int]:
        """Candidates whose checksum is not stored yet, and the number of failed listings."""
        discoveries, listing_errors = self.discover(entity_ids, lookback_days)
        with connect(self.db_dsn) as conn:
            new = [
                s
                for s in discoveries
                if find_filing_by_checksum(conn, filing_checksum(s.entity_id, s.accession_number)) is None
            ]
        return new, listing_errors

    # -------------------------------------------------------------------------
    # Fetch
    # -------------------------------------------------------------------------

    def fetch_and_store(self, summary: FilingSummary) -> FetchOutcome:
        """Download a filing and store it as pending, unless its checksum is known.

        The checksum is checked before any network call. FetchFailed propagates.
        """
        checksum = filing_checksum(summary.entity_id, summary.accession_number)
        with connect(self.db_dsn) as conn:
            existing = find_filing_by_checksum(conn, checksum)
        if existing is not None:
            _debug(f"Skipping already stored filing: {summary.accession_number} ({existing['status']})")
            return FetchOutcome(int(existing["filing_id"]), str(existing["status"]), created=False)

        if not summary.document_name:
            raise RuntimeError(f"No primary document listed for {summary.accession_number}")

        content = self.source.fetch_document(summary.entity_id, summary.accession_number, summary.document_name)
        url = self.source.document_url(summary.entity_id, summary.accession_number, summary.document_name)

        with connect(self.db_dsn) as conn:
            filing_id = insert_filing(conn, summary=summary, checksum=checksum, url=url, raw_content=content)
            if filing_id is None:
                # Another worker stored it between our check and insert.
                existing = find_filing_by_checksum(conn, checksum)
                assert existing is not None
                return FetchOutcome(int(existing["filing_id"]), str(existing["status"]), created=False)

        return FetchOutcome(filing_id, FILING_PENDING, created=True)

    # -------------------------------------------------------------------------
    # Parse + persist
    # -------------------------------------------------------------------------

    def parse_filing(self, filing_id: int, *, force: bool = False) -> ParseOutcome:
        """Parse a stored filing and persist its transactions.

        Only `pending` filings are processed (`failed` too when force=True);
        anything else is a no-op. Any parse/persist exception marks the filing
        failed and is reported in the outcome, not raised.
        """
        with connect(self.db_dsn) as conn:
            filing = get_filing(conn, filing_id)
        if filing is None:
            raise RuntimeError(f"No filing with filing_id={filing_id}")

        status = str(filing["status"])
        runnable = status == FILING_PENDING or (force and status == FILING_FAILED)
        if not runnable:
            _debug(f"Filing {filing['accession_number']} already {status}; nothing to do")
            return ParseOutcome(filing_id, status, 0)

        try:
            drafts = parse_form4(filing["raw_content"] or "")
            with connect(self.db_dsn) as conn:
                inserted = self._persist(conn, filing, drafts)
                mark_filing_completed(conn, filing_id)
        except Exception as e:
            _debug(f"Failed to process filing {filing['accession_number']}: {e}")
            with connect(self.db_dsn) as conn:
                mark_filing_failed(conn, filing_id, str(e) or e.__class__.__name__)
            return ParseOutcome(filing_id, FILING_FAILED, 0, error=str(e) or e.__class__.__name__)

        _debug(f"Processed {inserted} transactions from {filing['accession_number']}")
        return ParseOutcome(filing_id, FILING_COMPLETED, inserted)

    def _persist(self, conn, filing: Dict, drafts: List[TransactionDraft]) -> int:
        people: Dict[str, int] = {}
        companies: Dict[Tuple[str, str], int] = {}
        inserted = 0
        for d in drafts:
            name = d.person_name or UNKNOWN_PERSON_NAME
            if name not in people:
                people[name] = find_or_create_person(
                    conn,
                    name=name,
                    person_type=PERSON_CORPORATE_INSIDER,
                    title=d.person_title,
                    is_officer=d.is_officer,
                    is_director=d.is_director,
                    name_normalized=normalize_person_name(name),
                )

            ckey = (d.company_ticker, d.company_name)
            if ckey not in companies:
                companies[ckey] = find_or_create_company(
                    conn,
                    cik=filing["entity_id"],
                    ticker=d.company_ticker,
                    name=d.company_name,
                )

            if insert_transaction(
                conn,
                filing_id=int(filing["filing_id"]),
                person_id=people[name],
                company_id=companies[ckey],
                draft=d,
                reported_date=filing["filing_date"],
                source_confidence=self.cfg.SOURCE_CONFIDENCE,
            ):
                inserted += 1
        return inserted

    # -------------------------------------------------------------------------
    # One-shot sweep
    # -------------------------------------------------------------------------

    def _reparse_failed(self, filing_id: int) -> ParseOutcome:
        _debug(f"Re-parsing failed filing_id={filing_id} from stored content")
        return self.parse_filing(filing_id, force=True)

    def ingest_recent(
        self,
        entity_ids: Optional[Sequence[str]] = None,
        lookback_days: int | None = None,
        force: bool = False,
    ) -> IngestStats:
        """Discover, fetch, parse and persist every recent filing of the given entities.

        With force=True, filings previously marked failed are re-parsed from
        their stored content. Completed filings are never touched again.
        """
        lookback = check_lookback_days(
            lookback_days if lookback_days is not None else self.cfg.INGEST_DEFAULT_LOOKBACK_DAYS
        )

        started = time.monotonic()
        stats = IngestStats()
        _debug(f"Starting SEC ingestion: entities={len(entity_ids or [])} lookback={lookback} force={force}")

        discoveries, listing_errors = self.discover(entity_ids, lookback)
        stats.discovered = len(discoveries)
        stats.errors += listing_errors

        for summary in discoveries:
            try:
                fetched = self.fetch_and_store(summary)
                if fetched.created:
                    outcome = self.parse_filing(fetched.filing_id)
                elif force and fetched.status == FILING_FAILED:
                    outcome = self._reparse_failed(fetched.filing_id)
                else:
                    stats.skipped += 1
                    continue
            except Exception as e:
                stats.errors += 1
                _debug(f"Failed to process filing {summary.accession_number}: {e}")
                continue

            if outcome.status == FILING_COMPLETED:
                stats.processed += 1
            else:
                stats.errors += 1

            done = stats.processed + stats.errors
            if done and done % 10 == 0:
                _debug(f"Progress: {done}/{len(discoveries)} filings handled")

        stats.duration_ms = int((time.monotonic() - started) * 1000)
        _debug(
            f"SEC ingestion complete: discovered={stats.discovered} processed={stats.processed} "
            f"skipped={stats.skipped} errors={stats.errors} in {stats.duration_ms}ms"
        )
        return stats
