from __future__ import annotations

from typing import Any, Dict, Optional

from insider_ingest.config import Config
from insider_ingest.db import connect
from insider_ingest.jobs.queues import (
    JOB_DISCOVER,
    JOB_FETCH,
    JOB_PARSE,
    JOB_RESOLVE_COMPANY,
    JOB_RESOLVE_PERSON,
    QUEUE_DISCOVERY,
    QUEUE_ENRICHMENT,
    QUEUE_FILING,
)
from insider_ingest.jobs.scheduler import JobContext, Scheduler
from insider_ingest.models import FILING_PENDING, FilingSummary
from insider_ingest.sec.client import SecArchiveClient
from insider_ingest.sec.ingest import IngestionOrchestrator
from insider_ingest.sec.tickers import TickerDirectory
from insider_ingest.store import get_company, get_person, set_person_name_normalized, update_company_identifiers
from insider_ingest.util.hashing import filing_checksum
from insider_ingest.util.normalization import normalize_person_name


def _debug(msg: str) -> None:
    print(f"[handlers] {msg}")


def summary_to_payload(s: FilingSummary) -> Dict[str, Any]:
    return {
        "entity_id": s.entity_id,
        "accession_number": s.accession_number,
        "document_name": s.document_name,
        "filing_date": s.filing_date,
        "form_type": s.form_type,
        "entity_name": s.entity_name,
    }


def summary_from_payload(payload: Dict[str, Any]) -> FilingSummary:
    return FilingSummary(
        entity_id=str(payload["entity_id"]),
        accession_number=str(payload["accession_number"]),
        filing_date=payload.get("filing_date"),
        form_type=payload.get("form_type"),
        document_name=payload.get("document_name"),
        entity_name=payload.get("entity_name"),
    )


class FilingJobHandlers:
    """discover -> N x fetch -> 1 x parse, each stage its own job."""

    def __init__(self, orchestrator: IngestionOrchestrator):
        self.orchestrator = orchestrator

    def discover(self, ctx: JobContext) -> Dict[str, Any]:
        p = ctx.payload
        lookback = p.get("lookback_days")
        if lookback is None:
            lookback = self.orchestrator.cfg.INGEST_DEFAULT_LOOKBACK_DAYS
        new, listing_errors = self.orchestrator.discover_new(p.get("entity_ids") or [], lookback)

        enqueued = 0
        for s in new:
            job_id = ctx.scheduler.enqueue(
                QUEUE_FILING,
                JOB_FETCH,
                summary_to_payload(s),
                dedupe_key=f"fetch|{filing_checksum(s.entity_id, s.accession_number)}",
                requeue_if_exists=True,
            )
            if job_id is not None:
                enqueued += 1
        _debug(f"discover: {len(new)} new filings, {enqueued} fetch jobs enqueued")
        if listing_errors:
            # Fetch jobs are deduped per filing, so the retried discovery re-queues nothing twice.
            raise RuntimeError(f"discover: {listing_errors} entity listing(s) failed")
        return {"discovered": len(new), "enqueued": enqueued}

    def fetch(self, ctx: JobContext) -> Dict[str, Any]:
        outcome = self.orchestrator.fetch_and_store(summary_from_payload(ctx.payload))
        if outcome.status == FILING_PENDING:
            ctx.scheduler.enqueue(
                QUEUE_FILING,
                JOB_PARSE,
                {"filing_id": outcome.filing_id},
                dedupe_key=f"parse|{outcome.filing_id}",
                requeue_if_exists=True,
            )
        return {"filing_id": outcome.filing_id, "status": outcome.status}

    def parse(self, ctx: JobContext) -> Dict[str, Any]:
        # A malformed document stays malformed: failures are recorded on the
        # filing and the job itself completes.
        outcome = self.orchestrator.parse_filing(int(ctx.payload["filing_id"]))
        return {"filing_id": outcome.filing_id, "status": outcome.status, "transactions": outcome.transactions}

    def register(self, scheduler: Scheduler) -> None:
        scheduler.register_handler(QUEUE_DISCOVERY, JOB_DISCOVER, self.discover)
        scheduler.register_handler(QUEUE_FILING, JOB_FETCH, self.fetch)
        scheduler.register_handler(QUEUE_FILING, JOB_PARSE, self.parse)


class EnrichmentJobHandlers:
    def __init__(self, db_dsn: str, tickers: TickerDirectory):
        self.db_dsn = db_dsn
        self.tickers = tickers

    def resolve_company(self, ctx: JobContext) -> Dict[str, Any]:
        company_id = int(ctx.payload["company_id"])
        with connect(self.db_dsn) as conn:
            company = get_company(conn, company_id)
        if company is None:
            raise RuntimeError(f"No company with company_id={company_id}")

        if company["cik"] and company["ticker"]:
            return {"company_id": company_id, "updated": False}

        rec = self.tickers.by_cik(company["cik"]) if company["cik"] else self.tickers.by_ticker(company["ticker"])
        if rec is None:
            _debug(f"resolve-company: no directory match for company_id={company_id}")
            return {"company_id": company_id, "updated": False}

        with connect(self.db_dsn) as conn:
            update_company_identifiers(conn, company_id, cik=rec.cik10, ticker=rec.ticker)
        return {"company_id": company_id, "updated": True, "cik": rec.cik10, "ticker": rec.ticker}

    def resolve_person(self, ctx: JobContext) -> Dict[str, Any]:
        person_id = int(ctx.payload["person_id"])
        with connect(self.db_dsn) as conn:
            person = get_person(conn, person_id)
            if person is None:
                raise RuntimeError(f"No person with person_id={person_id}")
            normalized = normalize_person_name(person["name"])
            set_person_name_normalized(conn, person_id, normalized)
        return {"person_id": person_id, "name_normalized": normalized}

    def register(self, scheduler: Scheduler) -> None:
        scheduler.register_handler(QUEUE_ENRICHMENT, JOB_RESOLVE_COMPANY, self.resolve_company)
        scheduler.register_handler(QUEUE_ENRICHMENT, JOB_RESOLVE_PERSON, self.resolve_person)


DISCOVERY_RECURRING_KEY = "discover-sec-filings"


def build_scheduler(
    cfg: Config,
    *,
    client: Optional[SecArchiveClient] = None,
    db_dsn: str | None = None,
) -> Scheduler:
    """Scheduler with the filing and enrichment handlers registered.

    Registers the recurring discovery job when ENABLE_RECURRING_DISCOVERY is set.
    """
    client = client or SecArchiveClient(cfg)
    dsn = db_dsn or cfg.DB_DSN
    scheduler = Scheduler(cfg, db_dsn=dsn)

    FilingJobHandlers(IngestionOrchestrator(cfg, client, db_dsn=dsn)).register(scheduler)
    EnrichmentJobHandlers(dsn, TickerDirectory(client.fetch_company_tickers)).register(scheduler)

    if cfg.ENABLE_RECURRING_DISCOVERY:
        scheduler.register_recurring(
            QUEUE_DISCOVERY,
            JOB_DISCOVER,
            {"lookback_days": 1},
            cfg.DISCOVERY_CRON,
            DISCOVERY_RECURRING_KEY,
        )
    return scheduler
