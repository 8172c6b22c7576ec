import os
from dataclasses import dataclass
from typing import Optional, Tuple

from dotenv import load_dotenv

# Optional local .env file; real environment variables win.
load_dotenv()


def _env_bool(name: str, default: Optional[bool] = None) -> Optional[bool]:
    """Parse a boolean environment variable.

    Returns:
      - True/False if the env var is set to a recognizable value
      - default if unset or unrecognized

    Accepted truthy: 1, true, yes, y, on
    Accepted falsy:  0, false, no, n, off
    """

    raw = os.environ.get(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in ("1", "true", "yes", "y", "on"):
        return True
    if v in ("0", "false", "no", "n", "off"):
        return False
    return default


def _env_list(name: str, default: str) -> Tuple[str, ...]:
    raw = os.environ.get(name, default)
    return tuple(p.strip() for p in raw.split(",") if p.strip())


@dataclass(frozen=True)
class Config:
    """Runtime configuration.

    Every value can be overridden through the environment or a .env file.
    """

    # -----------------
    # Core
    # -----------------
    # Postgres when INSIDER_DATABASE_URL / DATABASE_URL is a postgres:// URL,
    # otherwise a SQLite file path.
    DB_DSN: str = (
        os.environ.get("INSIDER_DATABASE_URL")
        or os.environ.get("DATABASE_URL")
        or os.environ.get("INSIDER_DB_PATH", "./insider_ingest.sqlite")
    )

    # -----------------
    # SEC archive
    # -----------------
    # EDGAR requires a descriptive User-Agent with a contact address.
    SEC_USER_AGENT: str = os.environ.get(
        "SEC_USER_AGENT",
        "InsiderIngest/0.1 (contact: you@example.com)",
    )
    SEC_SUBMISSIONS_BASE_URL: str = os.environ.get("SEC_SUBMISSIONS_BASE_URL", "https://data.sec.gov/submissions")
    SEC_ARCHIVES_BASE_URL: str = os.environ.get("SEC_ARCHIVES_BASE_URL", "https://www.sec.gov/Archives/edgar/data")
    SEC_TICKERS_URL: str = os.environ.get("SEC_TICKERS_URL", "https://www.sec.gov/files/company_tickers.json")

    # Polite rate limiting: the archive allows 10 requests/second.
    SEC_MIN_INTERVAL_SECONDS: float = float(os.environ.get("SEC_MIN_INTERVAL_SECONDS", "0.1"))
    SEC_REQUEST_TIMEOUT_SECONDS: float = float(os.environ.get("SEC_REQUEST_TIMEOUT_SECONDS", "30"))

    # Soft self-throttle when the server reports a low remaining quota.
    SEC_QUOTA_HEADER: str = os.environ.get("SEC_QUOTA_HEADER", "X-RateLimit-Remaining")
    SEC_QUOTA_LOW_WATERMARK: int = int(os.environ.get("SEC_QUOTA_LOW_WATERMARK", "5"))
    SEC_QUOTA_BACKOFF_SECONDS: float = float(os.environ.get("SEC_QUOTA_BACKOFF_SECONDS", "1.0"))

    # -----------------
    # Ingestion
    # -----------------
    INGEST_FORM_TYPES: Tuple[str, ...] = _env_list("INGEST_FORM_TYPES", "4")
    INGEST_DEFAULT_LOOKBACK_DAYS: int = int(os.environ.get("INGEST_DEFAULT_LOOKBACK_DAYS", "7"))
    # Upper bound on the default entity set when no entities are given.
    INGEST_DEFAULT_ENTITY_LIMIT: int = int(os.environ.get("INGEST_DEFAULT_ENTITY_LIMIT", "100"))
    INGEST_ENTITY_DELAY_SECONDS: float = float(os.environ.get("INGEST_ENTITY_DELAY_SECONDS", "0.2"))
    SOURCE_CONFIDENCE: float = float(os.environ.get("SOURCE_CONFIDENCE", "0.95"))

    # -----------------
    # Scheduler
    # -----------------
    WORKER_POLL_SECONDS: float = float(os.environ.get("WORKER_POLL_SECONDS", "1.0"))

    # Per queue: worker concurrency, attempts, backoff and finished jobs kept (older rows are pruned).
    DISCOVERY_CONCURRENCY: int = int(os.environ.get("DISCOVERY_CONCURRENCY", "1"))
    DISCOVERY_MAX_ATTEMPTS: int = int(os.environ.get("DISCOVERY_MAX_ATTEMPTS", "3"))
    DISCOVERY_BACKOFF: str = os.environ.get("DISCOVERY_BACKOFF", "exponential")
    DISCOVERY_BACKOFF_SECONDS: float = float(os.environ.get("DISCOVERY_BACKOFF_SECONDS", "10"))
    DISCOVERY_KEEP_COMPLETED: int = int(os.environ.get("DISCOVERY_KEEP_COMPLETED", "100"))
    DISCOVERY_KEEP_FAILED: int = int(os.environ.get("DISCOVERY_KEEP_FAILED", "50"))

    FILING_CONCURRENCY: int = int(os.environ.get("FILING_CONCURRENCY", "5"))
    FILING_MAX_ATTEMPTS: int = int(os.environ.get("FILING_MAX_ATTEMPTS", "3"))
    FILING_BACKOFF: str = os.environ.get("FILING_BACKOFF", "exponential")
    FILING_BACKOFF_SECONDS: float = float(os.environ.get("FILING_BACKOFF_SECONDS", "5"))
    FILING_KEEP_COMPLETED: int = int(os.environ.get("FILING_KEEP_COMPLETED", "100"))
    FILING_KEEP_FAILED: int = int(os.environ.get("FILING_KEEP_FAILED", "50"))

    ALERTS_CONCURRENCY: int = int(os.environ.get("ALERTS_CONCURRENCY", "10"))
    ALERTS_MAX_ATTEMPTS: int = int(os.environ.get("ALERTS_MAX_ATTEMPTS", "5"))
    ALERTS_BACKOFF: str = os.environ.get("ALERTS_BACKOFF", "exponential")
    ALERTS_BACKOFF_SECONDS: float = float(os.environ.get("ALERTS_BACKOFF_SECONDS", "2"))
    ALERTS_KEEP_COMPLETED: int = int(os.environ.get("ALERTS_KEEP_COMPLETED", "500"))
    ALERTS_KEEP_FAILED: int = int(os.environ.get("ALERTS_KEEP_FAILED", "100"))

    ENRICHMENT_CONCURRENCY: int = int(os.environ.get("ENRICHMENT_CONCURRENCY", "8"))
    ENRICHMENT_MAX_ATTEMPTS: int = int(os.environ.get("ENRICHMENT_MAX_ATTEMPTS", "2"))
    ENRICHMENT_BACKOFF: str = os.environ.get("ENRICHMENT_BACKOFF", "fixed")
    ENRICHMENT_BACKOFF_SECONDS: float = float(os.environ.get("ENRICHMENT_BACKOFF_SECONDS", "5"))
    ENRICHMENT_KEEP_COMPLETED: int = int(os.environ.get("ENRICHMENT_KEEP_COMPLETED", "50"))
    ENRICHMENT_KEEP_FAILED: int = int(os.environ.get("ENRICHMENT_KEEP_FAILED", "25"))

    # Recurring discovery of new filings for all known companies.
    ENABLE_RECURRING_DISCOVERY: bool = _env_bool("ENABLE_RECURRING_DISCOVERY", True) is True
    DISCOVERY_CRON: str = os.environ.get("DISCOVERY_CRON", "*/15 * * * *")

    # -----------------
    # Admin API
    # -----------------
    API_HOST: str = os.environ.get("API_HOST", "127.0.0.1")
    API_PORT: int = int(os.environ.get("API_PORT", "8000"))


def load_config() -> Config:
    return Config()
