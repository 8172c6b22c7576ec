from __future__ import annotations

import re
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import requests

from insider_ingest.config import Config
from insider_ingest.models import FilingSummary
from insider_ingest.util.normalization import accession_nodash, cik_path_component, normalize_cik


def _debug(msg: str) -> None:
    print(f"[sec] {msg}")


class FetchFailed(RuntimeError):
    """Timeout, connection failure or non-2xx response. Always retryable."""

    def __init__(self, message: str, *, url: str, status_code: int | None = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class RateLimiter:
    """Process-wide minimum interval between archive requests.

    Callers hold the lock for the whole request, and the checkpoint is taken
    when the request ends, so the gap between the end of one request and the
    start of the next is never below `min_interval_seconds`, no matter how
    many threads share the limiter.
    """

    def __init__(
        self,
        min_interval_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.min_interval_seconds = max(0.0, float(min_interval_seconds or 0.0))
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_request_end: float | None = None
        self._extra_delay: float = 0.0

    def penalize(self, seconds: float) -> None:
        """Add a one-off extra wait before the next request (soft self-throttle)."""
        self._extra_delay = max(self._extra_delay, float(seconds))

    def _wait_locked(self) -> None:
        extra, self._extra_delay = self._extra_delay, 0.0
        if self._last_request_end is None:
            if extra > 0:
                self._sleep(extra)
            return
        ready_at = self._last_request_end + max(self.min_interval_seconds, extra)
        dt = ready_at - self._clock()
        if dt > 0:
            self._sleep(dt)

    def call(self, fn: Callable[[], Any]) -> Any:
        with self._lock:
            self._wait_locked()
            try:
                return fn()
            finally:
                self._last_request_end = self._clock()


_XSL_PREFIX = re.compile(r"^xsl[^/]*/", flags=re.IGNORECASE)


def _raw_document_name(document_name: str) -> str:
    # Listings point Form 4 at the XSL-rendered HTML ("xslF345X05/doc.xml");
    # the raw XML lives at the same name without the rendering directory.
    return _XSL_PREFIX.sub("", str(document_name or "").strip())


class SecArchiveClient:
    """Read-only client for the SEC EDGAR archive.

    Implements the FilingSource interface. Never retries: failures surface as
    FetchFailed and the caller (orchestrator / scheduler) decides what to do.
    """

    def __init__(
        self,
        cfg: Config,
        *,
        session: Optional[requests.Session] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.cfg = cfg
        self.session = session or requests.Session()
        self.rate_limiter = rate_limiter or RateLimiter(cfg.SEC_MIN_INTERVAL_SECONDS)
        self.headers: Dict[str, str] = {
            "User-Agent": cfg.SEC_USER_AGENT,
            "Accept": "application/json, application/xml, text/xml, */*",
            "Accept-Encoding": "gzip, deflate",
        }

    def close(self) -> None:
        self.session.close()

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def _send(self, url: str) -> requests.Response:
        _debug(f"GET {url}")
        try:
            r = self.session.get(url, headers=self.headers, timeout=self.cfg.SEC_REQUEST_TIMEOUT_SECONDS)
        except requests.Timeout as e:
            raise FetchFailed(f"SEC request timed out: {url}", url=url) from e
        except requests.RequestException as e:
            raise FetchFailed(f"SEC request failed: {url}: {e}", url=url) from e

        self._observe_quota(r)

        if not (200 <= r.status_code < 300):
            raise FetchFailed(
                f"SEC request failed {r.status_code}: {(r.text or '')[:500]}",
                url=url,
                status_code=r.status_code,
            )
        return r

    def _observe_quota(self, r: requests.Response) -> None:
        remaining = (r.headers or {}).get(self.cfg.SEC_QUOTA_HEADER)
        if remaining is None:
            return
        try:
            left = int(str(remaining).strip())
        except ValueError:
            return
        if left < self.cfg.SEC_QUOTA_LOW_WATERMARK:
            _debug(f"Quota low ({left} remaining), slowing down for {self.cfg.SEC_QUOTA_BACKOFF_SECONDS}s")
            self.rate_limiter.penalize(self.cfg.SEC_QUOTA_BACKOFF_SECONDS)

    def _get(self, url: str) -> requests.Response:
        return self.rate_limiter.call(lambda: self._send(url))

    def _get_json(self, url: str) -> Dict[str, Any]:
        r = self._get(url)
        try:
            return r.json()
        except ValueError as e:
            raise FetchFailed(f"SEC response was not JSON: {url}", url=url, status_code=r.status_code) from e

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def list_filings(self, entity_id: str) -> List[FilingSummary]:
        """All filings in the entity's recent submissions block, in archive order (newest first)."""
        cik10 = normalize_cik(entity_id)
        if cik10 is None:
            raise ValueError(f"Invalid entity id: {entity_id!r}")

        url = f"{self.cfg.SEC_SUBMISSIONS_BASE_URL}/CIK{cik10}.json"
        data = self._get_json(url)

        entity_name = str(data.get("name") or data.get("entityName") or "").strip() or None
        recent = (data.get("filings") or {}).get("recent") or {}
        accs = recent.get("accessionNumber") or []
        dates = recent.get("filingDate") or []
        forms = recent.get("form") or []
        docs = recent.get("primaryDocument") or []

        def at(seq: List[Any], i: int) -> str | None:
            if i < len(seq) and seq[i] is not None:
                v = str(seq[i]).strip()
                return v or None
            return None

        out: List[FilingSummary] = []
        for i, acc in enumerate(accs):
            acc_s = str(acc or "").strip()
            if not acc_s:
                continue
            out.append(
                FilingSummary(
                    entity_id=cik10,
                    accession_number=acc_s,
                    filing_date=at(dates, i),
                    form_type=at(forms, i),
                    document_name=at(docs, i),
                    entity_name=entity_name,
                )
            )

        _debug(f"Found {len(out)} filings for CIK {cik10} ({entity_name})")
        return out

    def document_url(self, entity_id: str, accession_number: str, document_name: str) -> str:
        cik10 = normalize_cik(entity_id) or ""
        return (
            f"{self.cfg.SEC_ARCHIVES_BASE_URL}/{cik_path_component(cik10)}/"
            f"{accession_nodash(accession_number)}/{_raw_document_name(document_name)}"
        )

    def fetch_document(self, entity_id: str, accession_number: str, document_name: str) -> str:
        url = self.document_url(entity_id, accession_number, document_name)
        r = self._get(url)
        content = r.text or ""
        _debug(f"Downloaded {accession_number} ({len(content)} bytes)")
        return content

    def fetch_company_tickers(self) -> Dict[str, Any]:
        """Raw ticker directory payload ({"0": {"cik_str", "ticker", "title"}, ...})."""
        return self._get_json(self.cfg.SEC_TICKERS_URL)
