from __future__ import annotations

from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from insider_ingest.models import FilingSummary
from insider_ingest.sec.client import FetchFailed
from insider_ingest.util.normalization import normalize_cik


class FilingSource(Protocol):
    """Where filings come from: the archive client in production, fixtures in tests."""

    def list_filings(self, entity_id: str) -> List[FilingSummary]:
        ...

    def document_url(self, entity_id: str, accession_number: str, document_name: str) -> str:
        ...

    def fetch_document(self, entity_id: str, accession_number: str, document_name: str) -> str:
        ...


class FixtureFilingSource:
    """Deterministic in-memory FilingSource.

    Listings and documents are registered up front; a listing or document can
    be marked as failing to exercise retry paths. Every call is recorded in `calls`.
    """

    def __init__(self) -> None:
        self._listings: Dict[str, List[FilingSummary]] = {}
        self._documents: Dict[Tuple[str, str], str] = {}
        self._failures: Dict[Tuple[str, str], int] = {}
        self._listing_failures: Dict[str, int] = {}
        self.calls: List[Tuple[str, str, Optional[str]]] = []

    def add_filing(self, summary: FilingSummary, content: str) -> None:
        cik = normalize_cik(summary.entity_id) or summary.entity_id
        self._listings.setdefault(cik, []).append(summary)
        self._documents[(cik, summary.accession_number)] = content

    def add_listing(self, entity_id: str, summaries: Sequence[FilingSummary]) -> None:
        cik = normalize_cik(entity_id) or entity_id
        self._listings.setdefault(cik, []).extend(summaries)

    def fail_document(self, entity_id: str, accession_number: str, times: int = 1) -> None:
        """Make the next `times` downloads of this document raise FetchFailed."""
        cik = normalize_cik(entity_id) or entity_id
        self._failures[(cik, accession_number)] = int(times)

    def fail_listing(self, entity_id: str, times: int = 1) -> None:
        """Make the next `times` listings of this entity raise FetchFailed."""
        cik = normalize_cik(entity_id) or entity_id
        self._listing_failures[cik] = int(times)

    def list_filings(self, entity_id: str) -> List[FilingSummary]:
        cik = normalize_cik(entity_id) or entity_id
        self.calls.append(("list", cik, None))
        remaining = self._listing_failures.get(cik, 0)
        if remaining > 0:
            self._listing_failures[cik] = remaining - 1
            raise FetchFailed(f"SEC request failed 503: listing for {cik}", url=f"fixture://{cik}", status_code=503)
        if cik not in self._listings:
            raise FetchFailed(f"SEC request failed 404: unknown entity {cik}", url=f"fixture://{cik}", status_code=404)
        return list(self._listings[cik])

    def document_url(self, entity_id: str, accession_number: str, document_name: str) -> str:
        cik = normalize_cik(entity_id) or entity_id
        return f"fixture://{cik}/{accession_number}/{document_name}"

    def fetch_document(self, entity_id: str, accession_number: str, document_name: str) -> str:
        cik = normalize_cik(entity_id) or entity_id
        key = (cik, accession_number)
        self.calls.append(("fetch", cik, accession_number))
        url = self.document_url(cik, accession_number, document_name)

        remaining = self._failures.get(key, 0)
        if remaining > 0:
            self._failures[key] = remaining - 1
            raise FetchFailed(f"SEC request failed 503: {url}", url=url, status_code=503)
        if key not in self._documents:
            raise FetchFailed(f"SEC request failed 404: {url}", url=url, status_code=404)
        return self._documents[key]
