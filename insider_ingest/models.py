from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict


# Filing.status
FILING_PENDING = "pending"
FILING_COMPLETED = "completed"
FILING_FAILED = "failed"

# Transaction.trade_type
TRADE_BUY = "buy"
TRADE_SELL = "sell"

# Transaction.ownership_type
OWNERSHIP_DIRECT = "direct"
OWNERSHIP_INDIRECT = "indirect"

# Person.person_type for reporting owners of insider filings
PERSON_CORPORATE_INSIDER = "CORPORATE_INSIDER"

FILING_SOURCE_SEC = "SEC"


@dataclass(frozen=True)
class FilingSummary:
    """One row of an entity's filing listing."""

    entity_id: str
    accession_number: str
    filing_date: str | None
    form_type: str | None
    document_name: str | None
    entity_name: str | None


@dataclass(frozen=True)
class TransactionDraft:
    """An extracted, unsaved transaction; entities referenced by name/ticker."""

    person_name: str
    person_title: str
    is_officer: bool
    is_director: bool
    company_name: str
    company_ticker: str
    line_index: int
    transaction_date: str | None
    transaction_code: str
    trade_type: str
    security_title: str
    shares: float
    price_per_share: float | None
    shares_owned_after: float
    ownership_type: str

    @property
    def estimated_value(self) -> float | None:
        if self.price_per_share is None:
            return None
        return self.shares * self.price_per_share


@dataclass
class IngestStats:
    discovered: int = 0
    processed: int = 0
    skipped: int = 0
    errors: int = 0
    duration_ms: int = 0

    def as_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["durationMs"] = d.pop("duration_ms")
        return d
