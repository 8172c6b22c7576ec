from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from insider_ingest.util.normalization import normalize_cik


def _debug(msg: str) -> None:
    print(f"[tickers] {msg}")


@dataclass(frozen=True)
class TickerRecord:
    cik10: str
    ticker: str
    title: str


def parse_company_tickers(data: Dict[str, Any]) -> Dict[str, TickerRecord]:
    """Return mapping {TICKER -> TickerRecord} from the archive's company_tickers.json.

    Format is { "0": {"cik_str": 320193, "ticker": "AAPL", "title": "Apple Inc."}, ... }
    """
    out: Dict[str, TickerRecord] = {}
    for _, obj in (data or {}).items():
        if not isinstance(obj, dict):
            continue

        ticker = str(obj.get("ticker") or "").strip().upper()
        title = str(obj.get("title") or "").strip()
        cik10 = normalize_cik(obj.get("cik_str"))
        if not ticker or cik10 is None:
            continue

        out[ticker] = TickerRecord(cik10=cik10, ticker=ticker, title=title)
    return out


def resolve_ticker(mapping: Dict[str, TickerRecord], ticker: str | None) -> Optional[TickerRecord]:
    """Resolve a ticker, trying dot/dash class-share variants (BRK.B vs BRK-B)."""
    t = (ticker or "").strip().upper()
    if not t:
        return None
    if t in mapping:
        return mapping[t]
    for a, b in ((".", "-"), ("-", ".")):
        if a in t and t.replace(a, b) in mapping:
            return mapping[t.replace(a, b)]
    return None


class TickerDirectory:
    """Lazily loaded ticker <-> CIK directory shared by enrichment jobs."""

    def __init__(self, loader: Callable[[], Dict[str, Any]]):
        self._loader = loader
        self._lock = threading.Lock()
        self._by_ticker: Optional[Dict[str, TickerRecord]] = None
        self._by_cik: Dict[str, TickerRecord] = {}

    def _ensure_loaded(self) -> Dict[str, TickerRecord]:
        with self._lock:
            if self._by_ticker is None:
                by_ticker = parse_company_tickers(self._loader())
                by_cik: Dict[str, TickerRecord] = {}
                # Several share classes can share one CIK; keep the first listed.
                for rec in by_ticker.values():
                    by_cik.setdefault(rec.cik10, rec)
                self._by_ticker, self._by_cik = by_ticker, by_cik
                _debug(f"Loaded {len(by_ticker)} tickers")
            return self._by_ticker

    def by_ticker(self, ticker: str | None) -> Optional[TickerRecord]:
        return resolve_ticker(self._ensure_loaded(), ticker)

    def by_cik(self, cik: str | None) -> Optional[TickerRecord]:
        self._ensure_loaded()
        cik10 = normalize_cik(cik)
        return self._by_cik.get(cik10) if cik10 else None
