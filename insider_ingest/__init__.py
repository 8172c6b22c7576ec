"""Insider filing ingestion (SEC Form 4) - backend core.

Pipeline:
- discover recent filings per entity from the SEC archive (rate limited),
- fetch each new document once (checksum de-duplication),
- parse non-derivative transactions and persist them idempotently.

The same stages run either as one synchronous sweep (`ingest_recent`) or as
chained jobs on the multi-queue scheduler (`insider_ingest.jobs`).
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
