import dataclasses
from datetime import datetime, timedelta, timezone

import pytest

from insider_ingest.config import Config
from insider_ingest.db import connect, init_db
from insider_ingest.models import FilingSummary
from insider_ingest.sec.source import FixtureFilingSource


NOW = datetime(2025, 1, 20, 12, 0, 0, tzinfo=timezone.utc)

APPLE_CIK = "0000320193"


FORM4_XML = """<?xml version="1.0"?>
<ownershipDocument>
    <schemaVersion>X0508</schemaVersion>
    <documentType>4</documentType>
    <periodOfReport>2025-01-15</periodOfReport>
    <issuer>
        <issuerCik>0000320193</issuerCik>
        <issuerName>Apple Inc.</issuerName>
        <issuerTradingSymbol>AAPL</issuerTradingSymbol>
    </issuer>
    <reportingOwner>
        <reportingOwnerId>
            <rptOwnerCik>0001214156</rptOwnerCik>
            <rptOwnerName>Cook Timothy D</rptOwnerName>
        </reportingOwnerId>
        <reportingOwnerRelationship>
            <isDirector>1</isDirector>
            <isOfficer>1</isOfficer>
            <officerTitle>Chief Executive Officer</officerTitle>
        </reportingOwnerRelationship>
    </reportingOwner>
    <nonDerivativeTable>
        <nonDerivativeTransaction>
            <securityTitle><value>Common Stock</value></securityTitle>
            <transactionDate><value>2025-01-15</value></transactionDate>
            <transactionCoding>
                <transactionFormType>4</transactionFormType>
                <transactionCode>P</transactionCode>
            </transactionCoding>
            <transactionAmounts>
                <transactionShares><value>25000</value></transactionShares>
                <transactionPricePerShare><value>190.50</value></transactionPricePerShare>
                <transactionAcquiredDisposedCode><value>A</value></transactionAcquiredDisposedCode>
            </transactionAmounts>
            <postTransactionAmounts>
                <sharesOwnedFollowingTransaction><value>3305000</value></sharesOwnedFollowingTransaction>
            </postTransactionAmounts>
            <ownershipNature>
                <directOrIndirectOwnership><value>D</value></directOrIndirectOwnership>
            </ownershipNature>
        </nonDerivativeTransaction>
        <nonDerivativeTransaction>
            <securityTitle><value>Common Stock</value></securityTitle>
            <transactionDate><value>2025-01-16</value></transactionDate>
            <transactionCoding>
                <transactionFormType>4</transactionFormType>
                <transactionCode>S</transactionCode>
            </transactionCoding>
            <transactionAmounts>
                <transactionShares><value>10,000</value></transactionShares>
                <transactionPricePerShare><footnoteId id="F1"/></transactionPricePerShare>
                <transactionAcquiredDisposedCode><value>D</value></transactionAcquiredDisposedCode>
            </transactionAmounts>
            <postTransactionAmounts>
                <sharesOwnedFollowingTransaction><value>3295000</value></sharesOwnedFollowingTransaction>
            </postTransactionAmounts>
            <ownershipNature>
                <directOrIndirectOwnership><value>I</value></directOrIndirectOwnership>
            </ownershipNature>
        </nonDerivativeTransaction>
    </nonDerivativeTable>
</ownershipDocument>
"""


# Decoded rendition: one transaction as a bare object, bare scalars, numeric values.
FORM4_JSON = """{
  "ownershipDocument": {
    "issuer": {"issuerName": "Microsoft Corp", "issuerTradingSymbol": "msft"},
    "reportingOwner": [
      {
        "reportingOwnerId": {"rptOwnerName": "Nadella Satya"},
        "reportingOwnerRelationship": {"isOfficer": true, "officerTitle": "CEO"}
      },
      {"reportingOwnerId": {"rptOwnerName": "Second Owner"}}
    ],
    "nonDerivativeTable": {
      "nonDerivativeTransaction": {
        "securityTitle": "Common Stock",
        "transactionDate": {"value": "2025-01-10T00:00:00"},
        "transactionCoding": {"transactionCode": "S"},
        "transactionAmounts": {
          "transactionShares": {"value": 500},
          "transactionPricePerShare": 412.25
        },
        "postTransactionAmounts": {"sharesOwnedFollowingTransaction": {"value": 800000}}
      }
    }
  }
}
"""


def make_summary(
    accession_number: str,
    filing_date: str,
    *,
    entity_id: str = APPLE_CIK,
    form_type: str = "4",
    document_name: str = "xslF345X05/wk-form4.xml",
    entity_name: str = "Apple Inc.",
) -> FilingSummary:
    return FilingSummary(
        entity_id=entity_id,
        accession_number=accession_number,
        filing_date=filing_date,
        form_type=form_type,
        document_name=document_name,
        entity_name=entity_name,
    )


class FakeClock:
    """Deterministic clock for scheduler tests."""

    def __init__(self, start: datetime = NOW):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def db_dsn(tmp_path):
    dsn = str(tmp_path / "insider_ingest_test.sqlite")
    init_db(dsn)
    return dsn


@pytest.fixture
def cfg(db_dsn):
    return dataclasses.replace(
        Config(),
        DB_DSN=db_dsn,
        INGEST_ENTITY_DELAY_SECONDS=0.0,
        INGEST_FORM_TYPES=("4",),
        INGEST_DEFAULT_LOOKBACK_DAYS=7,
        SOURCE_CONFIDENCE=0.95,
        ENABLE_RECURRING_DISCOVERY=False,
        WORKER_POLL_SECONDS=0.02,
    )


@pytest.fixture
def source():
    return FixtureFilingSource()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rows(db_dsn):
    """rows("SELECT ...", params) -> list of dicts."""

    def _rows(sql, params=()):
        with connect(db_dsn) as conn:
            return [dict(r) for r in conn.execute(sql, params).fetchall()]

    return _rows
