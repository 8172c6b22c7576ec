"""Form 4 ownershipDocument parser.

Filings arrive as markup (raw XML, or XML embedded in a .txt/.htm body) or as
an already-decoded JSON rendition. Both are brought to the same nested
mapping shape before extraction, and that shape is loose in two ways:

- a repeated element is a list, but a single occurrence is a bare mapping;
- a scalar field is either a bare value (`<issuerName>X</issuerName>`) or a
  value node (`<transactionShares><value>10</value><footnoteId/></...>`).

Every field goes through `field()`, which returns a `FieldValue` tagged with
the shape it found, and every repeated element goes through `as_list()`.
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from xml.etree import ElementTree as ET

from insider_ingest.models import (
    OWNERSHIP_DIRECT,
    OWNERSHIP_INDIRECT,
    TRADE_BUY,
    TRADE_SELL,
    TransactionDraft,
)
from insider_ingest.util.time import parse_date_safe


def _debug(msg: str) -> None:
    print(f"[parser] {msg}")


class ParseError(RuntimeError):
    """The document is structurally invalid (not a field-level anomaly)."""


DEFAULT_SECURITY_TITLE = "Common Stock"

FIELD_BARE = "bare"
FIELD_WRAPPED = "wrapped"
FIELD_MISSING = "missing"

# Fallback when the acquired/disposed flag is absent.
_CODE_DIRECTION = {
    "P": TRADE_BUY,
    "A": TRADE_BUY,
    "S": TRADE_SELL,
    "D": TRADE_SELL,
    "F": TRADE_SELL,
    "G": TRADE_SELL,
}


@dataclass(frozen=True)
class FieldValue:
    kind: str
    raw: Any = None

    @property
    def present(self) -> bool:
        return self.kind != FIELD_MISSING

    def text(self, default: str = "") -> str:
        if not self.present or self.raw is None:
            return default
        s = str(self.raw).strip()
        return s if s else default

    def number(self) -> Optional[float]:
        if not self.present or isinstance(self.raw, bool):
            return None
        if isinstance(self.raw, (int, float)):
            v = float(self.raw)
        else:
            t = self.text().replace(",", "").replace("$", "")
            if not t:
                return None
            try:
                v = float(t)
            except ValueError:
                return None
        return v if math.isfinite(v) else None

    def flag(self) -> bool:
        if isinstance(self.raw, bool):
            return self.raw
        return self.text().lower() in ("1", "true", "y", "yes")


def as_list(node: Any) -> List[Any]:
    """A repeated element: None -> [], single mapping -> [mapping]."""
    if node is None or node == "":
        return []
    if isinstance(node, list):
        return node
    return [node]


def _scalar(node: Any) -> FieldValue:
    if node is None:
        return FieldValue(FIELD_MISSING)
    if isinstance(node, (str, int, float, bool)):
        return FieldValue(FIELD_BARE, node)
    if isinstance(node, dict):
        if "value" in node:
            inner = node["value"]
            if isinstance(inner, dict):
                inner = inner.get("#text")
            if isinstance(inner, list):
                inner = inner[0] if inner else None
            if inner is None or isinstance(inner, dict):
                return FieldValue(FIELD_MISSING)
            return FieldValue(FIELD_WRAPPED, inner)
        if "#text" in node:
            return FieldValue(FIELD_BARE, node["#text"])
    return FieldValue(FIELD_MISSING)


def field(node: Any, *path: str) -> FieldValue:
    """Walk `path` through mappings; the first item of any list on the way wins."""
    cur = node
    for key in path:
        if isinstance(cur, list):
            cur = cur[0] if cur else None
        if not isinstance(cur, dict):
            return FieldValue(FIELD_MISSING)
        cur = cur.get(key)
    if isinstance(cur, list):
        cur = cur[0] if cur else None
    return _scalar(cur)


# -----------------------------------------------------------------------------
# Decoding
# -----------------------------------------------------------------------------


def _strip_ns(tag: str) -> str:
    if "}" in tag:
        return tag.split("}", 1)[1]
    return tag


def _element_to_node(el: ET.Element) -> Any:
    children = list(el)
    text = (el.text or "").strip()
    if not children and not el.attrib:
        return text

    node: Dict[str, Any] = {f"@{k}": v for k, v in el.attrib.items()}
    for child in children:
        tag = _strip_ns(child.tag)
        value = _element_to_node(child)
        if tag not in node:
            node[tag] = value
        elif isinstance(node[tag], list):
            node[tag].append(value)
        else:
            node[tag] = [node[tag], value]
    if text:
        node["#text"] = text
    return node


def _extract_ownership_fragment(text: str) -> Optional[str]:
    m_start = re.search(r"<ownershipdocument\b", text, flags=re.IGNORECASE)
    if not m_start:
        return None
    m_end = re.search(r"</ownershipdocument\s*>", text[m_start.start() :], flags=re.IGNORECASE)
    if not m_end:
        return None
    return text[m_start.start() : m_start.start() + m_end.end()]


def decode_document(raw: Any) -> Dict[str, Any]:
    """Return the ownershipDocument mapping or raise ParseError."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")

    if isinstance(raw, dict):
        data: Any = raw
    else:
        text = str(raw or "").strip()
        if not text:
            raise ParseError("Empty document")

        if text.startswith("{"):
            try:
                data = json.loads(text)
            except json.JSONDecodeError as e:
                raise ParseError(f"Invalid JSON document: {e}") from e
        else:
            fragment = _extract_ownership_fragment(text)
            if fragment is None:
                raise ParseError("No ownershipDocument element found")
            try:
                root = ET.fromstring(fragment)
            except ET.ParseError as e:
                raise ParseError(f"Invalid XML: {e}") from e
            data = {"ownershipDocument": _element_to_node(root)}

    doc = data.get("ownershipDocument") if isinstance(data, dict) else None
    if not isinstance(doc, dict):
        raise ParseError("No ownershipDocument element found")
    return doc


# -----------------------------------------------------------------------------
# Extraction
# -----------------------------------------------------------------------------


def _trade_direction(acquired_disposed: str, code: str) -> Optional[str]:
    if acquired_disposed == "A":
        return TRADE_BUY
    if acquired_disposed == "D":
        return TRADE_SELL
    return _CODE_DIRECTION.get(code)


def parse_form4(raw: Any) -> List[TransactionDraft]:
    """Extract non-derivative transaction drafts from one filing.

    Raises ParseError only for a structurally invalid document. Lines with a
    zero/unparseable share count or no determinable direction are skipped.
    """
    doc = decode_document(raw)

    company_name = field(doc, "issuer", "issuerName").text()
    company_ticker = field(doc, "issuer", "issuerTradingSymbol").text().upper()

    owners = as_list(doc.get("reportingOwner"))
    owner = owners[0] if owners else {}
    person_name = field(owner, "reportingOwnerId", "rptOwnerName").text()
    is_officer = field(owner, "reportingOwnerRelationship", "isOfficer").flag()
    is_director = field(owner, "reportingOwnerRelationship", "isDirector").flag()
    person_title = field(owner, "reportingOwnerRelationship", "officerTitle").text()

    table = doc.get("nonDerivativeTable")
    lines = as_list(table.get("nonDerivativeTransaction")) if isinstance(table, dict) else []

    drafts: List[TransactionDraft] = []
    skipped = 0
    for idx, line in enumerate(lines):
        if not isinstance(line, dict):
            skipped += 1
            continue

        shares = field(line, "transactionAmounts", "transactionShares").number()
        if shares is None or shares <= 0:
            skipped += 1
            continue

        code = field(line, "transactionCoding", "transactionCode").text().upper()
        acq_disp = field(line, "transactionAmounts", "transactionAcquiredDisposedCode").text().upper()
        trade_type = _trade_direction(acq_disp, code)
        if trade_type is None:
            skipped += 1
            continue

        price = field(line, "transactionAmounts", "transactionPricePerShare").number()
        if price is not None and price <= 0:
            price = None

        tx_date = parse_date_safe(field(line, "transactionDate").text())
        ownership = field(line, "ownershipNature", "directOrIndirectOwnership").text().upper()

        drafts.append(
            TransactionDraft(
                person_name=person_name,
                person_title=person_title,
                is_officer=is_officer,
                is_director=is_director,
                company_name=company_name,
                company_ticker=company_ticker,
                line_index=idx,
                transaction_date=tx_date.isoformat() if tx_date else None,
                transaction_code=code or acq_disp,
                trade_type=trade_type,
                security_title=field(line, "securityTitle").text(DEFAULT_SECURITY_TITLE),
                shares=shares,
                price_per_share=price,
                shares_owned_after=field(
                    line, "postTransactionAmounts", "sharesOwnedFollowingTransaction"
                ).number()
                or 0.0,
                ownership_type=OWNERSHIP_INDIRECT if ownership == "I" else OWNERSHIP_DIRECT,
            )
        )

    _debug(
        f"Parsed Form4: issuer={company_name!r} symbol={company_ticker} owner={person_name!r} "
        f"lines={len(lines)} txs={len(drafts)} skipped={skipped}"
    )
    return drafts
