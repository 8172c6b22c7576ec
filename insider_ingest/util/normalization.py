from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass


_SUFFIXES = {
    "jr",
    "sr",
    "ii",
    "iii",
    "iv",
    "v",
    "md",
    "phd",
    "cpa",
    "esq",
}

# 10-digit filer prefix, 2-digit year, 6-digit sequence.
_ACCESSION_RE = re.compile(r"^(\d{10})-(\d{2})-(\d{6})$")


@dataclass(frozen=True)
class EntityRef:
    """A target entity, optionally pinned to one reference number."""

    cik: str
    accession_number: str | None = None


def normalize_cik(cik: str | int | None) -> str | None:
    """Normalize a CIK: digits only, left-pad to 10.

    Returns None if input is blank or contains no digits.
    """
    if cik is None:
        return None
    s = str(cik).strip()
    if not s:
        return None
    digits = "".join(ch for ch in s if ch.isdigit())
    if not digits:
        return None
    return digits.zfill(10)


def normalize_accession(accession_number: str | None) -> str | None:
    """Return the dashed 10-2-6 form, accepting the 18-digit undashed form too."""
    s = str(accession_number or "").strip()
    if not s:
        return None
    if _ACCESSION_RE.match(s):
        return s
    if len(s) == 18 and s.isdigit():
        return f"{s[:10]}-{s[10:12]}-{s[12:]}"
    return None


def parse_entity_ref(raw: str) -> EntityRef | None:
    """Resolve an operator-supplied entity identifier.

    Accepts `CIK-0000320193`, `320193`, `0000320193` and reference numbers
    such as `0000320193-25-000001` (filer prefix + pinned reference).
    """
    s = str(raw or "").strip()
    acc = normalize_accession(s)
    if acc is not None:
        return EntityRef(cik=acc[:10], accession_number=acc)

    if s.upper().startswith("CIK"):
        s = s[3:].lstrip("-_: ")
    cik = normalize_cik(s)
    if cik is None or len(cik) > 10:
        return None
    return EntityRef(cik=cik)


def cik_path_component(cik10: str) -> str:
    # Archive paths use the integer CIK without leading zeros.
    return str(int(cik10))


def accession_nodash(accession_number: str) -> str:
    return str(accession_number or "").replace("-", "").strip()


def _basic_name_norm(s: str) -> str:
    s = unicodedata.normalize("NFKC", s)
    s = s.replace("\u00a0", " ")
    s = s.lower().strip()

    # Non-alphanumeric runs become word boundaries.
    s = re.sub(r"[^a-z0-9]+", " ", s)
    return " ".join(s.split())


def normalize_person_name(name_raw: str | None) -> str | None:
    """Conservative name normalization, keeping the filed "LAST FIRST M" order.

    Filings report owners as "Cook Timothy D" or "COOK, TIMOTHY D"; both
    normalize to "cook timothy d". Trailing generational/professional
    suffixes are dropped. No fuzzy matching.
    """
    if name_raw is None:
        return None

    tokens = _basic_name_norm(str(name_raw)).split()
    while tokens and tokens[-1] in _SUFFIXES:
        tokens.pop()

    out = " ".join(tokens).strip()
    return out or None
