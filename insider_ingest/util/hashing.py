import hashlib


def sha256_hex(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def filing_checksum(entity_id: str, accession_number: str) -> str:
    """Fingerprint of one filing: entity id + reference number."""
    return sha256_hex(f"{entity_id}-{accession_number}")
