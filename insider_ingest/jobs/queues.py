"""Queue definitions and the payload contract of every job type."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Tuple

from insider_ingest.config import Config


QUEUE_DISCOVERY = "discovery"
QUEUE_FILING = "filing"
QUEUE_ALERTS = "alerts"
QUEUE_ENRICHMENT = "enrichment"

ALL_QUEUES: Tuple[str, ...] = (QUEUE_DISCOVERY, QUEUE_FILING, QUEUE_ALERTS, QUEUE_ENRICHMENT)

# Job types
JOB_DISCOVER = "discover"
JOB_FETCH = "fetch"
JOB_PARSE = "parse"
JOB_CHECK_RULES = "check-rules"
JOB_SEND_EMAIL = "send-email"
JOB_SEND_PUSH = "send-push"
JOB_RESOLVE_PERSON = "resolve-person"
JOB_RESOLVE_COMPANY = "resolve-company"
JOB_CALCULATE_PERFORMANCE = "calculate-performance"
JOB_UPDATE_PRICES = "update-prices"

BACKOFF_FIXED = "fixed"
BACKOFF_EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class BackoffPolicy:
    kind: str
    delay_seconds: float

    def __post_init__(self) -> None:
        if self.kind not in (BACKOFF_FIXED, BACKOFF_EXPONENTIAL):
            raise ValueError(f"Unknown backoff kind: {self.kind!r}")
        if self.delay_seconds < 0:
            raise ValueError(f"Backoff delay must be >= 0, got {self.delay_seconds}")

    def delay_for(self, attempt: int) -> float:
        """Delay before the retry that follows failed attempt number `attempt` (1-based)."""
        if self.kind == BACKOFF_FIXED:
            return float(self.delay_seconds)
        return float(self.delay_seconds) * (2 ** max(0, int(attempt) - 1))


@dataclass(frozen=True)
class QueueConfig:
    name: str
    concurrency: int
    max_attempts: int
    backoff: BackoffPolicy
    keep_completed: int = 100
    keep_failed: int = 50

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError(f"Queue {self.name}: concurrency must be >= 1")
        if self.max_attempts < 1:
            raise ValueError(f"Queue {self.name}: max_attempts must be >= 1")


def default_queue_configs(cfg: Config) -> Dict[str, QueueConfig]:
    """Queue settings from Config; each queue reads the <PREFIX>_* fields."""

    def q(name: str, prefix: str) -> QueueConfig:
        def setting(suffix: str) -> Any:
            return getattr(cfg, f"{prefix}_{suffix}")

        return QueueConfig(
            name=name,
            concurrency=int(setting("CONCURRENCY")),
            max_attempts=int(setting("MAX_ATTEMPTS")),
            backoff=BackoffPolicy(str(setting("BACKOFF")).strip().lower(), float(setting("BACKOFF_SECONDS"))),
            keep_completed=int(setting("KEEP_COMPLETED")),
            keep_failed=int(setting("KEEP_FAILED")),
        )

    return {
        QUEUE_DISCOVERY: q(QUEUE_DISCOVERY, "DISCOVERY"),
        QUEUE_FILING: q(QUEUE_FILING, "FILING"),
        QUEUE_ALERTS: q(QUEUE_ALERTS, "ALERTS"),
        QUEUE_ENRICHMENT: q(QUEUE_ENRICHMENT, "ENRICHMENT"),
    }


# (queue, job_type) -> required payload keys
JOB_SHAPES: Dict[Tuple[str, str], Tuple[str, ...]] = {
    (QUEUE_DISCOVERY, JOB_DISCOVER): (),
    (QUEUE_FILING, JOB_FETCH): ("entity_id", "accession_number", "document_name"),
    (QUEUE_FILING, JOB_PARSE): ("filing_id",),
    (QUEUE_ALERTS, JOB_CHECK_RULES): (),
    (QUEUE_ALERTS, JOB_SEND_EMAIL): ("user_id", "transaction_ids"),
    (QUEUE_ALERTS, JOB_SEND_PUSH): ("user_id", "transaction_ids"),
    (QUEUE_ENRICHMENT, JOB_RESOLVE_PERSON): ("person_id",),
    (QUEUE_ENRICHMENT, JOB_RESOLVE_COMPANY): ("company_id",),
    (QUEUE_ENRICHMENT, JOB_CALCULATE_PERFORMANCE): ("transaction_id",),
    (QUEUE_ENRICHMENT, JOB_UPDATE_PRICES): ("ticker",),
}


def validate_payload(queue_name: str, job_type: str, payload: Mapping[str, Any]) -> None:
    """Raise ValueError for an unknown (queue, job_type) or a missing required key."""
    key = (queue_name, job_type)
    if key not in JOB_SHAPES:
        raise ValueError(f"Unknown job type {job_type!r} for queue {queue_name!r}")
    if not isinstance(payload, Mapping):
        raise ValueError(f"Payload for {queue_name}/{job_type} must be a mapping")
    missing = [k for k in JOB_SHAPES[key] if payload.get(k) in (None, "", [])]
    if missing:
        raise ValueError(f"Payload for {queue_name}/{job_type} is missing: {', '.join(missing)}")
