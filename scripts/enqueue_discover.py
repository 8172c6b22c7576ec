import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from insider_ingest.config import load_config
from insider_ingest.db import init_db
from insider_ingest.jobs.queues import JOB_DISCOVER, QUEUE_DISCOVERY
from insider_ingest.jobs.scheduler import Scheduler


def main() -> None:
    ap = argparse.ArgumentParser(description="Enqueue one discovery job (workers fan it out to fetch/parse jobs).")
    ap.add_argument("entities", nargs="*", help="CIKs or reference numbers; default: known companies")
    ap.add_argument("--days-back", type=int, default=None)
    args = ap.parse_args()

    cfg = load_config()
    init_db(cfg.DB_DSN)

    payload = {"entity_ids": list(args.entities)}
    if args.days_back is not None:
        payload["lookback_days"] = int(args.days_back)

    job_id = Scheduler(cfg).enqueue(QUEUE_DISCOVERY, JOB_DISCOVER, payload)
    print(f"Enqueued discovery job id={job_id} entities={len(args.entities) or 'default'}")


if __name__ == "__main__":
    main()
