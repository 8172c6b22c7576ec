import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from insider_ingest.config import load_config
from insider_ingest.db import init_db
from insider_ingest.sec.client import SecArchiveClient
from insider_ingest.sec.ingest import IngestionOrchestrator


def main() -> None:
    ap = argparse.ArgumentParser(description="Run one synchronous SEC Form 4 ingestion sweep.")
    ap.add_argument(
        "entities",
        nargs="*",
        help="CIKs (320193, CIK-0000320193) or reference numbers; default: known companies",
    )
    ap.add_argument("--days-back", type=int, default=None, help="Lookback window in days (1..30)")
    ap.add_argument("--force", action="store_true", help="Re-parse filings previously marked failed")
    args = ap.parse_args()

    cfg = load_config()
    init_db(cfg.DB_DSN)

    client = SecArchiveClient(cfg)
    try:
        stats = IngestionOrchestrator(cfg, client).ingest_recent(args.entities, args.days_back, force=args.force)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(2)
    finally:
        client.close()

    print(json.dumps(stats.as_dict(), indent=2))


if __name__ == "__main__":
    main()
