import signal
import sys
import threading
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from insider_ingest.config import load_config
from insider_ingest.db import init_db
from insider_ingest.jobs.handlers import build_scheduler


def main() -> None:
    cfg = load_config()
    init_db(cfg.DB_DSN)

    scheduler = build_scheduler(cfg)
    shutdown = threading.Event()

    def _on_signal(signum, _frame) -> None:
        print(f"[worker] Received signal {signum}; shutting down gracefully")
        shutdown.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    scheduler.start()
    print(f"[worker] Running queues: {', '.join(scheduler.handled_queues())}; db={cfg.DB_DSN}")
    while not shutdown.is_set():
        shutdown.wait(1.0)

    scheduler.stop()


if __name__ == "__main__":
    main()
