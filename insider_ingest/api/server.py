from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from insider_ingest.config import Config, load_config
from insider_ingest.db import init_db
from insider_ingest.jobs.scheduler import Scheduler
from insider_ingest.sec.client import SecArchiveClient
from insider_ingest.sec.ingest import MAX_LOOKBACK_DAYS, MIN_LOOKBACK_DAYS, IngestionOrchestrator
from insider_ingest.sec.source import FilingSource
from insider_ingest.util.time import utcnow_iso


def _debug(msg: str) -> None:
    print(f"[api] {msg}")


class IngestRequest(BaseModel):
    ciks: Optional[List[str]] = None
    daysBack: int = Field(7, ge=MIN_LOOKBACK_DAYS, le=MAX_LOOKBACK_DAYS)
    force: bool = False


def create_app(
    cfg: Config | None = None,
    *,
    source: FilingSource | None = None,
    scheduler: Scheduler | None = None,
) -> FastAPI:
    """Operational surface: health, manual ingestion trigger, queue health.

    Authentication is expected in front of this app (reverse proxy / gateway).
    """
    cfg = cfg or load_config()
    source = source or SecArchiveClient(cfg)
    scheduler = scheduler or Scheduler(cfg)
    orchestrator = IngestionOrchestrator(cfg, source)

    app = FastAPI(title="Insider Filing Ingestion", version="0.1.0")
    app.state.cfg = cfg
    app.state.scheduler = scheduler
    app.state.orchestrator = orchestrator

    @app.on_event("startup")
    def _on_startup() -> None:
        # Ensure schema exists.
        init_db(cfg.DB_DSN)

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {"status": "ok"}

    @app.post("/admin/ingest/sec")
    def admin_ingest_sec(req: IngestRequest) -> Dict[str, Any]:
        _debug(f"Manual SEC ingestion: daysBack={req.daysBack} ciks={len(req.ciks or [])} force={req.force}")
        try:
            stats = orchestrator.ingest_recent(req.ciks or [], req.daysBack, force=req.force)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except Exception as e:
            _debug(f"SEC ingestion failed: {e}")
            raise HTTPException(status_code=500, detail=f"ingestion_failed: {e}")

        return {
            "success": True,
            "result": {**stats.as_dict(), "timestamp": utcnow_iso()},
        }

    @app.get("/admin/queues")
    def admin_queues() -> Dict[str, Any]:
        return {"queues": scheduler.get_queue_health(), "timestamp": utcnow_iso()}

    return app


app = create_app()
