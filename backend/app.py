import logging
import os
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from sqlalchemy import text
from sqlalchemy.orm import Session

from backend.api.deps import get_db_session
from backend.api.routes import router
from backend.db.models import configure_session
from backend.db.ops import sync_database
from backend.ingestion.snapshots import reconcile_stale_runs_for_url
from backend.logging_config import configure_logging
from backend.runtime import ensure_runtime_directories
from backend.settings import load_settings

LOGGER = logging.getLogger("tankcatalog.ingest")


@asynccontextmanager
async def lifespan(app: FastAPI):
    database_url = os.getenv("DATABASE_URL")
    configure_logging()
    ensure_runtime_directories()
    configure_session(database_url)
    sync_database(database_url)

    # a restart means any run still marked running lost its process
    settings = load_settings()
    swept = reconcile_stale_runs_for_url(older_than_minutes=settings.stale_run_minutes, database_url=database_url)
    if swept["reconciled"]:
        LOGGER.warning("Startup sweep failed %s orphaned runs", swept["reconciled"])
    yield


app = FastAPI(title="Tank Catalog API", version="0.1.0", lifespan=lifespan)


@app.get("/health", tags=["system"])
def health(db: Session = Depends(get_db_session)):
    db.execute(text("SELECT 1"))
    running = db.execute(text("SELECT COUNT(*) FROM ingestion_runs WHERE status = 'running'")).scalar()
    return {"status": "ok", "runs_in_progress": int(running or 0)}


app.include_router(router)
