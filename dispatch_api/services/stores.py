from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from sqlalchemy.orm import Session

from dispatch_api.config import Settings, get_settings
from dispatch_api.services.file_store import JsonFileOutboxStore, JsonFileRunStore
from dispatch_api.services.outbox_store import OutboxStore, RunStore
from dispatch_api.services.sql_store import SqlOutboxStore, SqlRunStore

OUTBOX_FILENAME = "whatsapp_outbox.json"
RUNS_FILENAME = "campaign_runs.json"


@dataclass
class DispatchStores:
    outbox: OutboxStore
    runs: RunStore


def build_stores(db: Optional[Session] = None, settings: Optional[Settings] = None) -> DispatchStores:
    """Pick the storage adapters for the configured backend."""
    settings = settings or get_settings()
    backend = (settings.storage_backend or "db").strip().lower()

    if backend == "file":
        data_dir = Path(settings.data_dir)
        return DispatchStores(
            outbox=JsonFileOutboxStore(data_dir / OUTBOX_FILENAME),
            runs=JsonFileRunStore(data_dir / RUNS_FILENAME),
        )
    if backend != "db":
        raise ValueError(f"Unknown storage backend: {settings.storage_backend}")
    if db is None:
        raise ValueError("A database session is required for the db storage backend")
    return DispatchStores(outbox=SqlOutboxStore(db), runs=SqlRunStore(db))
