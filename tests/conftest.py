import random

import pytest
from sqlalchemy.orm import sessionmaker

from dispatch_api.config import Settings, get_settings
from dispatch_api.database import build_engine, init_db
from dispatch_api.services.file_store import JsonFileOutboxStore, JsonFileRunStore
from dispatch_api.services.sql_store import SqlOutboxStore, SqlRunStore
from dispatch_api.services.stores import DispatchStores


@pytest.fixture(autouse=True)
def clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def sql_session():
    """In-memory SQLite session with the dispatch tables created."""
    engine = build_engine("sqlite://")
    init_db(engine)
    session = sessionmaker(bind=engine, autoflush=False)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def sql_stores(sql_session):
    return DispatchStores(outbox=SqlOutboxStore(sql_session), runs=SqlRunStore(sql_session))


@pytest.fixture
def file_stores(tmp_path):
    return DispatchStores(
        outbox=JsonFileOutboxStore(tmp_path / "whatsapp_outbox.json"),
        runs=JsonFileRunStore(tmp_path / "campaign_runs.json"),
    )


@pytest.fixture(params=["sql", "file"])
def stores(request):
    """Both storage backends behind the same port."""
    return request.getfixturevalue(f"{request.param}_stores")


@pytest.fixture
def rng():
    return random.Random(42)


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        outbox_worker_enabled=False,
        outbox_immediate_delivery=False,
        outbox_dry_run=False,
        send_window_enabled=False,
    )
