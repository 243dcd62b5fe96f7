from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from dispatch_api.config import get_settings
from dispatch_api.logging_config import get_logger

logger = get_logger("database")

SQLITE_MEMORY_URLS = {"sqlite://", "sqlite:///:memory:"}


def build_engine(database_url: str | None = None):
    url = database_url or get_settings().database_url
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in SQLITE_MEMORY_URLS:
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


engine = build_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None) -> None:
    """Create missing tables (sqlite/dev deployments; production runs migrations)."""
    import dispatch_api.models  # noqa: F401

    bind = bind or engine
    url = str(bind.url)
    if url.startswith("sqlite:///") and url not in SQLITE_MEMORY_URLS:
        Path(url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)
    Base.metadata.create_all(bind=bind)
    logger.info("Database initialized", extra={"context": {"dialect": bind.dialect.name}})
