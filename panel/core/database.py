import importlib.util
import logging
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from sqlalchemy.pool import StaticPool
from urllib.parse import urlparse
from panel.core.config import get_settings


class Base(DeclarativeBase):
    pass


settings = get_settings()
logger = logging.getLogger(__name__)

# billing, suspension, cancellation and orphan jobs
SCHEDULER_CONNECTIONS = 4


def _resolve_database_url(database_url: str) -> str:
    if not database_url.startswith("postgresql://"):
        return database_url
    has_psycopg2 = importlib.util.find_spec("psycopg2") is not None
    has_psycopg3 = importlib.util.find_spec("psycopg") is not None
    if not has_psycopg2 and has_psycopg3:
        return database_url.replace("postgresql://", "postgresql+psycopg://", 1)
    return database_url


def _build_connect_args(database_url: str) -> dict:
    parsed = urlparse(database_url)
    if parsed.scheme.startswith("sqlite"):
        return {"check_same_thread": False}
    if not parsed.scheme.startswith("postgresql"):
        return {}

    connect_args = {
        "keepalives": 1,
        "keepalives_idle": 30,
        "keepalives_interval": 10,
        "keepalives_count": 5,
    }
    local_hosts = {"localhost", "127.0.0.1", "db"}
    if parsed.hostname not in local_hosts:
        connect_args["sslmode"] = "require"
    return connect_args


def _pool_size() -> int:
    size = int(settings.db_pool_size)
    if settings.scheduler_enabled:
        # Each lifecycle job holds one connection while it ticks.
        size += SCHEDULER_CONNECTIONS
    return size


def build_engine(database_url: str):
    url = _resolve_database_url(database_url)
    pool_kwargs = {}
    if url.startswith("postgresql"):
        pool_kwargs = {
            "pool_pre_ping": settings.db_pool_pre_ping,
            "pool_recycle": settings.db_pool_recycle,
            "pool_size": _pool_size(),
            "max_overflow": max(0, int(settings.db_max_overflow)),
            "pool_timeout": int(settings.db_pool_timeout),
        }
        logger.info("Database pool: size=%s overflow=%s", pool_kwargs["pool_size"], pool_kwargs["max_overflow"])
    elif url in ("sqlite://", "sqlite:///:memory:"):
        # One shared connection, otherwise every checkout sees an empty database.
        pool_kwargs = {"poolclass": StaticPool}

    return create_engine(url, connect_args=_build_connect_args(url), **pool_kwargs)


engine = build_engine(str(settings.database_url))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
