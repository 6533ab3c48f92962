from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from shared import load_service_config

_config = load_service_config("booking")


def build_engine(url: str, *, lock_timeout_seconds: float = 5.0) -> Engine:
    """Create an engine whose transactions are safe for concurrent writers.

    SQLite has no row locks, so every transaction is opened with
    ``BEGIN IMMEDIATE`` and writers queue on the busy timeout instead.
    """
    if url.startswith("sqlite"):
        db_engine = create_engine(
            url,
            future=True,
            connect_args={"check_same_thread": False, "timeout": lock_timeout_seconds},
        )

        @event.listens_for(db_engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(db_engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return db_engine

    return create_engine(url, future=True, pool_pre_ping=True)


engine = build_engine(_config.database.url, lock_timeout_seconds=_config.database.lock_timeout_seconds)
SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)
Base = declarative_base()
