"""
SQLAlchemy engine and session factory for the agent observability server.
The event store, aggregation engine and ingest routes all import from here.

DATABASE_URL defaults to a local SQLite file (events.db) in WAL mode.
Override via environment variable for other environments.
"""

import os

import structlog
from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.orm import sessionmaker, declarative_base

logger = structlog.get_logger()

DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///events.db")

_IS_SQLITE = DATABASE_URL.startswith("sqlite")

engine = create_engine(
    DATABASE_URL,
    pool_pre_ping=True,
    # Async routes use the session on the event loop thread; get_db closes it from the threadpool
    connect_args={"check_same_thread": False} if _IS_SQLITE else {},
)


@event.listens_for(engine, "connect")
def _set_sqlite_pragmas(dbapi_connection, connection_record):
    """Concurrent readers with a single writer (write-ahead log)."""
    if not _IS_SQLITE:
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute("PRAGMA synchronous = NORMAL")
    cursor.close()


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """FastAPI dependency: yields a DB session and closes it when done."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_all_tables(bind=None) -> None:
    """Create all ORM tables and apply additive migrations. Called at service startup."""
    from agentobs.services.shared import models  # noqa: F401 - ensures models are registered
    bind = bind or engine
    Base.metadata.create_all(bind=bind)
    _apply_column_migrations(bind)


# Each entry: (table, column, type_sql). Columns added after the initial schema;
# all nullable or defaulted so existing rows are never rewritten.
COLUMN_MIGRATIONS: list[tuple[str, str, str]] = [
    ("events",        "chat",                     "JSON"),
    ("events",        "summary",                  "TEXT"),
    ("events",        "human_in_the_loop",        "JSON"),
    ("events",        "human_in_the_loop_status", "JSON"),
    ("events",        "model_name",               "VARCHAR(255)"),
    ("findings",      "location",                 "TEXT"),
    ("findings",      "title",                    "VARCHAR(512)"),
    ("findings",      "description",              "TEXT"),
    ("wstg_coverage", "wstg_name",                "VARCHAR(255)"),
    ("wstg_coverage", "skip_reason",              "TEXT"),
    ("sessions",      "duration_ms",              "BIGINT"),
]


def _apply_column_migrations(bind) -> int:
    """
    Idempotent ADD COLUMN migrations for columns added after initial schema.
    Inspects the live table first, so it is safe to run on every startup
    (SQLite has no ADD COLUMN IF NOT EXISTS).
    Returns the number of columns added.
    """
    inspector = inspect(bind)
    existing_tables = set(inspector.get_table_names())
    added = 0
    with bind.connect() as conn:
        for table, col, col_type in COLUMN_MIGRATIONS:
            if table not in existing_tables:
                continue
            columns = {c["name"] for c in inspector.get_columns(table)}
            if col in columns:
                continue
            conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {col} {col_type}"))
            conn.commit()
            added += 1
            logger.info("column_migrated", table=table, column=col)
    return added
