"""Engine construction and the per-request session dependency."""

from collections.abc import Generator
from typing import Annotated

from fastapi import Depends
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import settings


def enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(database_url: str, **overrides) -> Engine:
    """Engine for ``database_url``.

    SQLite connections move between the request threadpool and the dispatcher loop
    and need foreign keys switched on so order deletes cascade to print jobs.
    ``overrides`` are passed to ``create_engine`` last (tests use ``poolclass``).
    """
    if database_url.startswith("sqlite"):
        options = {"connect_args": {"check_same_thread": False}}
        if "poolclass" not in overrides:
            options["pool_pre_ping"] = True
    else:
        options = {
            "pool_size": 10,
            "max_overflow": 20,
            "pool_pre_ping": True,
            "pool_recycle": 3600,
        }
    options.update(overrides)

    built = create_engine(database_url, echo=False, **options)
    if database_url.startswith("sqlite"):
        event.listen(built, "connect", enable_sqlite_foreign_keys)
    return built


engine = build_engine(settings.database_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


DbSession = Annotated[Session, Depends(get_db)]
