"""SQLAlchemy engine, declarative base and schema setup for the registry."""

from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool
from sqlalchemy.schema import CreateColumn

from ..logging import get_logger
from ..paths import registry_db_path

log = get_logger(__name__)

Base = declarative_base()


def database_url(path: Optional[Path] = None) -> str:
    return f"sqlite:///{path or registry_db_path()}"


def create_registry_engine(url: Optional[str] = None) -> Engine:
    """Engine for the registry; ``sqlite://`` gives a shared in-memory DB."""
    url = url or database_url()
    if url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    if url.startswith("sqlite:///"):
        Path(url[len("sqlite:///"):]).expanduser().parent.mkdir(parents=True, exist_ok=True)
    # worker threads share the engine, each with its own short-lived session
    return create_engine(url, connect_args={"check_same_thread": False})


def init_schema(engine: Engine) -> None:
    """Create missing tables, then add any columns newer code expects."""
    # models must be imported so their tables are registered on Base
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    add_missing_columns(engine)


def add_missing_columns(engine: Engine) -> None:
    """Additive migration: ALTER TABLE ADD COLUMN for every absent column.

    Only nullable or server-defaulted columns can be added this way; anything
    else is reported and skipped so existing rows stay readable.
    """
    inspector = inspect(engine)
    with engine.begin() as conn:
        for table in Base.metadata.sorted_tables:
            existing = {col["name"] for col in inspector.get_columns(table.name)}
            for column in table.columns:
                if column.name in existing:
                    continue
                if not column.nullable and column.server_default is None:
                    log.warning("registry.column_skipped", table=table.name, column=column.name)
                    continue
                ddl = CreateColumn(column).compile(dialect=engine.dialect)
                conn.execute(text(f"ALTER TABLE {table.name} ADD COLUMN {ddl}"))
                log.info("registry.column_added", table=table.name, column=column.name)
