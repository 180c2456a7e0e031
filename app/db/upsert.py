"""
Dialect-aware INSERT ... ON CONFLICT.

Postgres and SQLite both support `on_conflict_do_update`, which gives us
atomic upserts and score increments without a read-modify-write race.
"""
from __future__ import annotations

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session


def insert_for(db: Session, model):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"Upserts are not supported on dialect {dialect!r}")
