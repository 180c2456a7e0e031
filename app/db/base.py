from __future__ import annotations

from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker


class Base(DeclarativeBase):
    pass


def make_engine(url: str, statement_timeout: Optional[float] = None) -> Engine:
    """Build an engine. `statement_timeout` (seconds) is enforced by the database
    itself, so a statement the caller has given up on is aborted rather than
    left to commit later."""
    connect_args: dict = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        if statement_timeout is not None:
            # Bounds lock waits; SQLite has no per-statement limit.
            connect_args["timeout"] = statement_timeout
    elif url.startswith("postgresql") and statement_timeout is not None:
        connect_args["options"] = f"-c statement_timeout={int(statement_timeout * 1000)}"
    return create_engine(url, pool_pre_ping=True, connect_args=connect_args)


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
