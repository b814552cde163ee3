from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase, Session
from sqlalchemy.pool import StaticPool


class Base(DeclarativeBase):
    pass


def make_engine(database_url: str, echo: bool = False) -> Engine:
    kwargs: dict = {"echo": echo, "future": True}
    if "sqlite" in database_url:
        kwargs["connect_args"] = {"check_same_thread": False}
        # In-memory SQLite is per-connection; share one across threads
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, **kwargs)


class Database:
    """Engine + session factory for the audit store."""

    def __init__(self, database_url: str, echo: bool = False) -> None:
        self.engine = make_engine(database_url, echo=echo)
        self.SessionLocal = sessionmaker(
            bind=self.engine, autoflush=False, autocommit=False, expire_on_commit=False
        )

    def create_tables(self) -> None:
        from . import models  # noqa: F401 – registers ORM mappings with Base.metadata
        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Context-manager style session with automatic commit/rollback."""
        session: Session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()
