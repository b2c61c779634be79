"""Engine and transaction scope management."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator

from sqlalchemy import event
from sqlalchemy.engine import Engine, create_engine
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from ..config import (
    DATABASE_ECHO,
    DATABASE_ISOLATION_LEVEL,
    DATABASE_URL,
    SQLITE_BUSY_TIMEOUT_SECONDS,
)
from ..errors import StorageUnavailableError
from .schema import Base


def _install_sqlite_hooks(engine: Engine) -> None:
    """Open every SQLite transaction with BEGIN IMMEDIATE.

    pysqlite defers BEGIN until the first write, which lets two readers both
    upgrade to writers and deadlock. Taking the write lock up front serialises
    ledger transactions instead.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, _record: Any) -> None:
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(connection: Any) -> None:
        connection.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: str = DATABASE_URL, *, echo: bool = DATABASE_ECHO) -> Engine:
    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SECONDS},
        )
        _install_sqlite_hooks(engine)
        return engine
    return create_engine(
        url,
        echo=echo,
        isolation_level=DATABASE_ISOLATION_LEVEL,
        pool_pre_ping=True,
    )


class Database:
    """Owns the engine and hands out transactional sessions."""

    def __init__(self, url: str = DATABASE_URL, *, echo: bool = DATABASE_ECHO) -> None:
        self.url = url
        self.engine = build_engine(url, echo=echo)
        self._session_factory = sessionmaker(self.engine, expire_on_commit=False)
        self._log = logging.getLogger(self.__class__.__name__)

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    def drop_all(self) -> None:
        Base.metadata.drop_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Yield a session committed on success and rolled back on any error.

        Driver-level failures (locked database, dropped connection) surface as
        ``StorageUnavailableError`` so callers can retry the unit of work.
        """

        session = self._session_factory()
        try:
            yield session
            session.commit()
        except (OperationalError, DBAPIError) as exc:
            session.rollback()
            if isinstance(exc, OperationalError) or exc.connection_invalidated:
                self._log.warning("Storage failure, transaction rolled back: %s", exc)
                raise StorageUnavailableError(str(exc)) from exc
            raise
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


__all__ = ["Database", "build_engine"]
