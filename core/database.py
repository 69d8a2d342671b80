"""
Persistent store for esmd.

A single SQLite file opened once per process through SQLAlchemy and shared
by every request handler. The key/value facade is deliberately small; the
store's own locking and transactions are SQLite's responsibility.
"""

import os
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Iterator, List, Optional, Union

from sqlalchemy import DateTime, LargeBinary, String, create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DatabaseError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from core import constants
from core.runtime.errors import (
    StoreClosedError,
    StoreCorruptError,
    StoreOpenError,
    StorePathError,
    StorePermissionError,
)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


class Entry(Base):
    """One key/value record."""

    __tablename__ = "kv"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )


def _to_bytes(value: Union[str, bytes]) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    return bytes(value)


class Store:
    """
    Exclusive-owner handle to the persistent store.

    Shared read-mostly by all request handlers. close() is called exactly
    once during shutdown; every operation afterwards raises StoreClosedError.
    Operations already holding a connection when close() runs complete
    normally.
    """

    def __init__(self, path: Path, engine: Engine):
        self.path = Path(path)
        self._engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        self._lock = Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Open a transactional session, committing on success."""
        with self._lock:
            if self._closed:
                raise StoreClosedError(f"store {self.path} is closed")
            session = self._session_factory()
        try:
            yield session
            session.commit()
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    def get(self, key: str) -> Optional[bytes]:
        with self.session() as session:
            entry = session.get(Entry, key)
            return entry.value if entry is not None else None

    def put(self, key: str, value: Union[str, bytes]) -> None:
        with self.session() as session:
            session.merge(Entry(key=key, value=_to_bytes(value), updated_at=datetime.now(timezone.utc)))

    def delete(self, key: str) -> bool:
        with self.session() as session:
            entry = session.get(Entry, key)
            if entry is None:
                return False
            session.delete(entry)
            return True

    def keys(self, prefix: str = "") -> List[str]:
        with self.session() as session:
            query = select(Entry.key).order_by(Entry.key)
            if prefix:
                query = query.where(Entry.key.startswith(prefix, autoescape=True))
            return list(session.scalars(query))

    def close(self) -> bool:
        """
        Close the store.

        Returns:
            True if this call closed the store, False if it was already closed
        """
        with self._lock:
            if self._closed:
                return False
            self._closed = True
        self._engine.dispose()
        return True


def _classify_database_error(path: Path, error: DatabaseError) -> StoreOpenError:
    """Map a SQLite failure onto the store error taxonomy."""
    message = str(getattr(error, "orig", None) or error).lower()
    if "not a database" in message or "malformed" in message or "corrupt" in message:
        return StoreCorruptError(path, str(error.orig or error))
    if "readonly" in message or "permission" in message or "access" in message:
        return StorePermissionError(path, str(error.orig or error))
    if "unable to open" in message:
        return StorePathError(path, str(error.orig or error))
    return StoreOpenError(path, str(error.orig or error))


def _create_backing_file(path: Path, permissions: int) -> None:
    try:
        fd = os.open(path, os.O_RDWR | os.O_CREAT, permissions)
    except PermissionError as e:
        raise StorePermissionError(path, f"cannot create file: {e.strerror}") from e
    except OSError as e:
        raise StorePathError(path, f"cannot create file: {e.strerror}") from e
    os.close(fd)


def open_store(
    path: Union[str, Path],
    permissions: int = constants.STORE_FILE_MODE,
    *,
    timeout: float = constants.STORE_BUSY_TIMEOUT,
) -> Store:
    """
    Open (creating if absent) the persistent store.

    Args:
        path: Store file path; its parent directory must already exist
        permissions: Mode for a newly created file (masked by umask)
        timeout: Seconds SQLite keeps retrying while another process holds the lock

    Returns:
        Open Store handle

    Raises:
        StorePathError: Parent directory missing, or path is a directory
        StorePermissionError: File cannot be created, read or written
        StoreCorruptError: File exists but is not a valid database
    """
    path = Path(path)

    if not path.parent.is_dir():
        raise StorePathError(path, f"parent directory {path.parent} does not exist")
    if path.is_dir():
        raise StorePathError(path, "path is a directory")

    if not path.exists():
        _create_backing_file(path, permissions)
    if not os.access(path, os.R_OK | os.W_OK):
        raise StorePermissionError(path, "file is not readable and writable")

    engine = create_engine(
        f"sqlite:///{path}",
        connect_args={"timeout": timeout, "check_same_thread": False},
    )
    try:
        with engine.connect() as conn:
            check = conn.exec_driver_sql("PRAGMA quick_check").scalar()
        if check != "ok":
            raise StoreCorruptError(path, f"integrity check failed: {check}")
        Base.metadata.create_all(engine)
    except StoreOpenError:
        engine.dispose()
        raise
    except DatabaseError as e:
        engine.dispose()
        raise _classify_database_error(path, e) from e

    return Store(path, engine)
