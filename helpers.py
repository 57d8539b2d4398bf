from __future__ import annotations

import datetime as dt
import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator, Optional

from models import Base
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker


def make_engine(db_url: str, echo: bool = False):
    connect_args = {}
    if db_url.startswith("sqlite"):
        # sessions are opened from request, dispatcher and sweep threads
        connect_args = {"check_same_thread": False, "timeout": 30}
    engine = create_engine(db_url, echo=echo, future=True, connect_args=connect_args)
    if db_url.startswith("sqlite"):

        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_conn, _record):
            cur = dbapi_conn.cursor()
            cur.execute("PRAGMA foreign_keys=ON")
            cur.close()

    Base.metadata.create_all(engine)
    return engine


def make_session_factory(engine):
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


def utcnow() -> dt.datetime:
    """Naive UTC now; every stored timestamp uses this convention."""
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)


def to_naive_utc(ts: dt.datetime) -> dt.datetime:
    if ts.tzinfo is None:
        return ts
    return ts.astimezone(dt.timezone.utc).replace(tzinfo=None)


def iso(ts: Optional[dt.datetime]) -> Optional[str]:
    if ts is None:
        return None
    return ts.isoformat(timespec="seconds") + "Z"


class KeyedLocks:
    """One lock per key, created on first use."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.Lock] = {}

    def get(self, key: Hashable) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        lock = self.get(key)
        with lock:
            yield
