"""SQLite archive of log lines.

A single ``LogStore`` is shared by every serial worker and every query caller.
Writes take the exclusive side of a reader/writer lock for one insert+commit;
queries take the shared side only while fetching one page of rows, so a slow
or abandoned consumer never holds the lock between records.
"""
import logging
import os
import threading
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy import and_, create_engine, event, or_, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from config import DB_PATH, PAGE_SIZE
from models import Base, LogEntry, LogRecord

logger = logging.getLogger(__name__)

PRAGMAS = [
    "PRAGMA foreign_keys = ON",
    "PRAGMA cache_size = -200000",   # in KiB, approx 200MB
    "PRAGMA journal_mode = WAL",
    "PRAGMA secure_delete = OFF",
    "PRAGMA synchronous = NORMAL",   # appropriate for WAL
    "PRAGMA temp_store = MEMORY",
]


class StoreError(Exception):
    """The database could not be opened, written or read."""


class QueryCancelled(Exception):
    """The caller's cancel event was set before or during a query."""


class ReadWriteLock:
    """Many readers or one writer. Waiting writers block new readers."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self):
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


def is_memory(location):
    return not location or ":memory:" in str(location)


def to_millis(value):
    """Accept epoch milliseconds or a datetime."""
    if isinstance(value, datetime):
        return round(value.timestamp() * 1000)
    return int(value)


def _create_engine(location):
    if is_memory(location):
        # one shared connection, otherwise every checkout sees an empty database
        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            future=True,
        )
    else:
        engine = create_engine(
            f"sqlite:///{location}",
            connect_args={"check_same_thread": False},
            future=True,
        )

    @event.listens_for(engine, "connect")
    def _apply_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        try:
            for pragma in PRAGMAS:
                cursor.execute(pragma)
        finally:
            cursor.close()

    return engine


class LogStore:
    def __init__(self, engine, page_size=PAGE_SIZE):
        if page_size < 1:
            raise ValueError("page_size must be positive")
        self._engine = engine
        self._session = sessionmaker(bind=engine)
        self._lock = ReadWriteLock()
        self.page_size = page_size

    @classmethod
    def open(cls, location=DB_PATH, page_size=PAGE_SIZE):
        """Open (and if needed create) the archive at ``location``.

        ``location`` is a file path, or ``None``/``":memory:"`` for a
        throwaway in-memory database. Raises StoreError if the database
        cannot be opened or its schema created.
        """
        needs_schema = is_memory(location) or not os.path.exists(location)
        try:
            engine = _create_engine(location)
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            Base.metadata.create_all(engine)
        except SQLAlchemyError as e:
            raise StoreError(f"unable to open database {location!r}: {e}") from e

        if needs_schema:
            logger.info("created database %s", location or ":memory:")
        else:
            logger.info("opened database %s", location)
        return cls(engine, page_size=page_size)

    def close(self):
        """Release the database. Only call once all appends and queries are done."""
        self._engine.dispose()

    def append(self, record):
        with self._lock.write():
            with self._session() as sess:
                try:
                    sess.add(LogEntry(ts=record.timestamp, device=record.device, msg=record.message))
                    sess.commit()
                except SQLAlchemyError as e:
                    sess.rollback()
                    raise StoreError(f"unable to store line from {record.device}: {e}") from e

    def query(self, since, until, device=None, cancel=None):
        """Records with ``since <= ts < until``, newest first.

        Returns a lazy, single-pass iterator. ``cancel`` is a threading.Event;
        if it is set before the call or while iterating, QueryCancelled is
        raised and no further records are produced. Records sharing a
        timestamp come out in reverse storage order.

        Rows are read in pages of ``page_size`` and the lock is released
        between pages, so the result is not a single snapshot: a row
        appended during the scan with a timestamp below the current page
        may still be returned. No row is returned twice, and every row
        present when the scan started is returned.
        """
        if cancel is not None and cancel.is_set():
            raise QueryCancelled("query cancelled before start")
        return self._scan(to_millis(since), to_millis(until), device, cancel)

    def _scan(self, since, until, device, cancel):
        after = None
        while True:
            page = self._fetch_page(since, until, device, after)
            for row in page:
                if cancel is not None and cancel.is_set():
                    logger.info("query cancelled since=%d until=%d device=%s", since, until, device)
                    raise QueryCancelled("query cancelled")
                yield LogRecord(row.ts, row.device, row.msg)
            if len(page) < self.page_size:
                return
            after = (page[-1].ts, page[-1].id)

    def _fetch_page(self, since, until, device, after):
        stmt = select(LogEntry.id, LogEntry.ts, LogEntry.device, LogEntry.msg).where(
            LogEntry.ts >= since, LogEntry.ts < until
        )
        if device is not None:
            stmt = stmt.where(LogEntry.device == device)
        if after is not None:
            ts, row_id = after
            stmt = stmt.where(or_(LogEntry.ts < ts, and_(LogEntry.ts == ts, LogEntry.id < row_id)))
        stmt = stmt.order_by(LogEntry.ts.desc(), LogEntry.id.desc()).limit(self.page_size)

        with self._lock.read():
            try:
                with self._session() as sess:
                    return sess.execute(stmt).all()
            except SQLAlchemyError as e:
                logger.error("error scanning rows since=%d until=%d: %s", since, until, e)
                raise StoreError(f"query failed: {e}") from e
