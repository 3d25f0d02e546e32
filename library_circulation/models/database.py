"""SQLite persistence for the circulation engine.

Connections are cached per Flask application context (``flask.g``) or, when
no application context is active (background threads, scripts, tests), per
thread. All writes go through ``transaction()``, which opens the transaction
with ``BEGIN IMMEDIATE`` so the database write lock is held from the first
read of a read-check-write sequence until commit.
"""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from flask import current_app, g, has_app_context

from config.config import Config
from models.errors import StorageTimeout

logger = logging.getLogger(__name__)

DATETIME_FORMAT = '%Y-%m-%d %H:%M:%S'

_local = threading.local()
_database_path: str = Config.DATABASE_PATH

SCHEMA = '''
CREATE TABLE IF NOT EXISTS titles (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    isbn TEXT UNIQUE,
    total_copies INTEGER NOT NULL DEFAULT 0,
    available_copies INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    CHECK (available_copies >= 0 AND available_copies <= total_copies)
);

CREATE TABLE IF NOT EXISTS copies (
    id TEXT PRIMARY KEY,
    title_id TEXT NOT NULL REFERENCES titles(id) ON DELETE CASCADE,
    barcode TEXT UNIQUE NOT NULL,
    state TEXT NOT NULL DEFAULT 'available'
        CHECK (state IN ('available', 'on_loan', 'reserved', 'maintenance')),
    acquired_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_copies_title ON copies(title_id, state);

CREATE TABLE IF NOT EXISTS patrons (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    email TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'inactive')),
    registered_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS patron_roles (
    patron_id TEXT NOT NULL REFERENCES patrons(id) ON DELETE CASCADE,
    role TEXT NOT NULL,
    attributes TEXT NOT NULL DEFAULT '{}',
    PRIMARY KEY (patron_id, role)
);

CREATE TABLE IF NOT EXISTS loans (
    id TEXT PRIMARY KEY,
    patron_id TEXT NOT NULL REFERENCES patrons(id),
    copy_id TEXT NOT NULL REFERENCES copies(id),
    start_time TEXT NOT NULL,
    due_time TEXT NOT NULL,
    return_time TEXT,
    state TEXT NOT NULL DEFAULT 'active'
        CHECK (state IN ('active', 'overdue', 'finalized')),
    renewal_count INTEGER NOT NULL DEFAULT 0,
    CHECK ((state = 'finalized') = (return_time IS NOT NULL))
);
CREATE UNIQUE INDEX IF NOT EXISTS ux_loans_open_copy
    ON loans(copy_id) WHERE state IN ('active', 'overdue');
CREATE INDEX IF NOT EXISTS idx_loans_patron ON loans(patron_id, state);

CREATE TABLE IF NOT EXISTS reservations (
    id TEXT PRIMARY KEY,
    patron_id TEXT NOT NULL REFERENCES patrons(id),
    title_id TEXT NOT NULL REFERENCES titles(id),
    request_time TEXT NOT NULL,
    expiry_time TEXT NOT NULL,
    state TEXT NOT NULL DEFAULT 'pending'
        CHECK (state IN ('pending', 'fulfilled', 'expired', 'cancelled')),
    priority INTEGER NOT NULL DEFAULT 1,
    copy_id TEXT REFERENCES copies(id),
    hold_until TEXT,
    claimed_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_reservations_queue
    ON reservations(title_id, state, priority DESC, request_time ASC);

CREATE TABLE IF NOT EXISTS fines (
    id TEXT PRIMARY KEY,
    loan_id TEXT UNIQUE NOT NULL REFERENCES loans(id),
    patron_id TEXT NOT NULL REFERENCES patrons(id),
    amount_cents INTEGER NOT NULL CHECK (amount_cents > 0),
    reason TEXT NOT NULL,
    state TEXT NOT NULL DEFAULT 'pending' CHECK (state IN ('pending', 'paid')),
    generated_at TEXT NOT NULL,
    paid_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_fines_patron ON fines(patron_id, state);

CREATE TABLE IF NOT EXISTS payments (
    id TEXT PRIMARY KEY,
    fine_id TEXT NOT NULL REFERENCES fines(id),
    amount_cents INTEGER NOT NULL CHECK (amount_cents > 0),
    method TEXT NOT NULL,
    paid_at TEXT NOT NULL,
    receipt TEXT
);
CREATE INDEX IF NOT EXISTS idx_payments_fine ON payments(fine_id);

CREATE TABLE IF NOT EXISTS sanctions (
    id TEXT PRIMARY KEY,
    patron_id TEXT NOT NULL REFERENCES patrons(id),
    sanction_type TEXT NOT NULL,
    start_time TEXT NOT NULL,
    end_time TEXT NOT NULL,
    reason TEXT NOT NULL DEFAULT '',
    state TEXT NOT NULL DEFAULT 'active' CHECK (state IN ('active', 'lifted'))
);
CREATE INDEX IF NOT EXISTS idx_sanctions_patron ON sanctions(patron_id, state);

CREATE TABLE IF NOT EXISTS audit_outbox (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    action TEXT NOT NULL CHECK (action IN ('Create', 'Update')),
    before_state TEXT,
    after_state TEXT NOT NULL,
    actor_id TEXT,
    timestamp TEXT NOT NULL,
    delivered_at TEXT,
    attempts INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_audit_pending ON audit_outbox(delivered_at, id);

CREATE TABLE IF NOT EXISTS system_config (
    id INTEGER PRIMARY KEY,
    config_data TEXT NOT NULL
);
'''


def to_db_time(value: datetime) -> str:
    """Format a datetime the way it is stored."""
    return value.strftime(DATETIME_FORMAT)


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, DATETIME_FORMAT)


def _connect(path: str) -> sqlite3.Connection:
    db = sqlite3.connect(
        path,
        timeout=Config.LOCK_TIMEOUT_SECONDS,
        isolation_level=None,
        check_same_thread=False,
    )
    db.row_factory = sqlite3.Row
    db.execute('PRAGMA foreign_keys = ON')
    if path != ':memory:':
        db.execute('PRAGMA journal_mode = WAL')
    return db


def get_db() -> sqlite3.Connection:
    """Return the connection for the current app context or thread."""
    if has_app_context():
        if 'db' not in g:
            g.db = _connect(current_app.config.get('DATABASE_PATH', _database_path))
        return g.db

    cached = getattr(_local, 'db', None)
    if cached is not None and cached[0] == _database_path:
        return cached[1]
    if cached is not None:
        cached[1].close()
    db = _connect(_database_path)
    _local.db = (_database_path, db)
    return db


def close_db(exception: Optional[BaseException] = None) -> None:
    """Close the connection bound to the app context or thread, if any."""
    if has_app_context():
        db = g.pop('db', None)
        if db is not None:
            db.close()
        return

    cached = getattr(_local, 'db', None)
    if cached is not None:
        cached[1].close()
        _local.db = None


def init_db(path: Optional[str] = None) -> None:
    """Point the engine at ``path`` and create the schema if missing."""
    global _database_path
    if path is None and has_app_context():
        path = current_app.config.get('DATABASE_PATH')
    if path:
        _database_path = path
    logger.info('Initializing circulation database at %s', _database_path)

    db = _connect(_database_path)
    try:
        db.executescript(SCHEMA)
    finally:
        db.close()


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """Run the enclosed block as one serializable unit of work.

    Nested use joins the transaction that is already open on the connection;
    only the outermost block commits. Any exception rolls back every write
    made since ``BEGIN``.
    """
    db = get_db()
    if db.in_transaction:
        yield db
        return

    try:
        db.execute('BEGIN IMMEDIATE')
    except sqlite3.OperationalError as e:
        logger.warning('Could not acquire write lock: %s', e)
        raise StorageTimeout(f'Storage is busy, retry later ({e})') from e

    try:
        yield db
    except BaseException:
        db.rollback()
        raise

    try:
        db.commit()
    except sqlite3.OperationalError as e:
        db.rollback()
        raise StorageTimeout(f'Commit failed, retry later ({e})') from e
