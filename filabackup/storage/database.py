from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

logger = logging.getLogger(__name__)


def utc_now() -> str:
  return datetime.now(timezone.utc).isoformat()


def _connect(db_path: Path, timeout: float = 30.0) -> sqlite3.Connection:
  # Autocommit mode: every write path below opens its own explicit transaction.
  connection = sqlite3.connect(db_path, timeout=timeout, isolation_level=None, check_same_thread=False)
  connection.row_factory = sqlite3.Row
  connection.execute('PRAGMA foreign_keys = ON')
  return connection


class Database:
  """Thin SQLite wrapper with explicit read and write transactions."""

  def __init__(self, db_path: Path, schema: str = '') -> None:
    self.db_path = Path(db_path)
    self.db_path.parent.mkdir(parents=True, exist_ok=True)
    with self.connection() as conn:
      conn.execute('PRAGMA journal_mode = WAL')
      if schema:
        conn.executescript(schema)

  @contextmanager
  def connection(self) -> Iterator[sqlite3.Connection]:
    conn = _connect(self.db_path)
    try:
      yield conn
    finally:
      conn.close()

  @contextmanager
  def transaction(self) -> Iterator[sqlite3.Connection]:
    """Write transaction; takes the database write lock up front."""
    with self.connection() as conn:
      conn.execute('BEGIN IMMEDIATE')
      try:
        yield conn
      except BaseException:
        conn.execute('ROLLBACK')
        raise
      conn.execute('COMMIT')

  @contextmanager
  def snapshot(self) -> Iterator[sqlite3.Connection]:
    """Read transaction pinned to one WAL snapshot; takes no write lock."""
    with self.connection() as conn:
      conn.execute('BEGIN DEFERRED')
      try:
        yield conn
      finally:
        conn.execute('ROLLBACK')
