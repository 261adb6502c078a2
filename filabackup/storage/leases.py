from __future__ import annotations

import logging
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional, Sequence

from filabackup.storage.database import Database

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS leases (
  key TEXT PRIMARY KEY,
  holder TEXT NOT NULL,
  acquired_at REAL NOT NULL,
  expires_at REAL NOT NULL
);
"""


@dataclass(frozen=True)
class Lease:
  key: str
  holder: str
  expires_at: float


class LeaseConflict(Exception):
  def __init__(self, key: str, blocking_key: str) -> None:
    super().__init__(f'{key} is blocked by {blocking_key}')
    self.key = key
    self.blocking_key = blocking_key


def backup_key(tenant_id: int, destination_id: str) -> str:
  return f'backup:{tenant_id}:{destination_id}'


def restore_key(tenant_id: int) -> str:
  return f'restore:{tenant_id}'


INSTANCE_RESTORE_KEY = 'restore:instance'


class LeaseManager:
  """Time-bounded exclusivity markers shared by every worker process.

  Acquisition never waits on another holder: it either inserts the lease in one
  ``BEGIN IMMEDIATE`` transaction or reports the key that blocks it. Expired rows
  are ignored and replaced, so a crashed holder releases itself after ``ttl``.
  """

  def __init__(self, db: Database, ttl_seconds: float = 900.0) -> None:
    self.db = db
    self.ttl_seconds = ttl_seconds
    with self.db.connection() as conn:
      conn.executescript(SCHEMA)

  def acquire(self, key: str, conflicts: Sequence[str] = ()) -> Lease:
    """Take ``key``; ``conflicts`` are LIKE patterns of keys that must be free too."""
    now = time.time()
    lease = Lease(key=key, holder=uuid.uuid4().hex, expires_at=now + self.ttl_seconds)
    with self.db.transaction() as conn:
      conn.execute("DELETE FROM leases WHERE expires_at <= ?", (now,))
      row = conn.execute("SELECT key FROM leases WHERE key = ?", (key,)).fetchone()
      for pattern in conflicts:
        if row:
          break
        row = conn.execute(
          "SELECT key FROM leases WHERE key LIKE ? AND key != ? LIMIT 1",
          (pattern, key)
        ).fetchone()
      if row:
        raise LeaseConflict(key, row['key'])
      conn.execute(
        "INSERT INTO leases (key, holder, acquired_at, expires_at) VALUES (?, ?, ?, ?)",
        (lease.key, lease.holder, now, lease.expires_at)
      )
    logger.debug('Acquired lease %s (%s)', key, lease.holder)
    return lease

  def release(self, lease: Lease) -> None:
    with self.db.transaction() as conn:
      conn.execute("DELETE FROM leases WHERE key = ? AND holder = ?", (lease.key, lease.holder))
    logger.debug('Released lease %s (%s)', lease.key, lease.holder)

  def renew(self, lease: Lease) -> Optional[Lease]:
    """Push the expiry of a lease its holder still owns; ``None`` once it was lost."""
    expires_at = time.time() + self.ttl_seconds
    with self.db.transaction() as conn:
      cursor = conn.execute(
        "UPDATE leases SET expires_at = ? WHERE key = ? AND holder = ?",
        (expires_at, lease.key, lease.holder)
      )
      renewed = cursor.rowcount > 0
    if not renewed:
      logger.warning('Lease %s (%s) expired before it was renewed', lease.key, lease.holder)
      return None
    return Lease(key=lease.key, holder=lease.holder, expires_at=expires_at)

  @contextmanager
  def keep_alive(self, lease: Lease, interval: Optional[float] = None) -> Iterator[None]:
    """Renew ``lease`` from a heartbeat thread for as long as the block runs."""
    period = interval if interval is not None else self.ttl_seconds / 3
    stop = threading.Event()

    def heartbeat() -> None:
      while not stop.wait(period):
        try:
          if self.renew(lease) is None:
            return
        except sqlite3.Error:
          logger.exception('Renewing lease %s failed; retrying on the next beat', lease.key)

    thread = threading.Thread(target=heartbeat, name=f'lease-{lease.key}', daemon=True)
    thread.start()
    try:
      yield
    finally:
      stop.set()
      thread.join()

  def is_held(self, key: str) -> bool:
    with self.db.connection() as conn:
      row = conn.execute(
        "SELECT 1 FROM leases WHERE key = ? AND expires_at > ?",
        (key, time.time())
      ).fetchone()
    return row is not None

  @contextmanager
  def hold(self, key: str, conflicts: Sequence[str] = ()) -> Iterator[Lease]:
    lease = self.acquire(key, conflicts)
    try:
      yield lease
    finally:
      self.release(lease)
