from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import Optional

from filabackup.storage.database import Database, utc_now

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
  token TEXT PRIMARY KEY,
  tenant_id INTEGER NOT NULL,
  is_admin INTEGER NOT NULL DEFAULT 0,
  created_at TEXT NOT NULL,
  revoked_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_sessions_tenant ON sessions(tenant_id);
"""


@dataclass(frozen=True)
class Principal:
  tenant_id: int
  is_admin: bool
  token: str


class SessionStore:
  """Bearer sessions of the calling layer; revoked after a restore."""

  def __init__(self, db: Database) -> None:
    self.db = db
    with self.db.connection() as conn:
      conn.executescript(SCHEMA)

  def create(self, tenant_id: int, is_admin: bool = False) -> Principal:
    token = secrets.token_urlsafe(32)
    with self.db.transaction() as conn:
      conn.execute(
        "INSERT INTO sessions (token, tenant_id, is_admin, created_at) VALUES (?, ?, ?, ?)",
        (token, tenant_id, int(is_admin), utc_now())
      )
    return Principal(tenant_id=tenant_id, is_admin=is_admin, token=token)

  def resolve(self, token: str) -> Optional[Principal]:
    with self.db.connection() as conn:
      row = conn.execute(
        "SELECT * FROM sessions WHERE token = ? AND revoked_at IS NULL",
        (token,)
      ).fetchone()
    if not row:
      return None
    return Principal(tenant_id=row['tenant_id'], is_admin=bool(row['is_admin']), token=row['token'])

  def revoke_tenant(self, tenant_id: int) -> int:
    with self.db.transaction() as conn:
      cursor = conn.execute(
        "UPDATE sessions SET revoked_at = ? WHERE tenant_id = ? AND revoked_at IS NULL",
        (utc_now(), tenant_id)
      )
    logger.info('Revoked %s session(s) for tenant %s', cursor.rowcount, tenant_id)
    return cursor.rowcount
