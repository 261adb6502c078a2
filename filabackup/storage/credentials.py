from __future__ import annotations

import sqlite3
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

from filabackup.security.secret_manager import SecretManager
from filabackup.storage.database import Database

SCHEMA = """
CREATE TABLE IF NOT EXISTS credentials (
  id TEXT PRIMARY KEY,
  tenant_id INTEGER NOT NULL,
  destination_id TEXT NOT NULL,
  payload BLOB NOT NULL,
  created_at REAL NOT NULL,
  updated_at REAL NOT NULL,
  UNIQUE (tenant_id, destination_id)
);
"""


@dataclass
class CredentialRecord:
  id: str
  tenant_id: int
  destination_id: str
  data: Dict[str, Any]
  created_at: float
  updated_at: float


class CredentialStore:
  """SQLite-backed encrypted secrets, one entry per (tenant, destination)."""

  def __init__(self, db: Database, secret_manager: SecretManager) -> None:
    self.db = db
    self.secret_manager = secret_manager
    with self.db.connection() as conn:
      conn.executescript(SCHEMA)

  def set(
    self,
    tenant_id: int,
    destination_id: str,
    data: Dict[str, Any],
    conn: Optional[sqlite3.Connection] = None
  ) -> CredentialRecord:
    """Create or replace the secrets of a destination; returns the new reference."""
    record_id = uuid.uuid4().hex
    now = time.time()
    payload = self.secret_manager.encrypt_json(data)
    if conn is None:
      with self.db.transaction() as own:
        return self.set(tenant_id, destination_id, data, conn=own)
    existing = conn.execute(
      "SELECT created_at FROM credentials WHERE tenant_id = ? AND destination_id = ?",
      (tenant_id, destination_id)
    ).fetchone()
    created_at = existing['created_at'] if existing else now
    conn.execute(
      "DELETE FROM credentials WHERE tenant_id = ? AND destination_id = ?",
      (tenant_id, destination_id)
    )
    conn.execute(
      """
      INSERT INTO credentials (id, tenant_id, destination_id, payload, created_at, updated_at)
      VALUES (?, ?, ?, ?, ?, ?)
      """,
      (record_id, tenant_id, destination_id, payload, created_at, now)
    )
    return CredentialRecord(
      id=record_id,
      tenant_id=tenant_id,
      destination_id=destination_id,
      data=data,
      created_at=created_at,
      updated_at=now
    )

  def update(self, credential_id: str, data: Dict[str, Any]) -> Optional[CredentialRecord]:
    now = time.time()
    payload = self.secret_manager.encrypt_json(data)
    with self.db.transaction() as conn:
      cursor = conn.execute(
        "UPDATE credentials SET payload = ?, updated_at = ? WHERE id = ?",
        (payload, now, credential_id)
      )
      if cursor.rowcount == 0:
        return None
      row = conn.execute("SELECT * FROM credentials WHERE id = ?", (credential_id,)).fetchone()
    return self._to_record(row)

  def get(self, credential_id: str) -> Optional[CredentialRecord]:
    with self.db.connection() as conn:
      row = conn.execute("SELECT * FROM credentials WHERE id = ?", (credential_id,)).fetchone()
    if not row:
      return None
    return self._to_record(row)

  def clear(self, tenant_id: int, destination_id: str, conn: Optional[sqlite3.Connection] = None) -> bool:
    if conn is None:
      with self.db.transaction() as own:
        return self.clear(tenant_id, destination_id, conn=own)
    cursor = conn.execute(
      "DELETE FROM credentials WHERE tenant_id = ? AND destination_id = ?",
      (tenant_id, destination_id)
    )
    return cursor.rowcount > 0

  def _to_record(self, row: sqlite3.Row) -> CredentialRecord:
    return CredentialRecord(
      id=row['id'],
      tenant_id=row['tenant_id'],
      destination_id=row['destination_id'],
      data=self.secret_manager.decrypt_json(row['payload']),
      created_at=row['created_at'],
      updated_at=row['updated_at']
    )
