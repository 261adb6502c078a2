from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Dict, List, Optional

from filabackup.storage.database import Database, utc_now

DESTINATION_IDS = ('google', 'dropbox', 'onedrive', 's3', 'webdav', 'local')
OAUTH_DESTINATIONS = ('google', 'dropbox', 'onedrive')

SCHEMA = """
CREATE TABLE IF NOT EXISTS destination_configs (
  tenant_id INTEGER NOT NULL,
  destination_id TEXT NOT NULL,
  credentials_ref TEXT,
  enabled INTEGER NOT NULL DEFAULT 0,
  folder_path TEXT NOT NULL,
  last_backup_at TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  PRIMARY KEY (tenant_id, destination_id),
  CHECK (enabled = 0 OR credentials_ref IS NOT NULL)
);
"""


@dataclass
class DestinationConfig:
  tenant_id: int
  destination_id: str
  credentials_ref: Optional[str]
  enabled: bool
  folder_path: str
  last_backup_at: Optional[str]
  created_at: str
  updated_at: str

  @property
  def configured(self) -> bool:
    return bool(self.credentials_ref)

  @property
  def state(self) -> str:
    if not self.configured:
      return 'unconfigured'
    return 'enabled' if self.enabled else 'disabled'


class DestinationConfigStore:
  """Per-tenant destination rows; the CHECK constraint pins enabled => configured."""

  def __init__(self, db: Database) -> None:
    self.db = db
    with self.db.connection() as conn:
      conn.executescript(SCHEMA)

  def get(self, tenant_id: int, destination_id: str) -> Optional[DestinationConfig]:
    with self.db.connection() as conn:
      row = conn.execute(
        "SELECT * FROM destination_configs WHERE tenant_id = ? AND destination_id = ?",
        (tenant_id, destination_id)
      ).fetchone()
    return self._to_config(row) if row else None

  def list_for_tenant(self, tenant_id: int) -> Dict[str, DestinationConfig]:
    with self.db.connection() as conn:
      rows = conn.execute(
        "SELECT * FROM destination_configs WHERE tenant_id = ?",
        (tenant_id,)
      ).fetchall()
    return {row['destination_id']: self._to_config(row) for row in rows}

  def upsert(
    self,
    tenant_id: int,
    destination_id: str,
    credentials_ref: str,
    folder_path: str,
    enabled: bool = True,
    conn: Optional[sqlite3.Connection] = None
  ) -> DestinationConfig:
    if conn is None:
      with self.db.transaction() as own:
        return self.upsert(tenant_id, destination_id, credentials_ref, folder_path, enabled, conn=own)
    now = utc_now()
    conn.execute(
      """
      INSERT INTO destination_configs (
        tenant_id, destination_id, credentials_ref, enabled, folder_path, last_backup_at, created_at, updated_at
      ) VALUES (?, ?, ?, ?, ?, NULL, ?, ?)
      ON CONFLICT (tenant_id, destination_id) DO UPDATE SET
        credentials_ref = excluded.credentials_ref,
        enabled = excluded.enabled,
        folder_path = excluded.folder_path,
        updated_at = excluded.updated_at
      """,
      (tenant_id, destination_id, credentials_ref, int(enabled), folder_path, now, now)
    )
    row = conn.execute(
      "SELECT * FROM destination_configs WHERE tenant_id = ? AND destination_id = ?",
      (tenant_id, destination_id)
    ).fetchone()
    return self._to_config(row)

  def set_enabled(self, tenant_id: int, destination_id: str, enabled: bool) -> bool:
    with self.db.transaction() as conn:
      cursor = conn.execute(
        """
        UPDATE destination_configs SET enabled = ?, updated_at = ?
        WHERE tenant_id = ? AND destination_id = ? AND credentials_ref IS NOT NULL
        """,
        (int(enabled), utc_now(), tenant_id, destination_id)
      )
    return cursor.rowcount > 0

  def set_folder_path(self, tenant_id: int, destination_id: str, folder_path: str) -> bool:
    with self.db.transaction() as conn:
      cursor = conn.execute(
        """
        UPDATE destination_configs SET folder_path = ?, updated_at = ?
        WHERE tenant_id = ? AND destination_id = ?
        """,
        (folder_path, utc_now(), tenant_id, destination_id)
      )
    return cursor.rowcount > 0

  def mark_backup(self, tenant_id: int, destination_id: str, completed_at: str) -> None:
    with self.db.transaction() as conn:
      conn.execute(
        """
        UPDATE destination_configs SET last_backup_at = ?, updated_at = ?
        WHERE tenant_id = ? AND destination_id = ?
        """,
        (completed_at, utc_now(), tenant_id, destination_id)
      )

  def delete(self, tenant_id: int, destination_id: str, conn: Optional[sqlite3.Connection] = None) -> bool:
    if conn is None:
      with self.db.transaction() as own:
        return self.delete(tenant_id, destination_id, conn=own)
    cursor = conn.execute(
      "DELETE FROM destination_configs WHERE tenant_id = ? AND destination_id = ?",
      (tenant_id, destination_id)
    )
    return cursor.rowcount > 0

  def _to_config(self, row: sqlite3.Row) -> DestinationConfig:
    return DestinationConfig(
      tenant_id=row['tenant_id'],
      destination_id=row['destination_id'],
      credentials_ref=row['credentials_ref'],
      enabled=bool(row['enabled']),
      folder_path=row['folder_path'],
      last_backup_at=row['last_backup_at'],
      created_at=row['created_at'],
      updated_at=row['updated_at']
    )
