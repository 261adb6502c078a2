from __future__ import annotations

import sqlite3
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from filabackup.storage.database import Database, utc_now

SCHEMA = """
CREATE TABLE IF NOT EXISTS backup_records (
  id TEXT PRIMARY KEY,
  tenant_id INTEGER NOT NULL,
  destination_id TEXT NOT NULL,
  status TEXT NOT NULL CHECK (status IN ('pending', 'completed', 'failed')),
  started_at TEXT NOT NULL,
  completed_at TEXT,
  file_size_bytes INTEGER,
  error_message TEXT,
  error_kind TEXT,
  remote_id TEXT
);
CREATE INDEX IF NOT EXISTS idx_backup_records_tenant ON backup_records(tenant_id, destination_id, started_at);
"""

TERMINAL_STATUSES = ('completed', 'failed')


@dataclass
class BackupRecord:
  id: str
  tenant_id: int
  destination_id: str
  status: str
  started_at: str
  completed_at: Optional[str] = None
  file_size_bytes: Optional[int] = None
  error_message: Optional[str] = None
  error_kind: Optional[str] = None
  remote_id: Optional[str] = None

  def summary(self) -> Dict[str, Any]:
    return {
      'id': self.id,
      'provider': self.destination_id,
      'status': self.status,
      'startedAt': self.started_at,
      'completedAt': self.completed_at,
      'fileSize': self.file_size_bytes,
      'errorMessage': self.error_message,
      'errorKind': self.error_kind,
      'cloudFileId': self.remote_id
    }


class HistoryLedger:
  """Append-only log of backup attempts.

  A record is opened as ``pending`` and closed exactly once as ``completed`` or
  ``failed``. Terminal records are never reopened; the only deletion path is the
  retention policy applied by :meth:`prune`.
  """

  def __init__(self, db: Database, retention: int = 50) -> None:
    self.db = db
    self.retention = retention
    with self.db.connection() as conn:
      conn.executescript(SCHEMA)

  def open(self, tenant_id: int, destination_id: str) -> BackupRecord:
    record = BackupRecord(
      id=uuid.uuid4().hex,
      tenant_id=tenant_id,
      destination_id=destination_id,
      status='pending',
      started_at=utc_now()
    )
    with self.db.transaction() as conn:
      conn.execute(
        """
        INSERT INTO backup_records (id, tenant_id, destination_id, status, started_at)
        VALUES (:id, :tenant_id, :destination_id, :status, :started_at)
        """,
        asdict(record)
      )
    return record

  def complete(self, record_id: str, file_size_bytes: int, remote_id: Optional[str]) -> BackupRecord:
    return self._finalize(record_id, 'completed', file_size_bytes=file_size_bytes, remote_id=remote_id)

  def fail(
    self,
    record_id: str,
    error_message: str,
    error_kind: str,
    file_size_bytes: Optional[int] = None
  ) -> BackupRecord:
    return self._finalize(
      record_id,
      'failed',
      file_size_bytes=file_size_bytes,
      error_message=error_message,
      error_kind=error_kind
    )

  def _finalize(self, record_id: str, status: str, **fields: Any) -> BackupRecord:
    values = {
      'id': record_id,
      'status': status,
      'completed_at': utc_now(),
      'file_size_bytes': fields.get('file_size_bytes'),
      'error_message': fields.get('error_message'),
      'error_kind': fields.get('error_kind'),
      'remote_id': fields.get('remote_id')
    }
    with self.db.transaction() as conn:
      cursor = conn.execute(
        """
        UPDATE backup_records
        SET status = :status, completed_at = :completed_at, file_size_bytes = :file_size_bytes,
            error_message = :error_message, error_kind = :error_kind, remote_id = :remote_id
        WHERE id = :id AND status = 'pending'
        """,
        values
      )
      if cursor.rowcount == 0:
        raise ValueError(f'Backup record {record_id} is not pending')
      row = conn.execute("SELECT * FROM backup_records WHERE id = ?", (record_id,)).fetchone()
    return self._to_record(row)

  def get(self, record_id: str) -> Optional[BackupRecord]:
    with self.db.connection() as conn:
      row = conn.execute("SELECT * FROM backup_records WHERE id = ?", (record_id,)).fetchone()
    return self._to_record(row) if row else None

  def list(
    self,
    tenant_id: int,
    destination_id: Optional[str] = None,
    limit: Optional[int] = None
  ) -> List[BackupRecord]:
    """Newest first."""
    query = "SELECT * FROM backup_records WHERE tenant_id = ?"
    params: List[Any] = [tenant_id]
    if destination_id:
      query += " AND destination_id = ?"
      params.append(destination_id)
    query += " ORDER BY started_at DESC, rowid DESC"
    if limit:
      query += " LIMIT ?"
      params.append(limit)
    with self.db.connection() as conn:
      rows = conn.execute(query, tuple(params)).fetchall()
    return [self._to_record(row) for row in rows]

  def prune(self, tenant_id: int, destination_id: str) -> List[BackupRecord]:
    """Drop terminal records beyond the retention count; returns what was dropped."""
    if self.retention < 1:
      return []
    with self.db.transaction() as conn:
      rows = conn.execute(
        """
        SELECT * FROM backup_records
        WHERE tenant_id = ? AND destination_id = ? AND status IN ('completed', 'failed')
        ORDER BY started_at DESC, rowid DESC
        LIMIT -1 OFFSET ?
        """,
        (tenant_id, destination_id, self.retention)
      ).fetchall()
      conn.executemany("DELETE FROM backup_records WHERE id = ?", [(row['id'],) for row in rows])
    return [self._to_record(row) for row in rows]

  def _to_record(self, row: sqlite3.Row) -> BackupRecord:
    return BackupRecord(
      id=row['id'],
      tenant_id=row['tenant_id'],
      destination_id=row['destination_id'],
      status=row['status'],
      started_at=row['started_at'],
      completed_at=row['completed_at'],
      file_size_bytes=row['file_size_bytes'],
      error_message=row['error_message'],
      error_kind=row['error_kind'],
      remote_id=row['remote_id']
    )
