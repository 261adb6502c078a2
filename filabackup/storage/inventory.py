from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from filabackup.storage.database import Database, utc_now

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  username TEXT NOT NULL UNIQUE,
  password_hash TEXT NOT NULL,
  is_admin INTEGER NOT NULL DEFAULT 0,
  force_change_password INTEGER NOT NULL DEFAULT 1,
  created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS filaments (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
  name TEXT NOT NULL,
  manufacturer TEXT,
  material TEXT NOT NULL,
  color_name TEXT NOT NULL,
  color_code TEXT,
  diameter REAL,
  total_weight REAL NOT NULL,
  remaining_percentage REAL NOT NULL,
  purchase_date TEXT,
  purchase_price REAL,
  status TEXT,
  storage_location TEXT,
  image_path TEXT,
  notes TEXT
);
CREATE TABLE IF NOT EXISTS slicer_profiles (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
  filament_id INTEGER REFERENCES filaments(id) ON DELETE SET NULL,
  name TEXT NOT NULL,
  slicer TEXT NOT NULL,
  file_path TEXT,
  notes TEXT
);
CREATE TABLE IF NOT EXISTS filament_history (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
  filament_id INTEGER NOT NULL REFERENCES filaments(id) ON DELETE CASCADE,
  recorded_at TEXT NOT NULL,
  remaining_percentage REAL NOT NULL,
  note TEXT
);
CREATE TABLE IF NOT EXISTS print_jobs (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
  name TEXT NOT NULL,
  description TEXT,
  print_started_at TEXT,
  print_completed_at TEXT,
  estimated_duration INTEGER,
  actual_duration INTEGER,
  estimated_weight REAL,
  actual_weight REAL,
  status TEXT,
  failure_reason TEXT,
  gcode_filename TEXT,
  slicer_used TEXT,
  printer_used TEXT,
  notes TEXT,
  created_at TEXT
);
CREATE TABLE IF NOT EXISTS user_sharing (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
  material TEXT NOT NULL,
  is_public INTEGER NOT NULL DEFAULT 0
);
CREATE TABLE IF NOT EXISTS material_compatibility (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
  material_a TEXT NOT NULL,
  material_b TEXT NOT NULL,
  level TEXT NOT NULL,
  notes TEXT
);
CREATE TABLE IF NOT EXISTS user_settings (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id INTEGER NOT NULL UNIQUE REFERENCES users(id) ON DELETE CASCADE,
  language TEXT,
  currency TEXT,
  temperature_unit TEXT
);
"""


@dataclass(frozen=True)
class EntitySpec:
  """How one tenant-owned table is exported and matched on restore.

  ``fields`` is the archive field order. It starts with the archive-local ``id``
  and never includes ``user_id``. An empty ``natural_key`` marks a one-row-per-tenant
  entity. ``references`` maps a field to the entity whose archive ids it holds.
  """

  name: str
  table: str
  fields: Tuple[str, ...]
  natural_key: Tuple[str, ...]
  references: Mapping[str, str] = field(default_factory=dict)
  asset_field: Optional[str] = None

  @property
  def data_fields(self) -> Tuple[str, ...]:
    return tuple(name for name in self.fields if name != 'id')

  @property
  def required_fields(self) -> Tuple[str, ...]:
    return ('id',) + tuple(self.natural_key) + tuple(k for k in self.references if k not in self.natural_key)


ENTITY_SPECS: Tuple[EntitySpec, ...] = (
  EntitySpec(
    name='items',
    table='filaments',
    fields=(
      'id', 'name', 'manufacturer', 'material', 'color_name', 'color_code', 'diameter',
      'total_weight', 'remaining_percentage', 'purchase_date', 'purchase_price', 'status',
      'storage_location', 'image_path', 'notes'
    ),
    natural_key=('name', 'manufacturer', 'material', 'color_name', 'purchase_date'),
    asset_field='image_path'
  ),
  EntitySpec(
    name='profiles',
    table='slicer_profiles',
    fields=('id', 'filament_id', 'name', 'slicer', 'file_path', 'notes'),
    natural_key=('name', 'slicer'),
    references={'filament_id': 'items'},
    asset_field='file_path'
  ),
  EntitySpec(
    name='usage_history',
    table='filament_history',
    fields=('id', 'filament_id', 'recorded_at', 'remaining_percentage', 'note'),
    natural_key=('filament_id', 'recorded_at'),
    references={'filament_id': 'items'}
  ),
  EntitySpec(
    name='print_jobs',
    table='print_jobs',
    fields=(
      'id', 'name', 'description', 'print_started_at', 'print_completed_at', 'estimated_duration',
      'actual_duration', 'estimated_weight', 'actual_weight', 'status', 'failure_reason',
      'gcode_filename', 'slicer_used', 'printer_used', 'notes', 'created_at'
    ),
    natural_key=('name', 'print_started_at')
  ),
  EntitySpec(
    name='sharing',
    table='user_sharing',
    fields=('id', 'material', 'is_public'),
    natural_key=('material',)
  ),
  EntitySpec(
    name='compatibility',
    table='material_compatibility',
    fields=('id', 'material_a', 'material_b', 'level', 'notes'),
    natural_key=('material_a', 'material_b')
  ),
  EntitySpec(
    name='user_settings',
    table='user_settings',
    fields=('id', 'language', 'currency', 'temperature_unit'),
    natural_key=()
  ),
)

SPECS_BY_NAME: Dict[str, EntitySpec] = {spec.name: spec for spec in ENTITY_SPECS}

ACCOUNT_FIELDS = ('username', 'is_admin', 'created_at')


class InventoryStore:
  """Tenant-scoped access to the inventory tables the backup core touches."""

  def __init__(self, db_path: Path, assets_root: Path) -> None:
    self.db = Database(db_path, SCHEMA)
    self.assets_root = Path(assets_root)

  # Reads run on a connection the caller holds inside Database.snapshot().

  def count_rows(self, conn: sqlite3.Connection, spec: EntitySpec, tenant_id: int) -> int:
    row = conn.execute(f"SELECT COUNT(*) AS n FROM {spec.table} WHERE user_id = ?", (tenant_id,)).fetchone()
    return int(row['n'])

  def read_rows(self, conn: sqlite3.Connection, spec: EntitySpec, tenant_id: int) -> List[List[Any]]:
    columns = ', '.join(spec.fields)
    rows = conn.execute(
      f"SELECT {columns} FROM {spec.table} WHERE user_id = ? ORDER BY id",
      (tenant_id,)
    ).fetchall()
    return [list(row) for row in rows]

  def list_accounts(self, conn: sqlite3.Connection) -> List[sqlite3.Row]:
    columns = ', '.join(('id',) + ACCOUNT_FIELDS)
    return conn.execute(f"SELECT {columns} FROM users ORDER BY id").fetchall()

  def find_account(self, conn: sqlite3.Connection, username: str) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM users WHERE username = ?", (username,)).fetchone()

  def get_account(self, tenant_id: int) -> Optional[sqlite3.Row]:
    with self.db.connection() as conn:
      return conn.execute("SELECT * FROM users WHERE id = ?", (tenant_id,)).fetchone()

  # Writes run on a connection the caller holds inside Database.transaction().

  def create_account(
    self,
    conn: sqlite3.Connection,
    username: str,
    password_hash: str,
    is_admin: bool = False,
    force_change_password: bool = True,
    created_at: Optional[str] = None
  ) -> int:
    cursor = conn.execute(
      """
      INSERT INTO users (username, password_hash, is_admin, force_change_password, created_at)
      VALUES (?, ?, ?, ?, ?)
      """,
      (username, password_hash, int(is_admin), int(force_change_password), created_at or utc_now())
    )
    return int(cursor.lastrowid)

  def find_match(
    self,
    conn: sqlite3.Connection,
    spec: EntitySpec,
    tenant_id: int,
    values: Mapping[str, Any]
  ) -> Optional[int]:
    clauses = ['user_id = ?']
    params: List[Any] = [tenant_id]
    for name in spec.natural_key:
      # IS matches NULL against NULL, which natural keys with optional parts need.
      clauses.append(f'{name} IS ?')
      params.append(values.get(name))
    row = conn.execute(
      f"SELECT id FROM {spec.table} WHERE {' AND '.join(clauses)} ORDER BY id LIMIT 1",
      tuple(params)
    ).fetchone()
    return int(row['id']) if row else None

  def insert_record(
    self,
    conn: sqlite3.Connection,
    spec: EntitySpec,
    tenant_id: int,
    values: Mapping[str, Any]
  ) -> int:
    names: Sequence[str] = [name for name in spec.data_fields if name in values]
    columns = ', '.join(['user_id', *names])
    placeholders = ', '.join('?' for _ in range(len(names) + 1))
    cursor = conn.execute(
      f"INSERT INTO {spec.table} ({columns}) VALUES ({placeholders})",
      (tenant_id, *(values[name] for name in names))
    )
    return int(cursor.lastrowid)
