from __future__ import annotations

import logging
import sqlite3
import zipfile
from contextlib import nullcontext
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, ContextManager, Dict, List, Mapping, Optional, Tuple

from argon2 import PasswordHasher

from filabackup.errors import BackupError, ValidationError
from filabackup.snapshot.archive import (
  ACCOUNTS_ENTITY,
  ACCOUNTS_MEMBER,
  Manifest,
  TenantSection,
  entity_member,
  normalize_asset_path,
  open_archive,
  read_json_member,
  read_manifest,
  tenant_prefix
)
from filabackup.storage.inventory import ENTITY_SPECS, SPECS_BY_NAME, EntitySpec, InventoryStore

logger = logging.getLogger(__name__)

SCALAR_TYPES = (str, int, float, bool, type(None))

UnitGuard = Callable[[Optional[int]], ContextManager[Any]]


@dataclass(frozen=True)
class RestoreReport:
  restored_counts: Mapping[str, int]
  created_users: int = 0
  note: str = ''
  failed_tenants: Mapping[str, str] = field(default_factory=dict)

  def __post_init__(self) -> None:
    object.__setattr__(self, 'restored_counts', MappingProxyType(dict(self.restored_counts)))
    object.__setattr__(self, 'failed_tenants', MappingProxyType(dict(self.failed_tenants)))

  def to_dict(self) -> Dict[str, Any]:
    return {
      'restoredCounts': dict(self.restored_counts),
      'createdUsers': self.created_users,
      'note': self.note,
      'failedTenants': dict(self.failed_tenants)
    }


@dataclass
class EntityPayload:
  spec: EntitySpec
  records: List[Dict[str, Any]]


@dataclass
class UnitPayload:
  username: str
  entities: List[EntityPayload]
  assets: Dict[str, bytes]


class SnapshotRestorer:
  """Validates archives and merges them into live inventory storage.

  Merging is insert-only. Incoming records are matched on their natural key; a
  match is left untouched and only unmatched records are inserted, with archive
  foreign keys remapped to live ids. Each scope-unit (the single tenant of a user
  restore, or each tenant of an admin restore) commits or rolls back on its own.
  """

  def __init__(
    self,
    inventory: InventoryStore,
    placeholder_password: str,
    password_hasher: Optional[PasswordHasher] = None
  ) -> None:
    self.inventory = inventory
    self.placeholder_password = placeholder_password
    self.password_hasher = password_hasher or PasswordHasher()

  def inspect(self, data: bytes, scope: str) -> Tuple[zipfile.ZipFile, Manifest]:
    """Structural checks that run before anything is written."""
    zf = open_archive(data)
    manifest = read_manifest(zf)
    if manifest.scope != scope:
      raise ValidationError(f'Archive was exported with {manifest.scope} scope, not {scope} scope')
    if scope == 'user' and len(manifest.tenants) != 1:
      raise ValidationError('A user archive must contain exactly one tenant section')
    usernames = [tenant.username for tenant in manifest.tenants]
    if len(set(usernames)) != len(usernames):
      raise ValidationError('Manifest lists a tenant more than once')
    if scope == 'admin' and manifest.entity_counts.get(ACCOUNTS_ENTITY) != len(manifest.tenants):
      raise ValidationError('Manifest account total disagrees with its tenant sections')
    names = set(manifest.entity_counts)
    for tenant in manifest.tenants:
      names.update(tenant.entity_counts)
    if scope == 'admin':
      names.discard(ACCOUNTS_ENTITY)
    for name in sorted(names):
      if name not in SPECS_BY_NAME:
        raise ValidationError(f'Manifest lists unknown entity {name!r}')
      total = manifest.entity_counts.get(name, 0)
      per_tenant = sum(tenant.entity_counts.get(name, 0) for tenant in manifest.tenants)
      if per_tenant != total:
        raise ValidationError(f'Manifest total for {name} ({total}) disagrees with per-tenant counts ({per_tenant})')
    if manifest.asset_count != sum(tenant.asset_count for tenant in manifest.tenants):
      raise ValidationError('Manifest asset total disagrees with per-tenant asset counts')
    return zf, manifest

  def restore_user(self, data: bytes, tenant_id: int) -> RestoreReport:
    zf, manifest = self.inspect(data, 'user')
    with zf:
      unit = self._load_unit(zf, manifest.tenants[0])
      written: List[Path] = []
      try:
        with self.inventory.db.transaction() as conn:
          counts = self._apply_unit(conn, tenant_id, unit, written)
      except sqlite3.Error as exc:
        self._remove_written(written)
        raise ValidationError(f'Archive records were rejected by the database: {exc}') from exc
      except OSError as exc:
        self._remove_written(written)
        raise ValidationError(f'Archive assets could not be written: {exc}') from exc
      except BaseException:
        self._remove_written(written)
        raise
    logger.info('User restore into tenant %s inserted %s', tenant_id, counts)
    return RestoreReport(
      restored_counts=counts,
      note='Backup merged into your account. Existing records were kept unchanged. Please sign in again.'
    )

  def restore_admin(self, data: bytes, unit_guard: Optional[UnitGuard] = None) -> RestoreReport:
    zf, manifest = self.inspect(data, 'admin')
    totals = {spec.name: 0 for spec in ENTITY_SPECS}
    failed: Dict[str, str] = {}
    created_users = 0
    with zf:
      accounts = self._load_accounts(zf, manifest)
      for section in manifest.tenants:
        username = section.username
        written: List[Path] = []
        try:
          unit = self._load_unit(zf, section)
          with self.inventory.db.connection() as conn:
            existing = self.inventory.find_account(conn, username)
          guard = unit_guard(existing['id'] if existing else None) if unit_guard else nullcontext()
          with guard:
            with self.inventory.db.transaction() as conn:
              account = self.inventory.find_account(conn, username)
              created = account is None
              if created:
                tenant_id = self._create_placeholder_account(conn, username, accounts[username])
              else:
                tenant_id = account['id']
              counts = self._apply_unit(conn, tenant_id, unit, written)
        except (BackupError, sqlite3.Error, OSError) as exc:
          self._remove_written(written)
          if isinstance(exc, BackupError):
            reason = exc.message
          elif isinstance(exc, sqlite3.Error):
            reason = f'Database rejected records: {exc}'
          else:
            reason = f'Assets could not be written: {exc}'
          failed[username] = reason
          logger.warning('Admin restore rolled back tenant %s: %s', username, reason)
          continue
        except BaseException:
          self._remove_written(written)
          raise
        created_users += int(created)
        for name, count in counts.items():
          totals[name] += count
    note = (
      'Backup merged into the instance. Existing records were kept unchanged. '
      'Accounts created by the restore must change their temporary password at next sign-in.'
    )
    if failed:
      note += f' {len(failed)} tenant(s) were rolled back; see failed_tenants.'
    logger.info('Admin restore inserted %s, created %s account(s), %s failed', totals, created_users, len(failed))
    return RestoreReport(restored_counts=totals, created_users=created_users, note=note, failed_tenants=failed)

  def _load_accounts(self, zf: zipfile.ZipFile, manifest: Manifest) -> Dict[str, Dict[str, Any]]:
    payload = read_json_member(zf, ACCOUNTS_MEMBER)
    rows = self._records(payload, ACCOUNTS_ENTITY, ('username',))
    accounts = {}
    for row in rows:
      if not isinstance(row['username'], str) or not row['username']:
        raise ValidationError('Account records need a username')
      accounts[row['username']] = row
    missing = [tenant.username for tenant in manifest.tenants if tenant.username not in accounts]
    if missing or len(accounts) != len(manifest.tenants):
      raise ValidationError('Account records disagree with the manifest tenant sections')
    return accounts

  def _load_unit(self, zf: zipfile.ZipFile, section: TenantSection) -> UnitPayload:
    entities = []
    asset_refs = set()
    for spec in ENTITY_SPECS:
      payload = read_json_member(zf, entity_member(section.username, spec.name))
      rows = self._records(payload, spec.name, spec.required_fields)
      expected = section.entity_counts.get(spec.name, 0)
      if len(rows) != expected:
        raise ValidationError(f'{section.username}/{spec.name} holds {len(rows)} records, manifest says {expected}')
      ids = [row['id'] for row in rows]
      if any(not isinstance(value, int) or isinstance(value, bool) for value in ids) or len(set(ids)) != len(ids):
        raise ValidationError(f'{section.username}/{spec.name} record ids must be unique integers')
      if spec.asset_field:
        for row in rows:
          if row.get(spec.asset_field) is not None:
            asset_refs.add(normalize_asset_path(row[spec.asset_field]))
      entities.append(EntityPayload(spec=spec, records=rows))
    prefix = tenant_prefix(section.username) + 'assets/'
    members = {name[len(prefix):]: name for name in zf.namelist() if name.startswith(prefix) and not name.endswith('/')}
    if len(members) != section.asset_count:
      raise ValidationError(f'{section.username} carries {len(members)} asset(s), manifest says {section.asset_count}')
    assets: Dict[str, bytes] = {}
    for relative, member in members.items():
      path = normalize_asset_path(relative)
      if path not in asset_refs:
        continue
      try:
        assets[path] = zf.read(member)
      except (zipfile.BadZipFile, OSError) as exc:
        raise ValidationError(f'Asset {member} is corrupt: {exc}') from exc
    return UnitPayload(username=section.username, entities=entities, assets=assets)

  def _records(self, payload: Any, entity: str, required: Tuple[str, ...]) -> List[Dict[str, Any]]:
    if not isinstance(payload, dict) or payload.get('entity') != entity:
      raise ValidationError(f'Entity file for {entity} is malformed')
    fields = payload.get('fields')
    records = payload.get('records')
    if not isinstance(fields, list) or not all(isinstance(name, str) for name in fields):
      raise ValidationError(f'Entity file for {entity} has no field list')
    if len(set(fields)) != len(fields):
      raise ValidationError(f'Entity file for {entity} repeats a field')
    missing = [name for name in required if name not in fields]
    if missing:
      raise ValidationError(f"Entity file for {entity} lacks required fields: {', '.join(missing)}")
    if not isinstance(records, list):
      raise ValidationError(f'Entity file for {entity} has no record list')
    rows = []
    for record in records:
      if not isinstance(record, list) or len(record) != len(fields):
        raise ValidationError(f'{entity} record does not match its field list')
      if not all(isinstance(value, SCALAR_TYPES) for value in record):
        raise ValidationError(f'{entity} record holds a non-scalar value')
      rows.append(dict(zip(fields, record)))
    return rows

  def _apply_unit(
    self,
    conn: sqlite3.Connection,
    tenant_id: int,
    unit: UnitPayload,
    written: List[Path]
  ) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    id_maps: Dict[str, Dict[int, int]] = {}
    for entity in unit.entities:
      spec = entity.spec
      id_map = id_maps.setdefault(spec.name, {})
      inserted = 0
      for record in entity.records:
        values = {name: value for name, value in record.items() if name in spec.data_fields}
        for ref_field, target in spec.references.items():
          archive_ref = values.get(ref_field)
          if archive_ref is None:
            continue
          if archive_ref not in id_maps.get(target, {}):
            raise ValidationError(f'{unit.username}/{spec.name} references missing {target} id {archive_ref}')
          values[ref_field] = id_maps[target][archive_ref]
        live_id = self.inventory.find_match(conn, spec, tenant_id, values)
        if live_id is None:
          live_id = self.inventory.insert_record(conn, spec, tenant_id, values)
          inserted += 1
        id_map[record['id']] = live_id
      counts[spec.name] = inserted
    self._write_assets(unit, written)
    return counts

  def _write_assets(self, unit: UnitPayload, written: List[Path]) -> None:
    root = self.inventory.assets_root.resolve()
    for relative, content in sorted(unit.assets.items()):
      target = root / relative
      if target.exists():
        continue
      target.parent.mkdir(parents=True, exist_ok=True)
      written.append(target)
      target.write_bytes(content)

  def _create_placeholder_account(self, conn: sqlite3.Connection, username: str, account: Dict[str, Any]) -> int:
    tenant_id = self.inventory.create_account(
      conn,
      username,
      self.password_hasher.hash(self.placeholder_password),
      is_admin=bool(account.get('is_admin')),
      force_change_password=True,
      created_at=account.get('created_at') if isinstance(account.get('created_at'), str) else None
    )
    logger.info('Created account %s with a placeholder password', username)
    return tenant_id

  def _remove_written(self, written: List[Path]) -> None:
    for path in written:
      try:
        path.unlink(missing_ok=True)
      except OSError as exc:
        logger.warning('Could not remove restored asset %s: %s', path, exc)
