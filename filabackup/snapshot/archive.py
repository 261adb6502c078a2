"""Snapshot archive layout.

An archive is a zip container::

  manifest.json
  accounts.json                         (admin scope only)
  tenants/<username>/<entity>.json
  tenants/<username>/assets/<path>

Entity members hold ``{"entity", "fields", "records"}`` with records as row arrays
in ``fields`` order. Members are written in sorted order with a fixed timestamp so
unchanged data yields byte-identical entity members across backups.
"""

from __future__ import annotations

import io
import json
import zipfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from filabackup.errors import UnsupportedFormat, ValidationError

FORMAT_VERSION = 1
SCOPES = ('user', 'admin')
MANIFEST_MEMBER = 'manifest.json'
ACCOUNTS_MEMBER = 'accounts.json'
ACCOUNTS_ENTITY = 'accounts'
FIXED_DATE_TIME = (1980, 1, 1, 0, 0, 0)


def archive_filename(scope: str, now: Optional[datetime] = None) -> str:
  stamp = (now or datetime.now(timezone.utc)).strftime('%Y%m%dT%H%M%SZ')
  return f'filabackup-{scope}-{stamp}.zip'


def tenant_prefix(username: str) -> str:
  return f'tenants/{username}/'


def entity_member(username: str, entity: str) -> str:
  return f'{tenant_prefix(username)}{entity}.json'


def asset_member(username: str, path: str) -> str:
  return f'{tenant_prefix(username)}assets/{path}'


def normalize_asset_path(value: Any) -> str:
  """Relative slash path of an asset under the assets root; rejects traversal."""
  if not isinstance(value, str) or not value.strip():
    raise ValidationError(f'Asset path {value!r} is not a string')
  path = value.strip().replace('\\', '/')
  parts = [part for part in path.split('/') if part and part != '.']
  if path.startswith('/') or not parts or '..' in parts or ':' in parts[0]:
    raise ValidationError(f'Asset path {value!r} escapes the assets directory')
  return '/'.join(parts)


def dump_json(payload: Any) -> bytes:
  return json.dumps(payload, indent=2, ensure_ascii=False).encode('utf-8')


@dataclass
class TenantSection:
  username: str
  entity_counts: Dict[str, int] = field(default_factory=dict)
  asset_count: int = 0

  def to_dict(self) -> Dict[str, Any]:
    return {'username': self.username, 'entityCounts': self.entity_counts, 'assetCount': self.asset_count}


@dataclass
class Manifest:
  format_version: int
  created_at: str
  scope: str
  entity_counts: Dict[str, int]
  asset_count: int
  tenants: List[TenantSection]

  def to_dict(self) -> Dict[str, Any]:
    return {
      'formatVersion': self.format_version,
      'createdAt': self.created_at,
      'scope': self.scope,
      'entityCounts': self.entity_counts,
      'assetCount': self.asset_count,
      'tenants': [tenant.to_dict() for tenant in self.tenants]
    }

  @classmethod
  def from_dict(cls, payload: Any) -> 'Manifest':
    if not isinstance(payload, dict):
      raise ValidationError('Manifest must be a JSON object')
    version = payload.get('formatVersion')
    if not isinstance(version, int) or isinstance(version, bool) or version < 1:
      raise ValidationError('Manifest formatVersion is missing or invalid')
    if version > FORMAT_VERSION:
      raise UnsupportedFormat(
        f'Archive format version {version} is newer than the supported version {FORMAT_VERSION}'
      )
    scope = payload.get('scope')
    if scope not in SCOPES:
      raise ValidationError(f'Manifest scope {scope!r} is not recognised')
    created_at = payload.get('createdAt')
    if not isinstance(created_at, str):
      raise ValidationError('Manifest createdAt is missing')
    tenants_payload = payload.get('tenants')
    if not isinstance(tenants_payload, list):
      raise ValidationError('Manifest tenants must be a list')
    tenants = []
    for entry in tenants_payload:
      if not isinstance(entry, dict) or not isinstance(entry.get('username'), str) or not entry['username']:
        raise ValidationError('Manifest tenant entries need a username')
      if '/' in entry['username']:
        raise ValidationError(f"Manifest username {entry['username']!r} is not a valid archive path segment")
      tenants.append(TenantSection(
        username=entry['username'],
        entity_counts=_counts(entry.get('entityCounts'), 'tenant entityCounts'),
        asset_count=_count(entry.get('assetCount', 0), 'tenant assetCount')
      ))
    return cls(
      format_version=version,
      created_at=created_at,
      scope=scope,
      entity_counts=_counts(payload.get('entityCounts'), 'entityCounts'),
      asset_count=_count(payload.get('assetCount', 0), 'assetCount'),
      tenants=tenants
    )


def _count(value: Any, label: str) -> int:
  if not isinstance(value, int) or isinstance(value, bool) or value < 0:
    raise ValidationError(f'Manifest {label} must be a non-negative integer')
  return value


def _counts(value: Any, label: str) -> Dict[str, int]:
  if not isinstance(value, dict):
    raise ValidationError(f'Manifest {label} must be an object')
  return {str(name): _count(count, f'{label}.{name}') for name, count in value.items()}


def write_archive(members: Mapping[str, bytes]) -> bytes:
  buffer = io.BytesIO()
  with zipfile.ZipFile(buffer, 'w', compression=zipfile.ZIP_DEFLATED) as zf:
    for name in sorted(members):
      info = zipfile.ZipInfo(name, date_time=FIXED_DATE_TIME)
      info.compress_type = zipfile.ZIP_DEFLATED
      info.external_attr = 0o644 << 16
      zf.writestr(info, members[name])
  return buffer.getvalue()


def open_archive(data: bytes) -> zipfile.ZipFile:
  try:
    return zipfile.ZipFile(io.BytesIO(data))
  except zipfile.BadZipFile as exc:
    raise ValidationError('Uploaded file is not a valid zip archive') from exc


def read_json_member(zf: zipfile.ZipFile, name: str) -> Any:
  try:
    raw = zf.read(name)
  except KeyError as exc:
    raise ValidationError(f'Archive member {name} is missing') from exc
  except (zipfile.BadZipFile, OSError) as exc:
    raise ValidationError(f'Archive member {name} is corrupt: {exc}') from exc
  try:
    return json.loads(raw.decode('utf-8'))
  except (UnicodeDecodeError, json.JSONDecodeError) as exc:
    raise ValidationError(f'Archive member {name} is not valid JSON: {exc}') from exc


def read_manifest(zf: zipfile.ZipFile) -> Manifest:
  return Manifest.from_dict(read_json_member(zf, MANIFEST_MEMBER))
