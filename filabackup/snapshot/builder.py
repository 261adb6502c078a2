from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from filabackup.errors import BackupError, NotFound, ValidationError
from filabackup.snapshot.archive import (
  ACCOUNTS_ENTITY,
  ACCOUNTS_MEMBER,
  FORMAT_VERSION,
  MANIFEST_MEMBER,
  Manifest,
  TenantSection,
  archive_filename,
  asset_member,
  dump_json,
  entity_member,
  normalize_asset_path,
  write_archive
)
from filabackup.storage.database import utc_now
from filabackup.storage.inventory import ACCOUNT_FIELDS, ENTITY_SPECS, InventoryStore

logger = logging.getLogger(__name__)


@dataclass
class SnapshotArchive:
  filename: str
  data: bytes
  manifest: Manifest

  @property
  def size_bytes(self) -> int:
    return len(self.data)


class SnapshotBuilder:
  """Serialises one tenant, or every tenant for admin scope, into an archive."""

  def __init__(self, inventory: InventoryStore) -> None:
    self.inventory = inventory

  def build(self, scope: str, tenant_id: Optional[int] = None) -> SnapshotArchive:
    if scope not in ('user', 'admin'):
      raise ValueError(f'Unknown snapshot scope: {scope}')
    members: Dict[str, bytes] = {}
    sections: List[TenantSection] = []
    asset_refs: Dict[str, Set[str]] = {}

    # Counts and rows come from the same WAL snapshot, so concurrent writers
    # can neither block the export nor make it internally inconsistent.
    with self.inventory.db.snapshot() as conn:
      accounts = self.inventory.list_accounts(conn)
      if scope == 'user':
        accounts = [account for account in accounts if account['id'] == tenant_id]
        if not accounts:
          raise NotFound(f'Tenant {tenant_id} does not exist')
      for account in accounts:
        username = account['username']
        counts = {spec.name: self.inventory.count_rows(conn, spec, account['id']) for spec in ENTITY_SPECS}
        refs: Set[str] = set()
        for spec in ENTITY_SPECS:
          rows = self.inventory.read_rows(conn, spec, account['id'])
          if len(rows) != counts[spec.name]:
            raise BackupError(f'{spec.name} changed while the snapshot was being read')
          members[entity_member(username, spec.name)] = dump_json({
            'entity': spec.name,
            'fields': list(spec.fields),
            'records': rows
          })
          if spec.asset_field:
            index = spec.fields.index(spec.asset_field)
            refs.update(row[index] for row in rows if row[index])
        sections.append(TenantSection(username=username, entity_counts=counts))
        asset_refs[username] = refs
      if scope == 'admin':
        members[ACCOUNTS_MEMBER] = dump_json({
          'entity': ACCOUNTS_ENTITY,
          'fields': list(ACCOUNT_FIELDS),
          'records': [[account[name] for name in ACCOUNT_FIELDS] for account in accounts]
        })

    for section in sections:
      section.asset_count = self._collect_assets(section.username, asset_refs[section.username], members)

    totals = {spec.name: sum(section.entity_counts[spec.name] for section in sections) for spec in ENTITY_SPECS}
    if scope == 'admin':
      totals[ACCOUNTS_ENTITY] = len(sections)
    manifest = Manifest(
      format_version=FORMAT_VERSION,
      created_at=utc_now(),
      scope=scope,
      entity_counts=totals,
      asset_count=sum(section.asset_count for section in sections),
      tenants=sections
    )
    members[MANIFEST_MEMBER] = dump_json(manifest.to_dict())
    archive = SnapshotArchive(filename=archive_filename(scope), data=write_archive(members), manifest=manifest)
    logger.info(
      'Built %s snapshot %s: %s tenant(s), %s asset(s), %s bytes',
      scope,
      archive.filename,
      len(sections),
      manifest.asset_count,
      archive.size_bytes
    )
    return archive

  def _collect_assets(self, username: str, refs: Set[str], members: Dict[str, bytes]) -> int:
    root = self.inventory.assets_root.resolve()
    added = 0
    for ref in sorted(refs):
      try:
        relative = normalize_asset_path(ref)
      except ValidationError:
        logger.warning('Skipping asset with unsafe path %r for %s', ref, username)
        continue
      source = root / relative
      if not source.is_file():
        logger.warning('Asset %s for %s is missing on disk; skipping', relative, username)
        continue
      members[asset_member(username, relative)] = source.read_bytes()
      added += 1
    return added
