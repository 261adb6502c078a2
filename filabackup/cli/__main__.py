from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from filabackup.config import settings

logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

DESTINATIONS = ('google', 'dropbox', 'onedrive', 's3', 'webdav', 'local')


def build_services():
  from filabackup.api.globals import build_services as build
  return build(settings)


def parse_global_args() -> argparse.ArgumentParser:
  parser = argparse.ArgumentParser(prog='filabackup', description='Filament inventory backup CLI')
  sub = parser.add_subparsers(dest='command', required=True)

  p_status = sub.add_parser('status', help='Show destination status for a tenant')
  p_status.add_argument('--tenant', type=int, required=True)
  p_status.add_argument('--json', action='store_true')

  p_backup = sub.add_parser('backup', help='Run a backup to one destination now')
  p_backup.add_argument('--tenant', type=int, required=True)
  p_backup.add_argument('--destination', required=True, choices=DESTINATIONS)
  p_backup.add_argument('--json', action='store_true')

  p_export = sub.add_parser('export', help='Write a snapshot archive to a local file')
  p_export.add_argument('--tenant', type=int, required=True)
  p_export.add_argument('--scope', choices=['user', 'admin'], default='user')
  p_export.add_argument('--out', required=True, help='Target file or directory')

  p_restore = sub.add_parser('restore', help='Merge a snapshot archive into live data')
  p_restore.add_argument('--tenant', type=int, required=True)
  p_restore.add_argument('--archive', required=True)
  p_restore.add_argument('--scope', choices=['user', 'admin'], default='user')
  p_restore.add_argument('--yes', action='store_true', help='Confirm the restore')
  p_restore.add_argument('--json', action='store_true')

  p_history = sub.add_parser('history', help='List recent backup attempts')
  p_history.add_argument('--tenant', type=int, required=True)
  p_history.add_argument('--destination', choices=DESTINATIONS)
  p_history.add_argument('--limit', type=int, default=50)
  p_history.add_argument('--json', action='store_true')

  return parser


def _principal(services, tenant_id: int):
  from filabackup.auth.sessions import Principal
  account = services.inventory.get_account(tenant_id)
  if not account:
    return None
  return Principal(tenant_id=tenant_id, is_admin=bool(account['is_admin']), token='')


def cmd_status(services, tenant_id: int, as_json: bool) -> int:
  status = services.orchestrator.status(tenant_id)
  if as_json:
    print(json.dumps(status, indent=2))
    return 0
  for destination, entry in status.items():
    state = 'unconfigured'
    if entry['configured']:
      state = 'enabled' if entry['enabled'] else 'disabled'
    print(f"{destination:<9} {state:<13} last backup: {entry['lastBackup'] or 'never'}")
  return 0


def cmd_backup(services, tenant_id: int, destination: str, as_json: bool) -> int:
  record = services.orchestrator.backup_now(tenant_id, destination)
  if as_json:
    print(json.dumps(record.summary(), indent=2))
  elif record.status == 'completed':
    print(f'Backup {record.id} completed: {record.file_size_bytes} bytes ({record.remote_id})')
  else:
    print(f'Backup {record.id} failed [{record.error_kind}]: {record.error_message}', file=sys.stderr)
  return 0 if record.status == 'completed' else 1


def cmd_export(services, tenant_id: int, scope: str, out: str) -> int:
  principal = _principal(services, tenant_id)
  if not principal:
    print(f'Tenant {tenant_id} not found.', file=sys.stderr)
    return 2
  archive = services.orchestrator.download_snapshot(principal, scope)
  target = Path(out)
  if target.is_dir():
    target = target / archive.filename
  target.write_bytes(archive.data)
  print(f'Wrote {archive.size_bytes} bytes to {target}')
  return 0


def cmd_restore(services, tenant_id: int, archive_path: str, scope: str, confirm: bool, as_json: bool) -> int:
  if not confirm:
    print('Restore merges the archive into live data; re-run with --yes to proceed.', file=sys.stderr)
    return 2
  principal = _principal(services, tenant_id)
  if not principal:
    print(f'Tenant {tenant_id} not found.', file=sys.stderr)
    return 2
  report = services.orchestrator.restore(principal, Path(archive_path).read_bytes(), scope, confirm=True)
  if as_json:
    print(json.dumps(report.to_dict(), indent=2))
    return 0
  for entity, count in report.restored_counts.items():
    print(f'{entity:<15} {count} inserted')
  if scope == 'admin':
    print(f'accounts created: {report.created_users}')
  for username, reason in report.failed_tenants.items():
    print(f'rolled back {username}: {reason}', file=sys.stderr)
  print(report.note)
  return 0


def cmd_history(services, tenant_id: int, destination: Optional[str], limit: int, as_json: bool) -> int:
  records = services.orchestrator.history_for(tenant_id, destination_id=destination, limit=limit)
  if as_json:
    print(json.dumps([record.summary() for record in records], indent=2))
    return 0
  if not records:
    print('No backups recorded.')
  for record in records:
    detail = f'{record.file_size_bytes} bytes' if record.status == 'completed' else (record.error_message or '')
    print(f'{record.started_at}  {record.destination_id:<9} {record.status:<10} {detail}')
  return 0


def main(argv: Optional[List[str]] = None) -> int:
  from filabackup.errors import BackupError

  parser = parse_global_args()
  ns = parser.parse_args(argv)
  cmd = ns.command
  services = build_services()
  try:
    if cmd == 'status':
      return cmd_status(services, ns.tenant, ns.json)
    if cmd == 'backup':
      return cmd_backup(services, ns.tenant, ns.destination, ns.json)
    if cmd == 'export':
      return cmd_export(services, ns.tenant, ns.scope, ns.out)
    if cmd == 'restore':
      return cmd_restore(services, ns.tenant, ns.archive, ns.scope, ns.yes, ns.json)
    if cmd == 'history':
      return cmd_history(services, ns.tenant, ns.destination, ns.limit, ns.json)
  except BackupError as exc:
    print(f'{exc.kind}: {exc.message}', file=sys.stderr)
    return 2
  return 1


if __name__ == '__main__':
  raise SystemExit(main())
