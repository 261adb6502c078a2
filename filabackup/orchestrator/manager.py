from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple

from filabackup.auth.sessions import Principal, SessionStore
from filabackup.config import Settings
from filabackup.destinations.base import DestinationAdapter, RemoteRef, join_remote_path
from filabackup.destinations.oauth import OAuthDriveAdapter
from filabackup.errors import (
  BackupError,
  BackupInProgress,
  ConfigInvalid,
  ConfirmationRequired,
  DestinationError,
  Forbidden,
  NotFound,
  RestoreInProgress,
  ValidationError
)
from filabackup.logging.event_logger import EventLogger
from filabackup.orchestrator.oauth_state import OAuthStateStore
from filabackup.orchestrator.retry import TransferRetry
from filabackup.snapshot.builder import SnapshotArchive, SnapshotBuilder
from filabackup.snapshot.restorer import RestoreReport, SnapshotRestorer
from filabackup.storage.credentials import CredentialRecord, CredentialStore
from filabackup.storage.destinations import DESTINATION_IDS, OAUTH_DESTINATIONS, DestinationConfig, DestinationConfigStore
from filabackup.storage.history import BackupRecord, HistoryLedger
from filabackup.storage.leases import INSTANCE_RESTORE_KEY, LeaseConflict, LeaseManager, backup_key, restore_key

logger = logging.getLogger(__name__)


@dataclass
class FetchedBackup:
  filename: str
  data: bytes


class BackupOrchestrator:
  """Drives destination configuration, backups and restores for every tenant.

  Destinations move ``unconfigured -> enabled <-> disabled -> unconfigured``.
  ``enabled`` only gates scheduled use; a manual backup runs from either
  configured state. Backups of one (tenant, destination) pair are serialised by a
  lease; restores take tenant or instance leases that exclude those backups.
  """

  def __init__(
    self,
    settings: Settings,
    credentials: CredentialStore,
    destinations: DestinationConfigStore,
    history: HistoryLedger,
    leases: LeaseManager,
    sessions: SessionStore,
    adapters: Dict[str, DestinationAdapter],
    builder: SnapshotBuilder,
    restorer: SnapshotRestorer,
    oauth_states: OAuthStateStore,
    retry: TransferRetry,
    event_logger: Optional[EventLogger] = None
  ) -> None:
    self.settings = settings
    self.credentials = credentials
    self.destinations = destinations
    self.history = history
    self.leases = leases
    self.sessions = sessions
    self.adapters = adapters
    self.builder = builder
    self.restorer = restorer
    self.oauth_states = oauth_states
    self.retry = retry
    self._event_logger = event_logger

  # -- status ---------------------------------------------------------------

  def status(self, tenant_id: int) -> Dict[str, Dict[str, Any]]:
    configs = self.destinations.list_for_tenant(tenant_id)
    result = {}
    for destination_id in DESTINATION_IDS:
      config = configs.get(destination_id)
      result[destination_id] = {
        'configured': bool(config and config.configured),
        'enabled': bool(config and config.enabled),
        'lastBackup': config.last_backup_at if config else None
      }
    return result

  def oauth_availability(self) -> Dict[str, bool]:
    return {destination_id: self._oauth_adapter(destination_id).available for destination_id in OAUTH_DESTINATIONS}

  def destination_details(self, tenant_id: int, destination_id: str) -> Dict[str, Any]:
    adapter = self._adapter(destination_id)
    config = self.destinations.get(tenant_id, destination_id)
    details: Dict[str, Any] = {
      'destination': destination_id,
      'state': config.state if config else 'unconfigured',
      'configured': bool(config and config.configured),
      'enabled': bool(config and config.enabled),
      'folderPath': config.folder_path if config else self.settings.default_folder_path,
      'lastBackup': config.last_backup_at if config else None,
      'config': {}
    }
    if config and config.credentials_ref:
      credential = self.credentials.get(config.credentials_ref)
      if credential:
        details['config'] = adapter.public_config(credential.data)
    return details

  def history_for(
    self,
    tenant_id: int,
    destination_id: Optional[str] = None,
    limit: int = 50
  ) -> List[BackupRecord]:
    if destination_id:
      self._adapter(destination_id)
    return self.history.list(tenant_id, destination_id=destination_id, limit=limit)

  # -- configuration ----------------------------------------------------------

  def start_authorization(self, tenant_id: int, destination_id: str) -> str:
    adapter = self._oauth_adapter(destination_id)
    if not adapter.available:
      raise ConfigInvalid(f'{adapter.display_name} OAuth is not configured on this server', destination_id)
    redirect_uri = self.settings.redirect_uri(destination_id)
    state = self.oauth_states.issue(tenant_id, destination_id, redirect_uri)
    try:
      return adapter.build_authorization_url(state, redirect_uri)
    except BackupError:
      self.oauth_states.discard(state)
      raise

  def complete_authorization(
    self,
    destination_id: str,
    state: Optional[str],
    code: Optional[str] = None,
    error: Optional[str] = None
  ) -> DestinationConfig:
    adapter = self._oauth_adapter(destination_id)
    # The state is spent before the exchange runs, whatever its outcome.
    pending = self.oauth_states.consume(state or '', destination_id)
    if error:
      raise ConfigInvalid(f'Authorization was declined: {error}', destination_id)
    if not code:
      raise ConfigInvalid('Authorization callback carried no code', destination_id)
    tokens = adapter.exchange_code(code, pending.redirect_uri)
    return self._persist(pending.tenant_id, destination_id, tokens)

  def configure(self, tenant_id: int, destination_id: str, payload: Dict[str, Any]) -> DestinationConfig:
    adapter = self._adapter(destination_id)
    if adapter.requires_oauth:
      raise ConfigInvalid(f'{adapter.display_name} is connected through OAuth authorization', destination_id)
    data = adapter.validate_payload(payload)
    now = time.time()
    probe = CredentialRecord(
      id='',
      tenant_id=tenant_id,
      destination_id=destination_id,
      data=data,
      created_at=now,
      updated_at=now
    )
    adapter.test(probe)
    folder_path = payload.get('folder_path') or payload.get('folderPath')
    return self._persist(tenant_id, destination_id, data, folder_path)

  def toggle(self, tenant_id: int, destination_id: str, enabled: bool) -> DestinationConfig:
    self._adapter(destination_id)
    if not self.destinations.set_enabled(tenant_id, destination_id, enabled):
      raise ConfigInvalid('Provider not configured', destination_id)
    self._log('destination_toggled', tenant_id, destination_id, enabled=enabled)
    return self.destinations.get(tenant_id, destination_id)

  def update_settings(self, tenant_id: int, destination_id: str, folder_path: str) -> DestinationConfig:
    self._adapter(destination_id)
    normalized = join_remote_path(folder_path)
    if normalized == '/':
      raise ConfigInvalid('Folder path may not be empty', destination_id)
    config = self.destinations.get(tenant_id, destination_id)
    if not config or not config.configured:
      raise ConfigInvalid('Provider not configured', destination_id)
    self.destinations.set_folder_path(tenant_id, destination_id, normalized)
    return self.destinations.get(tenant_id, destination_id)

  def disconnect(self, tenant_id: int, destination_id: str, confirm: bool = False) -> bool:
    self._adapter(destination_id)
    if not confirm:
      raise ConfirmationRequired('Disconnecting a destination requires confirm=true', destination_id)
    with self.destinations.db.transaction() as conn:
      had_credentials = self.credentials.clear(tenant_id, destination_id, conn=conn)
      had_config = self.destinations.delete(tenant_id, destination_id, conn=conn)
    removed = had_credentials or had_config
    if removed:
      self._log('destination_disconnected', tenant_id, destination_id)
    return removed

  # -- backups ----------------------------------------------------------------

  def backup_now(self, tenant_id: int, destination_id: str) -> BackupRecord:
    """Run one synchronous backup; adapter failures come back as a failed record."""
    adapter = self._adapter(destination_id)
    config = self.destinations.get(tenant_id, destination_id)
    if not config or not config.configured:
      raise ConfigInvalid('Provider not configured', destination_id)
    try:
      lease = self.leases.acquire(
        backup_key(tenant_id, destination_id),
        conflicts=(restore_key(tenant_id), INSTANCE_RESTORE_KEY)
      )
    except LeaseConflict as exc:
      if exc.blocking_key.startswith('restore:'):
        raise RestoreInProgress('A restore is running; try the backup again afterwards', destination_id) from exc
      raise BackupInProgress('A backup to this destination is already running', destination_id) from exc

    try:
      with self.leases.keep_alive(lease):
        record = self.history.open(tenant_id, destination_id)
        size: Optional[int] = None
        credential: Optional[CredentialRecord] = None
        try:
          credential = self.credentials.get(config.credentials_ref)
          if not credential:
            raise ConfigInvalid('Stored credentials are missing; reconnect the destination', destination_id)
          snapshot = self.builder.build('user', tenant_id)
          size = snapshot.size_bytes
          ref = self.retry.run(
            lambda: adapter.upload(snapshot.data, snapshot.filename, config, credential),
            {'tenant_id': tenant_id, 'destination': destination_id, 'record_id': record.id}
          )
        except BackupError as exc:
          failed = self.history.fail(record.id, exc.message, exc.kind, file_size_bytes=size)
          self._log('backup_failed', tenant_id, destination_id, record_id=record.id, kind=exc.kind, error=exc.message)
          logger.warning('Backup %s to %s failed (%s): %s', record.id, destination_id, exc.kind, exc.message)
          return failed
        except Exception as exc:
          logger.exception('Backup %s to %s failed unexpectedly', record.id, destination_id)
          failed = self.history.fail(record.id, f'Unexpected error: {exc}', 'internal', file_size_bytes=size)
          self._log('backup_failed', tenant_id, destination_id, record_id=record.id, kind='internal', error=str(exc))
          return failed

        completed = self.history.complete(record.id, ref.size_bytes or size or 0, ref.remote_id)
        self.destinations.mark_backup(tenant_id, destination_id, completed.completed_at)
        self._log(
          'backup_completed',
          tenant_id,
          destination_id,
          record_id=completed.id,
          size=completed.file_size_bytes,
          remote_id=completed.remote_id
        )
        logger.info('Backup %s to %s completed (%s bytes)', completed.id, destination_id, completed.file_size_bytes)
        self._apply_retention(tenant_id, destination_id, adapter, credential)
        return completed
    finally:
      self.leases.release(lease)

  def fetch_backup(self, tenant_id: int, destination_id: str, record_id: str) -> FetchedBackup:
    adapter = self._adapter(destination_id)
    record = self.history.get(record_id)
    if (
      not record
      or record.tenant_id != tenant_id
      or record.destination_id != destination_id
      or record.status != 'completed'
      or not record.remote_id
    ):
      raise NotFound('Backup not found', destination_id)
    credential = self._credential_for(tenant_id, destination_id)
    remote_ref = RemoteRef(destination_id=destination_id, remote_id=record.remote_id)
    data = self.retry.run(
      lambda: adapter.download(remote_ref, credential),
      {'tenant_id': tenant_id, 'destination': destination_id, 'record_id': record_id}
    )
    filename = record.remote_id.rsplit('/', 1)[-1]
    if not filename.endswith('.zip'):
      filename = f'filabackup-{record.id}.zip'
    return FetchedBackup(filename=filename, data=data)

  def download_snapshot(self, principal: Principal, scope: str = 'user') -> SnapshotArchive:
    self._require_scope(principal, scope)
    archive = self.builder.build(scope, principal.tenant_id)
    self._log('snapshot_downloaded', principal.tenant_id, None, scope=scope, size=archive.size_bytes)
    return archive

  # -- restore ----------------------------------------------------------------

  def restore(self, principal: Principal, archive: bytes, scope: str = 'user', confirm: bool = False) -> RestoreReport:
    self._require_scope(principal, scope)
    if not confirm:
      raise ConfirmationRequired('Restoring a backup requires confirm=true')
    if scope == 'user':
      with self._restore_lease(
        restore_key(principal.tenant_id),
        (f'backup:{principal.tenant_id}:%', INSTANCE_RESTORE_KEY)
      ):
        report = self.restorer.restore_user(archive, principal.tenant_id)
    else:
      with self._restore_lease(INSTANCE_RESTORE_KEY, ('restore:%',)):
        report = self.restorer.restore_admin(archive, unit_guard=self._tenant_restore_guard)
    revoked = self.sessions.revoke_tenant(principal.tenant_id)
    self._log(
      'restore_completed',
      principal.tenant_id,
      None,
      scope=scope,
      restored=dict(report.restored_counts),
      created_users=report.created_users,
      failed_tenants=dict(report.failed_tenants),
      sessions_revoked=revoked
    )
    return report

  @contextmanager
  def _restore_lease(self, key: str, conflicts: Tuple[str, ...]) -> Iterator[None]:
    try:
      lease = self.leases.acquire(key, conflicts)
    except LeaseConflict as exc:
      raise RestoreInProgress(f'Restore blocked by running operation {exc.blocking_key}') from exc
    try:
      with self.leases.keep_alive(lease):
        yield
    finally:
      self.leases.release(lease)

  @contextmanager
  def _tenant_restore_guard(self, tenant_id: Optional[int]) -> Iterator[None]:
    if tenant_id is None:
      yield
      return
    with self._restore_lease(restore_key(tenant_id), (f'backup:{tenant_id}:%',)):
      yield

  # -- helpers ----------------------------------------------------------------

  def _persist(
    self,
    tenant_id: int,
    destination_id: str,
    data: Dict[str, Any],
    folder_path: Optional[str] = None
  ) -> DestinationConfig:
    existing = self.destinations.get(tenant_id, destination_id)
    if folder_path:
      folder = join_remote_path(folder_path)
    elif existing:
      folder = existing.folder_path
    else:
      folder = self.settings.default_folder_path
    with self.destinations.db.transaction() as conn:
      credential = self.credentials.set(tenant_id, destination_id, data, conn=conn)
      config = self.destinations.upsert(tenant_id, destination_id, credential.id, folder, enabled=True, conn=conn)
    self._log('destination_configured', tenant_id, destination_id, folder_path=folder)
    logger.info('Configured %s for tenant %s', destination_id, tenant_id)
    return config

  def _apply_retention(
    self,
    tenant_id: int,
    destination_id: str,
    adapter: DestinationAdapter,
    credential: Optional[CredentialRecord]
  ) -> None:
    pruned = self.history.prune(tenant_id, destination_id)
    if not pruned or not self.settings.prune_remote or credential is None:
      return
    for record in pruned:
      if record.status != 'completed' or not record.remote_id:
        continue
      try:
        adapter.delete(RemoteRef(destination_id=destination_id, remote_id=record.remote_id), credential)
      except DestinationError as exc:
        logger.warning('Failed to prune remote backup %s/%s: %s', destination_id, record.remote_id, exc)

  def _credential_for(self, tenant_id: int, destination_id: str) -> CredentialRecord:
    config = self.destinations.get(tenant_id, destination_id)
    credential = self.credentials.get(config.credentials_ref) if config and config.credentials_ref else None
    if not credential:
      raise ConfigInvalid('Provider not configured', destination_id)
    return credential

  def _require_scope(self, principal: Principal, scope: str) -> None:
    if scope not in ('user', 'admin'):
      raise ValidationError(f'Unknown snapshot scope: {scope}')
    if scope == 'admin' and not principal.is_admin:
      raise Forbidden('Administrator privileges are required')

  def _adapter(self, destination_id: str) -> DestinationAdapter:
    try:
      return self.adapters[destination_id]
    except KeyError as exc:
      raise NotFound(f'Unknown backup provider: {destination_id}') from exc

  def _oauth_adapter(self, destination_id: str) -> OAuthDriveAdapter:
    adapter = self._adapter(destination_id)
    if not isinstance(adapter, OAuthDriveAdapter):
      raise ConfigInvalid(f'Provider {destination_id} does not support OAuth onboarding.', destination_id)
    return adapter

  def _log(self, event: str, tenant_id: int, destination_id: Optional[str], **payload: Any) -> None:
    if not self._event_logger:
      return
    self._event_logger.log_event(
      'backup',
      event,
      {'tenant_id': tenant_id, 'destination': destination_id, **payload}
    )
