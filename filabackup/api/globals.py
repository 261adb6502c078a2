from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

from filabackup.auth.sessions import SessionStore
from filabackup.config import Settings
from filabackup.destinations.base import DestinationAdapter
from filabackup.destinations.registry import build_adapters
from filabackup.logging.event_logger import EventLogger
from filabackup.orchestrator.manager import BackupOrchestrator
from filabackup.orchestrator.oauth_state import OAuthStateStore
from filabackup.orchestrator.retry import TransferRetry
from filabackup.security.secret_manager import SecretManager
from filabackup.snapshot.builder import SnapshotBuilder
from filabackup.snapshot.restorer import SnapshotRestorer
from filabackup.storage.credentials import CredentialStore
from filabackup.storage.database import Database
from filabackup.storage.destinations import DestinationConfigStore
from filabackup.storage.history import HistoryLedger
from filabackup.storage.inventory import InventoryStore
from filabackup.storage.leases import LeaseManager


@dataclass
class Services:
  settings: Settings
  inventory: InventoryStore
  registry: Database
  credentials: CredentialStore
  destinations: DestinationConfigStore
  history: HistoryLedger
  leases: LeaseManager
  sessions: SessionStore
  adapters: Dict[str, DestinationAdapter]
  event_logger: EventLogger
  orchestrator: BackupOrchestrator


def build_services(settings: Settings) -> Services:
  """Wire every store and the orchestrator for one settings instance."""
  settings.ensure_directories()
  event_logger = EventLogger(settings.data_dir / 'logs')
  inventory = InventoryStore(settings.inventory_db_path, settings.assets_root)
  registry = Database(settings.registry_db_path)
  secret_manager = SecretManager(settings.secret_key_path)
  credentials = CredentialStore(registry, secret_manager)
  destinations = DestinationConfigStore(registry)
  history = HistoryLedger(registry, retention=settings.history_retention)
  leases = LeaseManager(registry, ttl_seconds=settings.lease_ttl_seconds)
  sessions = SessionStore(registry)
  adapters = build_adapters(settings, credentials)
  orchestrator = BackupOrchestrator(
    settings=settings,
    credentials=credentials,
    destinations=destinations,
    history=history,
    leases=leases,
    sessions=sessions,
    adapters=adapters,
    builder=SnapshotBuilder(inventory),
    restorer=SnapshotRestorer(inventory, settings.placeholder_password),
    oauth_states=OAuthStateStore(ttl_seconds=settings.oauth_state_ttl_seconds),
    retry=TransferRetry(
      attempts=settings.retry_attempts,
      base_delay=settings.retry_base_delay_seconds,
      max_delay=settings.retry_max_delay_seconds,
      event_logger=event_logger
    ),
    event_logger=event_logger
  )
  return Services(
    settings=settings,
    inventory=inventory,
    registry=registry,
    credentials=credentials,
    destinations=destinations,
    history=history,
    leases=leases,
    sessions=sessions,
    adapters=adapters,
    event_logger=event_logger,
    orchestrator=orchestrator
  )
