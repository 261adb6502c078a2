from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


def _env_path(name: str, default: str) -> Path:
  return Path(os.getenv(name, default)).resolve()


@dataclass
class Settings:
  """Global backup service configuration derived from environment variables."""

  backend_host: str = field(default_factory=lambda: os.getenv('FILABACKUP_HOST', '127.0.0.1'))
  backend_port: int = field(default_factory=lambda: int(os.getenv('FILABACKUP_PORT', '5001')))
  log_level: str = field(default_factory=lambda: os.getenv('FILABACKUP_LOG_LEVEL', 'info'))
  app_url: str = field(default_factory=lambda: os.getenv('APP_URL', 'http://localhost:5001'))
  data_dir: Path = field(default_factory=lambda: _env_path('FILABACKUP_DATA_DIR', './data'))
  inventory_db_path: Path = field(default_factory=lambda: _env_path('FILABACKUP_INVENTORY_DB', './data/inventory.db'))
  registry_db_path: Path = field(default_factory=lambda: _env_path('FILABACKUP_REGISTRY_DB', './data/backups.db'))
  secret_key_path: Path = field(default_factory=lambda: _env_path('FILABACKUP_SECRET_KEY_PATH', './data/secrets/fernet.key'))
  assets_root: Path = field(default_factory=lambda: _env_path('FILABACKUP_ASSETS_ROOT', './data/uploads'))
  local_backup_root: Path = field(default_factory=lambda: _env_path('FILABACKUP_LOCAL_ROOT', './data/local_backups'))
  default_folder_path: str = field(default_factory=lambda: os.getenv('FILABACKUP_FOLDER', '/Filament Backups'))
  connect_timeout_seconds: float = field(default_factory=lambda: float(os.getenv('FILABACKUP_CONNECT_TIMEOUT', '10')))
  transfer_timeout_seconds: float = field(default_factory=lambda: float(os.getenv('FILABACKUP_TRANSFER_TIMEOUT', '120')))
  retry_attempts: int = field(default_factory=lambda: int(os.getenv('FILABACKUP_RETRY_ATTEMPTS', '3')))
  retry_base_delay_seconds: float = field(default_factory=lambda: float(os.getenv('FILABACKUP_RETRY_BACKOFF', '2')))
  retry_max_delay_seconds: float = field(default_factory=lambda: float(os.getenv('FILABACKUP_RETRY_MAX_DELAY', '8')))
  lease_ttl_seconds: float = field(default_factory=lambda: float(os.getenv('FILABACKUP_LEASE_TTL', '900')))
  oauth_state_ttl_seconds: int = field(default_factory=lambda: int(os.getenv('FILABACKUP_OAUTH_STATE_TTL', '600')))
  history_retention: int = field(default_factory=lambda: int(os.getenv('FILABACKUP_HISTORY_RETENTION', '50')))
  prune_remote: bool = field(default_factory=lambda: os.getenv('FILABACKUP_PRUNE_REMOTE', 'false').lower() == 'true')
  placeholder_password: str = field(default_factory=lambda: os.getenv('FILABACKUP_PLACEHOLDER_PASSWORD', 'changeme'))
  google_client_id: Optional[str] = field(default_factory=lambda: os.getenv('GOOGLE_CLIENT_ID'))
  google_client_secret: Optional[str] = field(default_factory=lambda: os.getenv('GOOGLE_CLIENT_SECRET'))
  dropbox_client_id: Optional[str] = field(default_factory=lambda: os.getenv('DROPBOX_CLIENT_ID'))
  dropbox_client_secret: Optional[str] = field(default_factory=lambda: os.getenv('DROPBOX_CLIENT_SECRET'))
  onedrive_client_id: Optional[str] = field(default_factory=lambda: os.getenv('ONEDRIVE_CLIENT_ID'))
  onedrive_client_secret: Optional[str] = field(default_factory=lambda: os.getenv('ONEDRIVE_CLIENT_SECRET'))

  @property
  def request_timeout(self) -> tuple:
    return (self.connect_timeout_seconds, self.transfer_timeout_seconds)

  def redirect_uri(self, destination_id: str) -> str:
    return f"{self.app_url.rstrip('/')}/api/cloud-backup/callback/{destination_id}"

  def ensure_directories(self) -> None:
    self.data_dir.mkdir(parents=True, exist_ok=True)
    for path in (self.inventory_db_path, self.registry_db_path, self.secret_key_path):
      if not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    self.assets_root.mkdir(parents=True, exist_ok=True)
    self.local_backup_root.mkdir(parents=True, exist_ok=True)


settings = Settings()
