from __future__ import annotations

from typing import Dict

from filabackup.config import Settings
from filabackup.destinations.base import DestinationAdapter
from filabackup.destinations.local import LocalAdapter
from filabackup.destinations.oauth import DropboxAdapter, GoogleDriveAdapter, OneDriveAdapter
from filabackup.destinations.s3 import S3Adapter
from filabackup.destinations.webdav import WebDAVAdapter
from filabackup.storage.credentials import CredentialStore


def build_adapters(settings: Settings, credential_store: CredentialStore) -> Dict[str, DestinationAdapter]:
  timeout = settings.request_timeout
  return {
    'google': GoogleDriveAdapter(
      credential_store, settings.google_client_id, settings.google_client_secret, timeout
    ),
    'dropbox': DropboxAdapter(
      credential_store, settings.dropbox_client_id, settings.dropbox_client_secret, timeout
    ),
    'onedrive': OneDriveAdapter(
      credential_store, settings.onedrive_client_id, settings.onedrive_client_secret, timeout
    ),
    's3': S3Adapter(timeout),
    'webdav': WebDAVAdapter(timeout),
    'local': LocalAdapter(settings.local_backup_root, timeout)
  }
