from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict

from filabackup.destinations.base import DestinationAdapter, RemoteRef, join_remote_path
from filabackup.errors import ConfigInvalid, NotFound
from filabackup.storage.credentials import CredentialRecord
from filabackup.storage.destinations import DestinationConfig

logger = logging.getLogger(__name__)


class LocalAdapter(DestinationAdapter):
  """Stores archives on the server under the local backup root."""

  destination_id = 'local'
  display_name = 'Local server storage'

  def __init__(self, root: Path, timeout=(10.0, 120.0)) -> None:
    super().__init__(timeout)
    self.root = Path(root).resolve()

  def validate_payload(self, payload: Dict[str, Any]) -> Dict[str, Any]:
    base_path = str(payload.get('base_path') or '').strip()
    self._resolve_base(base_path)
    return {'base_path': base_path}

  def public_config(self, data: Dict[str, Any]) -> Dict[str, Any]:
    return {'base_path': data.get('base_path') or ''}

  def test(self, credential: CredentialRecord) -> None:
    base = self._resolve_base(credential.data.get('base_path'))
    try:
      base.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
      raise ConfigInvalid(f'Cannot create {base}: {exc}', self.destination_id) from exc
    if not os.access(base, os.W_OK):
      raise ConfigInvalid(f'{base} is not writable', self.destination_id)

  def upload(
    self,
    archive_bytes: bytes,
    filename: str,
    config: DestinationConfig,
    credential: CredentialRecord
  ) -> RemoteRef:
    base = self._resolve_base(credential.data.get('base_path'))
    folder = join_remote_path(str(credential.tenant_id), config.folder_path).lstrip('/')
    target_dir = self._inside_root(base / folder)
    target_dir.mkdir(parents=True, exist_ok=True)
    target = target_dir / filename
    counter = 1
    while target.exists():
      target = target_dir / f'{Path(filename).stem}-{counter}{Path(filename).suffix}'
      counter += 1
    target.write_bytes(archive_bytes)
    logger.info('Stored local backup %s (%s bytes)', target, len(archive_bytes))
    relative = target.relative_to(self.root).as_posix()
    return RemoteRef(
      destination_id=self.destination_id,
      remote_id=relative,
      path=str(target),
      size_bytes=len(archive_bytes)
    )

  def download(self, remote_ref: RemoteRef, credential: CredentialRecord) -> bytes:
    target = self._inside_root(self.root / remote_ref.remote_id)
    if not target.is_file():
      raise NotFound(f'Local backup {remote_ref.remote_id} no longer exists', self.destination_id)
    return target.read_bytes()

  def delete(self, remote_ref: RemoteRef, credential: CredentialRecord) -> None:
    target = self._inside_root(self.root / remote_ref.remote_id)
    target.unlink(missing_ok=True)

  def _resolve_base(self, base_path: Any) -> Path:
    if not base_path:
      return self.root
    candidate = Path(str(base_path)).expanduser()
    if not candidate.is_absolute():
      candidate = self.root / candidate
    return self._inside_root(candidate)

  def _inside_root(self, candidate: Path) -> Path:
    resolved = candidate.resolve()
    if resolved != self.root and self.root not in resolved.parents:
      raise ConfigInvalid(f'{candidate} is outside the local backup root', self.destination_id)
    return resolved
