from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class SecretManager:
  """Fernet encryption for destination secrets kept at rest."""

  def __init__(self, key_path: Path, key: Optional[bytes] = None) -> None:
    self.key_path = Path(key_path)
    self._fernet = Fernet(key or self._load_or_create_key())

  def _load_or_create_key(self) -> bytes:
    if self.key_path.exists():
      key = self.key_path.read_bytes().strip()
      if not key:
        raise ValueError(f'Encryption key file {self.key_path} is empty')
      return key
    self.key_path.parent.mkdir(parents=True, exist_ok=True)
    key = Fernet.generate_key()
    with open(self.key_path, 'wb') as fh:
      fh.write(key)
    try:
      os.chmod(self.key_path, 0o600)
    except PermissionError:
      logger.warning('Could not restrict permissions on %s', self.key_path)
    logger.info('Generated new credential encryption key at %s', self.key_path)
    return key

  def encrypt(self, payload: bytes) -> bytes:
    return self._fernet.encrypt(payload)

  def decrypt(self, token: bytes) -> bytes:
    try:
      return self._fernet.decrypt(token)
    except InvalidToken as exc:
      raise ValueError('Stored credentials cannot be decrypted with the current key') from exc

  def encrypt_json(self, data: Dict[str, Any]) -> bytes:
    return self.encrypt(json.dumps(data, sort_keys=True).encode('utf-8'))

  def decrypt_json(self, token: bytes) -> Dict[str, Any]:
    return json.loads(self.decrypt(token).decode('utf-8'))
