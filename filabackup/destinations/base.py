from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests

from filabackup.errors import AuthExpired, ConfigInvalid, DestinationError, NetworkError, QuotaExceeded
from filabackup.storage.credentials import CredentialRecord
from filabackup.storage.destinations import DestinationConfig

logger = logging.getLogger(__name__)

QUOTA_MARKERS = (
  'insufficient_space',
  'storageQuotaExceeded',
  'quotaExceeded',
  'quotaLimitReached',
  'QuotaExceeded'
)


@dataclass
class RemoteRef:
  destination_id: str
  remote_id: str
  path: Optional[str] = None
  url: Optional[str] = None
  size_bytes: int = 0

  def to_dict(self) -> Dict[str, Any]:
    return asdict(self)


def error_for_response(response: requests.Response, destination_id: str, action: str) -> DestinationError:
  """Translate a failed HTTP response into the adapter failure taxonomy."""
  status = response.status_code
  body = response.text or ''
  message = f'{action} failed with HTTP {status}'
  if status in (507, 413) or any(marker in body for marker in QUOTA_MARKERS):
    return QuotaExceeded(f'{message}: storage quota exceeded', destination_id)
  if status in (401, 403):
    return AuthExpired(f'{message}: authorization rejected, reconnect the destination', destination_id)
  if status == 429 or status >= 500:
    return NetworkError(message, destination_id)
  return ConfigInvalid(f'{message}: {body[:200]}', destination_id)


class DestinationAdapter:
  destination_id: str = 'base'
  display_name: str = 'Base Destination'
  requires_oauth: bool = False
  required_fields: Sequence[str] = ()

  def __init__(self, timeout: Tuple[float, float] = (10.0, 120.0)) -> None:
    self.timeout = timeout

  def test(self, credential: CredentialRecord) -> None:
    raise NotImplementedError

  def upload(
    self,
    archive_bytes: bytes,
    filename: str,
    config: DestinationConfig,
    credential: CredentialRecord
  ) -> RemoteRef:
    raise NotImplementedError

  def download(self, remote_ref: RemoteRef, credential: CredentialRecord) -> bytes:
    raise NotImplementedError

  def delete(self, remote_ref: RemoteRef, credential: CredentialRecord) -> None:
    raise NotImplementedError

  def validate_payload(self, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Normalise a configure request into the credential data this adapter stores."""
    missing = [name for name in self.required_fields if not str(payload.get(name) or '').strip()]
    if missing:
      raise ConfigInvalid(f"Missing required fields: {', '.join(missing)}", self.destination_id)
    return {name: str(payload[name]).strip() for name in self.required_fields}

  def public_config(self, data: Dict[str, Any]) -> Dict[str, Any]:
    """Non-secret view of stored credential data."""
    return {}

  def _request(
    self,
    method: str,
    url: str,
    action: str,
    ok_statuses: Sequence[int] = (),
    **kwargs: Any
  ) -> requests.Response:
    kwargs.setdefault('timeout', self.timeout)
    try:
      response = requests.request(method, url, **kwargs)
    except (requests.ConnectionError, requests.Timeout) as exc:
      raise NetworkError(f'{action} failed: {exc}', self.destination_id) from exc
    except requests.RequestException as exc:
      raise ConfigInvalid(f'{action} failed: {exc}', self.destination_id) from exc
    if response.ok or response.status_code in ok_statuses:
      return response
    logger.warning('%s %s on %s returned %s', self.destination_id, action, url, response.status_code)
    raise error_for_response(response, self.destination_id, action)


def join_remote_path(*segments: Optional[str]) -> str:
  """Join folder and file segments into one absolute slash path."""
  parts: List[str] = []
  for segment in segments:
    if not segment:
      continue
    parts.extend(part for part in segment.split('/') if part)
  if any(part == '..' for part in parts):
    raise ConfigInvalid('Remote paths may not contain ".." segments')
  return '/' + '/'.join(parts)
