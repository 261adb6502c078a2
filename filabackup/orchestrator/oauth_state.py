from __future__ import annotations

import secrets
import threading
import time
from dataclasses import dataclass, field

from cachetools import TTLCache

from filabackup.errors import AuthorizationError


@dataclass(frozen=True)
class PendingAuthorization:
  tenant_id: int
  destination_id: str
  redirect_uri: str
  issued_at: float = field(default_factory=time.time)


class OAuthStateStore:
  """Single-use, tenant-bound state tokens for the OAuth redirect flow.

  Tokens live in process memory only; a callback that lands on a different
  worker than the one that issued the token fails with ``AuthorizationError``.
  """

  def __init__(self, ttl_seconds: float = 600, maxsize: int = 1024) -> None:
    self._pending: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl_seconds)
    self._lock = threading.Lock()

  def issue(self, tenant_id: int, destination_id: str, redirect_uri: str) -> str:
    state = secrets.token_urlsafe(32)
    with self._lock:
      self._pending[state] = PendingAuthorization(tenant_id, destination_id, redirect_uri)
    return state

  def discard(self, state: str) -> None:
    with self._lock:
      self._pending.pop(state, None)

  def consume(self, state: str, destination_id: str) -> PendingAuthorization:
    with self._lock:
      pending = self._pending.pop(state, None) if state else None
    if pending is None:
      raise AuthorizationError('OAuth state not found or expired.', destination_id)
    if pending.destination_id != destination_id:
      raise AuthorizationError('OAuth provider mismatch.', destination_id)
    return pending
