from __future__ import annotations

from typing import Optional


class BackupError(RuntimeError):
  """Root of every failure the backup core reports to its callers."""

  kind = 'backup_error'
  status_code = 500

  def __init__(self, message: str, destination_id: Optional[str] = None) -> None:
    super().__init__(message)
    self.message = message
    self.destination_id = destination_id

  def to_dict(self) -> dict:
    payload = {'kind': self.kind, 'message': self.message}
    if self.destination_id:
      payload['destination'] = self.destination_id
    return payload


class DestinationError(BackupError):
  """Represents a destination adapter failure."""

  kind = 'destination_error'
  status_code = 502


class AuthExpired(DestinationError):
  kind = 'auth_expired'
  status_code = 401


class QuotaExceeded(DestinationError):
  kind = 'quota_exceeded'
  status_code = 507


class NetworkError(DestinationError):
  """Transient transport failure; safe to retry."""

  kind = 'network_error'
  status_code = 503


class ConfigInvalid(DestinationError):
  kind = 'config_invalid'
  status_code = 400


class BackupInProgress(BackupError):
  kind = 'backup_in_progress'
  status_code = 409


class RestoreInProgress(BackupError):
  kind = 'restore_in_progress'
  status_code = 409


class UnsupportedFormat(BackupError):
  kind = 'unsupported_format'
  status_code = 422


class ValidationError(BackupError):
  """The archive is malformed or inconsistent with its manifest."""

  kind = 'validation_error'
  status_code = 422


class RestoreConflict(BackupError):
  # Reserved: insert-only restores never overwrite, so nothing raises this yet.
  kind = 'restore_conflict'
  status_code = 409


class ConfirmationRequired(BackupError):
  kind = 'confirmation_required'
  status_code = 400


class AuthorizationError(BackupError):
  """OAuth state token missing, expired, reused or bound elsewhere."""

  kind = 'authorization_error'
  status_code = 400


class Forbidden(BackupError):
  kind = 'forbidden'
  status_code = 403


class NotFound(BackupError):
  kind = 'not_found'
  status_code = 404
