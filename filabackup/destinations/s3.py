from __future__ import annotations

import logging
from typing import Any, Dict

import boto3
from botocore.config import Config
from botocore.exceptions import (
  BotoCoreError,
  ClientError,
  ConnectionClosedError,
  ConnectTimeoutError,
  EndpointConnectionError,
  ReadTimeoutError
)

from filabackup.destinations.base import DestinationAdapter, RemoteRef, join_remote_path
from filabackup.errors import AuthExpired, ConfigInvalid, DestinationError, NetworkError, QuotaExceeded
from filabackup.storage.credentials import CredentialRecord
from filabackup.storage.destinations import DestinationConfig

logger = logging.getLogger(__name__)

AUTH_CODES = {'ExpiredToken', 'ExpiredTokenException', 'TokenRefreshRequired', 'RequestExpired'}
QUOTA_CODES = {'QuotaExceeded', 'EntityTooLarge', 'StorageQuotaExceeded'}
TRANSIENT_CODES = {
  'SlowDown',
  'Throttling',
  'ThrottlingException',
  'RequestTimeout',
  'ServiceUnavailable',
  'InternalError'
}


class S3Adapter(DestinationAdapter):
  """S3-compatible object stores (AWS, MinIO, R2, B2) through boto3."""

  destination_id = 's3'
  display_name = 'S3-compatible storage'
  required_fields = ('bucket', 'access_key_id', 'secret_access_key')

  def validate_payload(self, payload: Dict[str, Any]) -> Dict[str, Any]:
    data = super().validate_payload(payload)
    data['endpoint'] = str(payload.get('endpoint') or '').strip() or None
    data['region'] = str(payload.get('region') or '').strip() or 'us-east-1'
    return data

  def public_config(self, data: Dict[str, Any]) -> Dict[str, Any]:
    return {
      'endpoint': data.get('endpoint'),
      'bucket': data.get('bucket'),
      'region': data.get('region')
    }

  def test(self, credential: CredentialRecord) -> None:
    bucket = credential.data['bucket']
    self._call('bucket check', lambda client: client.head_bucket(Bucket=bucket), credential)

  def upload(
    self,
    archive_bytes: bytes,
    filename: str,
    config: DestinationConfig,
    credential: CredentialRecord
  ) -> RemoteRef:
    bucket = credential.data['bucket']
    key = join_remote_path(config.folder_path, filename).lstrip('/')
    self._call(
      'upload',
      lambda client: client.put_object(Bucket=bucket, Key=key, Body=archive_bytes, ContentType='application/zip'),
      credential
    )
    logger.info('Uploaded %s bytes to s3://%s/%s', len(archive_bytes), bucket, key)
    return RemoteRef(
      destination_id=self.destination_id,
      remote_id=key,
      path=f's3://{bucket}/{key}',
      size_bytes=len(archive_bytes)
    )

  def download(self, remote_ref: RemoteRef, credential: CredentialRecord) -> bytes:
    bucket = credential.data['bucket']
    response = self._call(
      'download',
      lambda client: client.get_object(Bucket=bucket, Key=remote_ref.remote_id),
      credential
    )
    return response['Body'].read()

  def delete(self, remote_ref: RemoteRef, credential: CredentialRecord) -> None:
    bucket = credential.data['bucket']
    self._call('delete', lambda client: client.delete_object(Bucket=bucket, Key=remote_ref.remote_id), credential)

  def _client(self, credential: CredentialRecord):
    data = credential.data
    endpoint = data.get('endpoint') or None
    config = Config(
      connect_timeout=self.timeout[0],
      read_timeout=self.timeout[1],
      retries={'mode': 'standard', 'total_max_attempts': 1},
      s3={'addressing_style': 'path'} if endpoint else None
    )
    try:
      return boto3.client(
        's3',
        endpoint_url=endpoint,
        region_name=data.get('region') or 'us-east-1',
        aws_access_key_id=data.get('access_key_id'),
        aws_secret_access_key=data.get('secret_access_key'),
        config=config
      )
    except ValueError as exc:
      raise ConfigInvalid(f'Invalid S3 endpoint: {exc}', self.destination_id) from exc

  def _call(self, action: str, operation, credential: CredentialRecord):
    client = self._client(credential)
    try:
      return operation(client)
    except ClientError as exc:
      raise self._translate(action, exc) from exc
    except (EndpointConnectionError, ConnectionClosedError, ConnectTimeoutError, ReadTimeoutError) as exc:
      raise NetworkError(f'{action} failed: {exc}', self.destination_id) from exc
    except BotoCoreError as exc:
      raise ConfigInvalid(f'{action} failed: {exc}', self.destination_id) from exc

  def _translate(self, action: str, exc: ClientError) -> DestinationError:
    error = exc.response.get('Error', {})
    code = str(error.get('Code', ''))
    status = int(exc.response.get('ResponseMetadata', {}).get('HTTPStatusCode') or 0)
    message = f"{action} failed: {code or status} {error.get('Message', '')}".strip()
    logger.warning('S3 %s failed with %s (HTTP %s)', action, code, status)
    if code in AUTH_CODES:
      return AuthExpired(message, self.destination_id)
    if code in QUOTA_CODES or status in (507, 413):
      return QuotaExceeded(message, self.destination_id)
    if code in TRANSIENT_CODES or status == 429 or status >= 500:
      return NetworkError(message, self.destination_id)
    return ConfigInvalid(message, self.destination_id)
