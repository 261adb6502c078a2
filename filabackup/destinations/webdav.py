from __future__ import annotations

import logging
from typing import Any, Dict
from urllib.parse import quote

from requests.auth import HTTPBasicAuth

from filabackup.destinations.base import DestinationAdapter, RemoteRef, join_remote_path
from filabackup.errors import ConfigInvalid
from filabackup.storage.credentials import CredentialRecord
from filabackup.storage.destinations import DestinationConfig

logger = logging.getLogger(__name__)


class WebDAVAdapter(DestinationAdapter):
  """Nextcloud, ownCloud and other WebDAV servers over plain HTTP verbs."""

  destination_id = 'webdav'
  display_name = 'WebDAV'
  required_fields = ('url', 'username', 'password')

  def validate_payload(self, payload: Dict[str, Any]) -> Dict[str, Any]:
    data = super().validate_payload(payload)
    if not data['url'].startswith(('http://', 'https://')):
      raise ConfigInvalid('WebDAV url must start with http:// or https://', self.destination_id)
    data['url'] = data['url'].rstrip('/')
    return data

  def public_config(self, data: Dict[str, Any]) -> Dict[str, Any]:
    return {'url': data.get('url'), 'username': data.get('username')}

  def test(self, credential: CredentialRecord) -> None:
    self._request(
      'PROPFIND',
      credential.data['url'] + '/',
      'connection check',
      auth=self._auth(credential),
      headers={'Depth': '0'}
    )

  def upload(
    self,
    archive_bytes: bytes,
    filename: str,
    config: DestinationConfig,
    credential: CredentialRecord
  ) -> RemoteRef:
    self._ensure_folder(credential, config.folder_path)
    remote_path = join_remote_path(config.folder_path, filename)
    url = self._url(credential, remote_path)
    self._request(
      'PUT',
      url,
      'upload',
      auth=self._auth(credential),
      headers={'Content-Type': 'application/zip'},
      data=archive_bytes
    )
    logger.info('Uploaded %s bytes to %s', len(archive_bytes), url)
    return RemoteRef(
      destination_id=self.destination_id,
      remote_id=remote_path,
      path=remote_path,
      url=url,
      size_bytes=len(archive_bytes)
    )

  def download(self, remote_ref: RemoteRef, credential: CredentialRecord) -> bytes:
    response = self._request(
      'GET',
      self._url(credential, remote_ref.remote_id),
      'download',
      auth=self._auth(credential)
    )
    return response.content

  def delete(self, remote_ref: RemoteRef, credential: CredentialRecord) -> None:
    self._request(
      'DELETE',
      self._url(credential, remote_ref.remote_id),
      'delete',
      ok_statuses=(404,),
      auth=self._auth(credential)
    )

  def _ensure_folder(self, credential: CredentialRecord, folder_path: str) -> None:
    current = ''
    for segment in filter(None, join_remote_path(folder_path).split('/')):
      current = f'{current}/{segment}'
      url = self._url(credential, current) + '/'
      probe = self._request(
        'PROPFIND',
        url,
        'folder lookup',
        ok_statuses=(404,),
        auth=self._auth(credential),
        headers={'Depth': '0'}
      )
      if probe.status_code != 404:
        continue
      # 405 means another writer created the collection in between.
      self._request('MKCOL', url, 'folder create', ok_statuses=(405,), auth=self._auth(credential))

  def _url(self, credential: CredentialRecord, remote_path: str) -> str:
    return credential.data['url'] + quote(remote_path)

  def _auth(self, credential: CredentialRecord) -> HTTPBasicAuth:
    return HTTPBasicAuth(credential.data['username'], credential.data['password'])
