from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlencode

import requests

from filabackup.destinations.base import DestinationAdapter, RemoteRef, join_remote_path
from filabackup.errors import AuthExpired, ConfigInvalid, DestinationError, NetworkError
from filabackup.storage.credentials import CredentialRecord, CredentialStore
from filabackup.storage.destinations import DestinationConfig

logger = logging.getLogger(__name__)


class OAuthDriveAdapter(DestinationAdapter):
  """Shared authorization-code flow and token refresh for consumer drives.

  Client id and secret are instance-wide; each tenant's credential only carries
  its own access and refresh tokens. Refreshed tokens are written back through
  the credential store so every worker sees them.
  """

  requires_oauth = True
  AUTH_URL = ''
  TOKEN_URL = ''
  default_scopes: List[str] = []
  default_expires_in = 3600

  def __init__(
    self,
    store: CredentialStore,
    client_id: Optional[str],
    client_secret: Optional[str],
    timeout=(10.0, 120.0)
  ) -> None:
    super().__init__(timeout)
    self.store = store
    self.client_id = client_id
    self.client_secret = client_secret

  @property
  def available(self) -> bool:
    return bool(self.client_id and self.client_secret)

  def build_authorization_url(self, state: str, redirect_uri: str) -> str:
    self._require_client()
    params = {
      'client_id': self.client_id,
      'redirect_uri': redirect_uri,
      'response_type': 'code',
      'state': state,
      'scope': ' '.join(self.default_scopes)
    }
    params.update(self._extra_authorization_params())
    return f'{self.AUTH_URL}?{urlencode(params)}'

  def exchange_code(self, code: str, redirect_uri: str) -> Dict[str, Any]:
    self._require_client()
    data = {
      'code': code,
      'client_id': self.client_id,
      'client_secret': self.client_secret,
      'redirect_uri': redirect_uri,
      'grant_type': 'authorization_code'
    }
    response = self._request('POST', self.TOKEN_URL, 'token exchange', data=data)
    payload = self._token_payload(response)
    access_token = payload.get('access_token')
    refresh_token = payload.get('refresh_token')
    if not access_token or not refresh_token:
      raise ConfigInvalid(
        f'{self.display_name} token exchange did not return refresh/access tokens.',
        self.destination_id
      )
    return {
      'access_token': access_token,
      'refresh_token': refresh_token,
      'expires_at': time.time() + float(payload.get('expires_in', self.default_expires_in)) - 60,
      'scopes': self.default_scopes
    }

  def test(self, credential: CredentialRecord) -> None:
    credential = self._ensure_token_fresh(credential)
    self._probe(credential)

  def _probe(self, credential: CredentialRecord) -> None:
    raise NotImplementedError

  def _extra_authorization_params(self) -> Dict[str, str]:
    return {}

  def _require_client(self) -> None:
    if not self.available:
      raise ConfigInvalid(f'{self.display_name} OAuth is not configured on this server', self.destination_id)

  def _headers(self, credential: CredentialRecord, **extra: str) -> Dict[str, str]:
    headers = {'Authorization': f"Bearer {credential.data['access_token']}"}
    headers.update(extra)
    return headers

  def _token_payload(self, response: requests.Response) -> Dict[str, Any]:
    """Token endpoint body; an unreadable response counts as carrying no tokens."""
    try:
      payload = response.json()
    except ValueError:
      logger.warning('%s token endpoint returned a non-JSON body', self.destination_id)
      return {}
    return payload if isinstance(payload, dict) else {}

  def _ensure_token_fresh(self, credential: CredentialRecord) -> CredentialRecord:
    expires_at = credential.data.get('expires_at', 0)
    if time.time() < expires_at:
      return credential
    refresh_token = credential.data.get('refresh_token')
    if not refresh_token:
      raise AuthExpired(f'{self.display_name} session expired, reconnect the destination', self.destination_id)
    self._require_client()
    data = {
      'client_id': self.client_id,
      'client_secret': self.client_secret,
      'refresh_token': refresh_token,
      'grant_type': 'refresh_token'
    }
    try:
      response = self._request('POST', self.TOKEN_URL, 'token refresh', data=data)
    except NetworkError:
      raise
    except DestinationError as exc:
      raise AuthExpired(
        f'{self.display_name} token refresh was rejected, reconnect the destination',
        self.destination_id
      ) from exc
    payload = self._token_payload(response)
    if not payload.get('access_token'):
      raise AuthExpired(
        f'{self.display_name} token refresh returned no access token, reconnect the destination',
        self.destination_id
      )
    credential.data['access_token'] = payload['access_token']
    if payload.get('refresh_token'):
      credential.data['refresh_token'] = payload['refresh_token']
    credential.data['expires_at'] = time.time() + float(payload.get('expires_in', self.default_expires_in)) - 60
    updated = self.store.update(credential.id, credential.data) if credential.id else None
    logger.debug('Refreshed %s access token for tenant %s', self.destination_id, credential.tenant_id)
    return updated or credential


class GoogleDriveAdapter(OAuthDriveAdapter):
  destination_id = 'google'
  display_name = 'Google Drive'
  default_scopes = ['https://www.googleapis.com/auth/drive.file']
  AUTH_URL = 'https://accounts.google.com/o/oauth2/v2/auth'
  TOKEN_URL = 'https://oauth2.googleapis.com/token'
  ABOUT_URL = 'https://www.googleapis.com/drive/v3/about'
  FILES_URL = 'https://www.googleapis.com/drive/v3/files'
  UPLOAD_URL = 'https://www.googleapis.com/upload/drive/v3/files?uploadType=multipart&fields=id,name,size,webViewLink'
  FOLDER_MIME = 'application/vnd.google-apps.folder'

  def _extra_authorization_params(self) -> Dict[str, str]:
    return {'access_type': 'offline', 'prompt': 'consent'}

  def _probe(self, credential: CredentialRecord) -> None:
    self._request('GET', self.ABOUT_URL, 'account check', headers=self._headers(credential), params={'fields': 'user'})

  def upload(
    self,
    archive_bytes: bytes,
    filename: str,
    config: DestinationConfig,
    credential: CredentialRecord
  ) -> RemoteRef:
    credential = self._ensure_token_fresh(credential)
    folder_id = self._ensure_folder(credential, config.folder_path)
    file_metadata = {'name': filename, 'parents': [folder_id]}
    files = {
      'metadata': ('metadata', json.dumps(file_metadata), 'application/json; charset=UTF-8'),
      'file': (filename, archive_bytes, 'application/zip')
    }
    response = self._request('POST', self.UPLOAD_URL, 'upload', headers=self._headers(credential), files=files)
    payload = response.json()
    return RemoteRef(
      destination_id=self.destination_id,
      remote_id=payload['id'],
      path=join_remote_path(config.folder_path, filename),
      url=payload.get('webViewLink'),
      size_bytes=len(archive_bytes)
    )

  def download(self, remote_ref: RemoteRef, credential: CredentialRecord) -> bytes:
    credential = self._ensure_token_fresh(credential)
    response = self._request(
      'GET',
      f'{self.FILES_URL}/{remote_ref.remote_id}',
      'download',
      headers=self._headers(credential),
      params={'alt': 'media'}
    )
    return response.content

  def delete(self, remote_ref: RemoteRef, credential: CredentialRecord) -> None:
    credential = self._ensure_token_fresh(credential)
    self._request(
      'DELETE',
      f'{self.FILES_URL}/{remote_ref.remote_id}',
      'delete',
      ok_statuses=(404,),
      headers=self._headers(credential)
    )

  def _ensure_folder(self, credential: CredentialRecord, folder_path: str) -> str:
    parent_id = 'root'
    for segment in filter(None, join_remote_path(folder_path).split('/')):
      parent_id = self._ensure_child_folder(credential, parent_id, segment)
    return parent_id

  def _ensure_child_folder(self, credential: CredentialRecord, parent_id: str, name: str) -> str:
    escaped = name.replace('\\', '\\\\').replace("'", "\\'")
    params = {
      'q': f"name='{escaped}' and '{parent_id}' in parents and mimeType='{self.FOLDER_MIME}' and trashed=false",
      'fields': 'files(id, name)',
      'pageSize': 1
    }
    response = self._request('GET', self.FILES_URL, 'folder lookup', headers=self._headers(credential), params=params)
    files = response.json().get('files', [])
    if files:
      return files[0]['id']
    payload = {'name': name, 'mimeType': self.FOLDER_MIME, 'parents': [parent_id]}
    create = self._request(
      'POST',
      self.FILES_URL,
      'folder create',
      headers=self._headers(credential, **{'Content-Type': 'application/json'}),
      data=json.dumps(payload)
    )
    return create.json()['id']


class DropboxAdapter(OAuthDriveAdapter):
  destination_id = 'dropbox'
  display_name = 'Dropbox'
  default_scopes = ['files.content.write', 'files.content.read']
  default_expires_in = 14400
  AUTH_URL = 'https://www.dropbox.com/oauth2/authorize'
  TOKEN_URL = 'https://api.dropboxapi.com/oauth2/token'
  ACCOUNT_URL = 'https://api.dropboxapi.com/2/users/get_current_account'
  UPLOAD_URL = 'https://content.dropboxapi.com/2/files/upload'
  DOWNLOAD_URL = 'https://content.dropboxapi.com/2/files/download'
  DELETE_URL = 'https://api.dropboxapi.com/2/files/delete_v2'

  def _extra_authorization_params(self) -> Dict[str, str]:
    return {'token_access_type': 'offline'}

  def _probe(self, credential: CredentialRecord) -> None:
    self._request('POST', self.ACCOUNT_URL, 'account check', headers=self._headers(credential))

  def upload(
    self,
    archive_bytes: bytes,
    filename: str,
    config: DestinationConfig,
    credential: CredentialRecord
  ) -> RemoteRef:
    credential = self._ensure_token_fresh(credential)
    dropbox_path = join_remote_path(config.folder_path, filename)
    headers = self._headers(
      credential,
      **{
        'Dropbox-API-Arg': json.dumps({'path': dropbox_path, 'mode': 'add', 'autorename': True, 'mute': True}),
        'Content-Type': 'application/octet-stream'
      }
    )
    response = self._request('POST', self.UPLOAD_URL, 'upload', headers=headers, data=archive_bytes)
    payload = response.json()
    return RemoteRef(
      destination_id=self.destination_id,
      remote_id=payload.get('id') or dropbox_path,
      path=payload.get('path_display') or dropbox_path,
      size_bytes=int(payload.get('size') or len(archive_bytes))
    )

  def download(self, remote_ref: RemoteRef, credential: CredentialRecord) -> bytes:
    credential = self._ensure_token_fresh(credential)
    headers = self._headers(credential, **{'Dropbox-API-Arg': json.dumps({'path': self._locator(remote_ref)})})
    response = self._request('POST', self.DOWNLOAD_URL, 'download', headers=headers)
    return response.content

  def delete(self, remote_ref: RemoteRef, credential: CredentialRecord) -> None:
    credential = self._ensure_token_fresh(credential)
    # 409 carries path_lookup/not_found for files that are already gone.
    self._request(
      'POST',
      self.DELETE_URL,
      'delete',
      ok_statuses=(409,),
      headers=self._headers(credential, **{'Content-Type': 'application/json'}),
      data=json.dumps({'path': self._locator(remote_ref)})
    )

  def _locator(self, remote_ref: RemoteRef) -> str:
    return remote_ref.remote_id or remote_ref.path or ''


class OneDriveAdapter(OAuthDriveAdapter):
  destination_id = 'onedrive'
  display_name = 'OneDrive'
  default_scopes = ['offline_access', 'Files.ReadWrite']
  AUTH_URL = 'https://login.microsoftonline.com/common/oauth2/v2.0/authorize'
  TOKEN_URL = 'https://login.microsoftonline.com/common/oauth2/v2.0/token'
  GRAPH_ROOT = 'https://graph.microsoft.com/v1.0'
  SIMPLE_UPLOAD_LIMIT = 4 * 1024 * 1024
  CHUNK_SIZE = 10 * 320 * 1024

  def _probe(self, credential: CredentialRecord) -> None:
    self._request('GET', f'{self.GRAPH_ROOT}/me/drive', 'account check', headers=self._headers(credential))

  def upload(
    self,
    archive_bytes: bytes,
    filename: str,
    config: DestinationConfig,
    credential: CredentialRecord
  ) -> RemoteRef:
    credential = self._ensure_token_fresh(credential)
    remote_path = join_remote_path(config.folder_path, filename)
    item_url = f'{self.GRAPH_ROOT}/me/drive/root:{quote(remote_path)}:'
    if len(archive_bytes) <= self.SIMPLE_UPLOAD_LIMIT:
      response = self._request(
        'PUT',
        f'{item_url}/content',
        'upload',
        headers=self._headers(credential, **{'Content-Type': 'application/zip'}),
        data=archive_bytes
      )
      payload = response.json()
    else:
      payload = self._upload_session(credential, item_url, archive_bytes)
    return RemoteRef(
      destination_id=self.destination_id,
      remote_id=payload['id'],
      path=remote_path,
      url=payload.get('webUrl'),
      size_bytes=len(archive_bytes)
    )

  def download(self, remote_ref: RemoteRef, credential: CredentialRecord) -> bytes:
    credential = self._ensure_token_fresh(credential)
    response = self._request(
      'GET',
      f'{self.GRAPH_ROOT}/me/drive/items/{remote_ref.remote_id}/content',
      'download',
      headers=self._headers(credential)
    )
    return response.content

  def delete(self, remote_ref: RemoteRef, credential: CredentialRecord) -> None:
    credential = self._ensure_token_fresh(credential)
    self._request(
      'DELETE',
      f'{self.GRAPH_ROOT}/me/drive/items/{remote_ref.remote_id}',
      'delete',
      ok_statuses=(404,),
      headers=self._headers(credential)
    )

  def _upload_session(self, credential: CredentialRecord, item_url: str, archive_bytes: bytes) -> Dict[str, Any]:
    session = self._request(
      'POST',
      f'{item_url}/createUploadSession',
      'upload session',
      headers=self._headers(credential, **{'Content-Type': 'application/json'}),
      data=json.dumps({'item': {'@microsoft.graph.conflictBehavior': 'rename'}})
    )
    upload_url = session.json()['uploadUrl']
    total = len(archive_bytes)
    payload: Dict[str, Any] = {}
    for start in range(0, total, self.CHUNK_SIZE):
      chunk = archive_bytes[start:start + self.CHUNK_SIZE]
      end = start + len(chunk) - 1
      # The pre-authenticated upload URL rejects an Authorization header.
      response = self._request(
        'PUT',
        upload_url,
        'upload chunk',
        headers={'Content-Length': str(len(chunk)), 'Content-Range': f'bytes {start}-{end}/{total}'},
        data=chunk
      )
      if response.status_code in (200, 201):
        payload = response.json()
    if 'id' not in payload:
      raise NetworkError('Upload session ended without a completed item', self.destination_id)
    return payload
