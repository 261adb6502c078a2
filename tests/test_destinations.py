"""Tests for destination adapters with the HTTP and boto3 layers patched out."""

import json
import time
from urllib.parse import parse_qs, urlparse
from unittest.mock import MagicMock, patch

import pytest
import requests
from botocore.exceptions import ClientError, EndpointConnectionError

from filabackup.destinations.base import RemoteRef, error_for_response, join_remote_path
from filabackup.destinations.local import LocalAdapter
from filabackup.destinations.oauth import DropboxAdapter, GoogleDriveAdapter, OneDriveAdapter
from filabackup.destinations.s3 import S3Adapter
from filabackup.destinations.webdav import WebDAVAdapter
from filabackup.errors import AuthExpired, ConfigInvalid, NetworkError, NotFound, QuotaExceeded
from filabackup.storage.credentials import CredentialRecord
from filabackup.storage.destinations import DestinationConfig

from conftest import make_response

REQUEST = 'filabackup.destinations.base.requests.request'


def make_credential(destination_id, data, credential_id='cred-1', tenant_id=1):
    return CredentialRecord(
        id=credential_id,
        tenant_id=tenant_id,
        destination_id=destination_id,
        data=data,
        created_at=0.0,
        updated_at=0.0,
    )


def make_config(destination_id, folder_path='/Filament Backups', tenant_id=1):
    return DestinationConfig(
        tenant_id=tenant_id,
        destination_id=destination_id,
        credentials_ref='cred-1',
        enabled=True,
        folder_path=folder_path,
        last_backup_at=None,
        created_at='now',
        updated_at='now',
    )


def fresh_tokens(**extra):
    data = {'access_token': 'access', 'refresh_token': 'refresh', 'expires_at': time.time() + 3600}
    data.update(extra)
    return data


def client_error(code, status=400):
    return ClientError(
        {'Error': {'Code': code, 'Message': 'boom'}, 'ResponseMetadata': {'HTTPStatusCode': status}},
        'PutObject',
    )


@pytest.mark.parametrize(
    'status,body,expected',
    [
        (507, b'', QuotaExceeded),
        (413, b'', QuotaExceeded),
        (409, b'{"error_summary": "path/insufficient_space/"}', QuotaExceeded),
        (403, b'{"error": {"reason": "storageQuotaExceeded"}}', QuotaExceeded),
        (401, b'', AuthExpired),
        (403, b'forbidden', AuthExpired),
        (429, b'', NetworkError),
        (503, b'', NetworkError),
        (404, b'not here', ConfigInvalid),
    ],
)
def test_error_for_response_taxonomy(status, body, expected):
    """Test HTTP failures map onto the adapter error kinds."""
    error = error_for_response(make_response(status, content=body), 'google', 'upload')

    assert type(error) is expected
    assert error.destination_id == 'google'


def test_request_connection_error_is_transient():
    """Test that transport failures surface as retryable network errors."""
    adapter = WebDAVAdapter()
    with patch(REQUEST, side_effect=requests.ConnectionError('refused')):
        with pytest.raises(NetworkError):
            adapter._request('GET', 'https://dav.example.com/', 'probe')


def test_join_remote_path():
    """Test remote path joining and traversal rejection."""
    assert join_remote_path('/Filament Backups/', 'a.zip') == '/Filament Backups/a.zip'
    assert join_remote_path('nested//dir', None, 'a.zip') == '/nested/dir/a.zip'
    assert join_remote_path('') == '/'
    with pytest.raises(ConfigInvalid):
        join_remote_path('/backups/../etc', 'a.zip')


def test_google_authorization_url_carries_state():
    """Test that the consent URL requests offline access and echoes the state."""
    adapter = GoogleDriveAdapter(MagicMock(), 'client', 'secret')
    url = adapter.build_authorization_url('state-123', 'http://testserver/api/cloud-backup/callback/google')
    query = parse_qs(urlparse(url).query)

    assert url.startswith(GoogleDriveAdapter.AUTH_URL)
    assert query['state'] == ['state-123']
    assert query['access_type'] == ['offline']
    assert query['scope'] == ['https://www.googleapis.com/auth/drive.file']


def test_oauth_unavailable_without_client():
    """Test that a destination without client credentials refuses to start."""
    adapter = DropboxAdapter(MagicMock(), None, None)

    assert adapter.available is False
    with pytest.raises(ConfigInvalid):
        adapter.build_authorization_url('state', 'http://testserver/cb')


def test_exchange_code_requires_refresh_token():
    """Test that a token response without a refresh token is rejected."""
    adapter = GoogleDriveAdapter(MagicMock(), 'client', 'secret')
    with patch(REQUEST, return_value=make_response(200, {'access_token': 'a', 'expires_in': 3600})):
        with pytest.raises(ConfigInvalid):
            adapter.exchange_code('code', 'http://testserver/cb')


def test_exchange_code_with_unreadable_response():
    """Test that a non-JSON token response is a configuration error."""
    adapter = GoogleDriveAdapter(MagicMock(), 'client', 'secret')
    with patch(REQUEST, return_value=make_response(200, content=b'<html>proxy error</html>')):
        with pytest.raises(ConfigInvalid):
            adapter.exchange_code('code', 'http://testserver/cb')


def test_refresh_without_access_token_means_auth_expired():
    """Test that an incomplete refresh response asks for reconnection."""
    store = MagicMock()
    adapter = DropboxAdapter(store, 'client', 'secret')
    credential = make_credential('dropbox', {'access_token': 'stale', 'refresh_token': 'refresh', 'expires_at': 0})
    for response in (make_response(200, {'token_type': 'bearer'}), make_response(200, content=b'not json')):
        with patch(REQUEST, return_value=response):
            with pytest.raises(AuthExpired):
                adapter.download(RemoteRef('dropbox', 'id:abc'), credential)

    store.update.assert_not_called()


def test_exchange_code_returns_tokens():
    """Test the stored token shape after a successful exchange."""
    adapter = OneDriveAdapter(MagicMock(), 'client', 'secret')
    body = {'access_token': 'a', 'refresh_token': 'r', 'expires_in': 3600}
    with patch(REQUEST, return_value=make_response(200, body)) as mock_request:
        tokens = adapter.exchange_code('code', 'http://testserver/cb')

    assert tokens['access_token'] == 'a'
    assert tokens['refresh_token'] == 'r'
    assert tokens['expires_at'] > time.time()
    assert mock_request.call_args.kwargs['data']['grant_type'] == 'authorization_code'


def test_expired_token_is_refreshed_and_persisted():
    """Test that an expired access token is renewed and written back."""
    store = MagicMock()
    store.update.return_value = None
    adapter = GoogleDriveAdapter(store, 'client', 'secret')
    credential = make_credential('google', {'access_token': 'stale', 'refresh_token': 'refresh', 'expires_at': 0})
    responses = [
        make_response(200, {'access_token': 'fresh', 'expires_in': 3600}),
        make_response(200, {'user': {'displayName': 'Ada'}}),
    ]
    with patch(REQUEST, side_effect=responses) as mock_request:
        adapter.test(credential)

    store.update.assert_called_once()
    credential_id, data = store.update.call_args.args
    assert credential_id == 'cred-1'
    assert data['access_token'] == 'fresh'
    assert data['refresh_token'] == 'refresh'
    probe = mock_request.call_args_list[1]
    assert probe.kwargs['headers']['Authorization'] == 'Bearer fresh'


def test_rejected_refresh_means_auth_expired():
    """Test that a revoked refresh token asks the user to reconnect."""
    adapter = DropboxAdapter(MagicMock(), 'client', 'secret')
    credential = make_credential('dropbox', {'access_token': 'a', 'refresh_token': 'r', 'expires_at': 0})
    with patch(REQUEST, return_value=make_response(400, {'error': 'invalid_grant'})):
        with pytest.raises(AuthExpired):
            adapter.test(credential)


def test_refresh_outage_stays_transient():
    """Test that a provider outage during refresh remains retryable."""
    adapter = DropboxAdapter(MagicMock(), 'client', 'secret')
    credential = make_credential('dropbox', {'access_token': 'a', 'refresh_token': 'r', 'expires_at': 0})
    with patch(REQUEST, return_value=make_response(503)):
        with pytest.raises(NetworkError):
            adapter.test(credential)


def test_google_upload_creates_missing_folder():
    """Test folder lookup, folder creation and multipart upload."""
    adapter = GoogleDriveAdapter(MagicMock(), 'client', 'secret')
    responses = [
        make_response(200, {'files': []}),
        make_response(200, {'id': 'folder-1'}),
        make_response(200, {'id': 'file-1', 'webViewLink': 'https://drive.example/file-1'}),
    ]
    with patch(REQUEST, side_effect=responses) as mock_request:
        ref = adapter.upload(b'zipdata', 'a.zip', make_config('google'), make_credential('google', fresh_tokens()))

    assert ref.remote_id == 'file-1'
    assert ref.path == '/Filament Backups/a.zip'
    assert ref.size_bytes == 7
    create = mock_request.call_args_list[1]
    assert json.loads(create.kwargs['data'])['parents'] == ['root']
    upload = mock_request.call_args_list[2]
    metadata = json.loads(upload.kwargs['files']['metadata'][1])
    assert metadata['parents'] == ['folder-1']


def test_google_delete_tolerates_missing_file():
    """Test that deleting an already removed file succeeds."""
    adapter = GoogleDriveAdapter(MagicMock(), 'client', 'secret')
    with patch(REQUEST, return_value=make_response(404)):
        adapter.delete(RemoteRef('google', 'file-1'), make_credential('google', fresh_tokens()))


def test_dropbox_upload_never_overwrites():
    """Test that Dropbox uploads use add mode with autorename."""
    adapter = DropboxAdapter(MagicMock(), 'client', 'secret')
    body = {'id': 'id:abc', 'path_display': '/Filament Backups/a (1).zip', 'size': 7}
    with patch(REQUEST, return_value=make_response(200, body)) as mock_request:
        ref = adapter.upload(b'zipdata', 'a.zip', make_config('dropbox'), make_credential('dropbox', fresh_tokens()))

    arg = json.loads(mock_request.call_args.kwargs['headers']['Dropbox-API-Arg'])
    assert arg == {'path': '/Filament Backups/a.zip', 'mode': 'add', 'autorename': True, 'mute': True}
    assert ref.remote_id == 'id:abc'
    assert ref.path == '/Filament Backups/a (1).zip'


def test_dropbox_quota_error():
    """Test that a full Dropbox account is reported as quota exceeded."""
    adapter = DropboxAdapter(MagicMock(), 'client', 'secret')
    body = {'error_summary': 'path/insufficient_space/..'}
    with patch(REQUEST, return_value=make_response(409, body)):
        with pytest.raises(QuotaExceeded):
            adapter.upload(b'zip', 'a.zip', make_config('dropbox'), make_credential('dropbox', fresh_tokens()))


def test_onedrive_small_upload():
    """Test the single-request upload path."""
    adapter = OneDriveAdapter(MagicMock(), 'client', 'secret')
    with patch(REQUEST, return_value=make_response(201, {'id': 'item-1', 'webUrl': 'https://1drv/item-1'})) as mock_request:
        ref = adapter.upload(b'zipdata', 'a.zip', make_config('onedrive'), make_credential('onedrive', fresh_tokens()))

    method, url = mock_request.call_args.args
    assert method == 'PUT'
    assert url.endswith('/me/drive/root:/Filament%20Backups/a.zip:/content')
    assert ref.remote_id == 'item-1'


def test_onedrive_large_upload_uses_session():
    """Test chunked uploads through an upload session."""
    adapter = OneDriveAdapter(MagicMock(), 'client', 'secret')
    adapter.SIMPLE_UPLOAD_LIMIT = 10
    adapter.CHUNK_SIZE = 8
    responses = [
        make_response(200, {'uploadUrl': 'https://upload.example/session'}),
        make_response(202, {'nextExpectedRanges': ['8-']}),
        make_response(202, {'nextExpectedRanges': ['16-']}),
        make_response(201, {'id': 'item-9'}),
    ]
    with patch(REQUEST, side_effect=responses) as mock_request:
        ref = adapter.upload(b'x' * 20, 'a.zip', make_config('onedrive'), make_credential('onedrive', fresh_tokens()))

    ranges = [call.kwargs['headers']['Content-Range'] for call in mock_request.call_args_list[1:]]
    assert ranges == ['bytes 0-7/20', 'bytes 8-15/20', 'bytes 16-19/20']
    assert 'Authorization' not in mock_request.call_args_list[1].kwargs['headers']
    assert ref.remote_id == 'item-9'


@patch('filabackup.destinations.s3.boto3.client')
def test_s3_upload_key_and_path(mock_client_factory):
    """Test object key derivation from the folder path."""
    adapter = S3Adapter()
    data = adapter.validate_payload({'bucket': 'backups', 'access_key_id': 'AK', 'secret_access_key': 'SK'})
    assert data['region'] == 'us-east-1'
    assert data['endpoint'] is None

    ref = adapter.upload(b'zipdata', 'a.zip', make_config('s3'), make_credential('s3', data))

    client = mock_client_factory.return_value
    client.put_object.assert_called_once()
    assert client.put_object.call_args.kwargs['Key'] == 'Filament Backups/a.zip'
    assert ref.path == 's3://backups/Filament Backups/a.zip'
    assert mock_client_factory.call_args.kwargs['endpoint_url'] is None


@pytest.mark.parametrize(
    'code,status,expected',
    [
        ('ExpiredToken', 400, AuthExpired),
        ('EntityTooLarge', 400, QuotaExceeded),
        ('SlowDown', 503, NetworkError),
        ('NoSuchBucket', 404, ConfigInvalid),
        ('AccessDenied', 403, ConfigInvalid),
    ],
)
@patch('filabackup.destinations.s3.boto3.client')
def test_s3_client_errors(mock_client_factory, code, status, expected):
    """Test that S3 error codes map onto the adapter error kinds."""
    mock_client_factory.return_value.put_object.side_effect = client_error(code, status)
    adapter = S3Adapter()
    credential = make_credential('s3', {'bucket': 'b', 'access_key_id': 'a', 'secret_access_key': 's'})

    with pytest.raises(expected):
        adapter.upload(b'zip', 'a.zip', make_config('s3'), credential)


@patch('filabackup.destinations.s3.boto3.client')
def test_s3_unreachable_endpoint_is_transient(mock_client_factory):
    """Test that an unreachable endpoint is retryable."""
    mock_client_factory.return_value.head_bucket.side_effect = EndpointConnectionError(endpoint_url='http://minio:9000')
    credential = make_credential(
        's3', {'bucket': 'b', 'access_key_id': 'a', 'secret_access_key': 's', 'endpoint': 'http://minio:9000'}
    )

    with pytest.raises(NetworkError):
        S3Adapter().test(credential)


def test_s3_missing_fields():
    """Test that missing S3 fields are rejected before any network call."""
    with pytest.raises(ConfigInvalid) as excinfo:
        S3Adapter().validate_payload({'bucket': 'b', 'access_key_id': 'a'})

    assert 'secret_access_key' in excinfo.value.message


def test_webdav_upload_creates_folder():
    """Test PROPFIND, MKCOL and PUT ordering against a WebDAV server."""
    adapter = WebDAVAdapter()
    data = adapter.validate_payload(
        {'url': 'https://dav.example.com/remote.php/dav/files/ada/', 'username': 'ada', 'password': 'pw'}
    )
    responses = [make_response(404), make_response(201), make_response(201)]
    with patch(REQUEST, side_effect=responses) as mock_request:
        ref = adapter.upload(b'zipdata', 'a.zip', make_config('webdav'), make_credential('webdav', data))

    calls = [(call.args[0], call.args[1]) for call in mock_request.call_args_list]
    base = 'https://dav.example.com/remote.php/dav/files/ada'
    assert calls == [
        ('PROPFIND', f'{base}/Filament%20Backups/'),
        ('MKCOL', f'{base}/Filament%20Backups/'),
        ('PUT', f'{base}/Filament%20Backups/a.zip'),
    ]
    assert ref.remote_id == '/Filament Backups/a.zip'


def test_webdav_rejects_non_http_url():
    """Test that only http(s) WebDAV endpoints are accepted."""
    with pytest.raises(ConfigInvalid):
        WebDAVAdapter().validate_payload({'url': 'ftp://dav', 'username': 'u', 'password': 'p'})


def test_webdav_bad_password():
    """Test that rejected basic auth is reported as expired authorization."""
    credential = make_credential('webdav', {'url': 'https://dav.example.com', 'username': 'u', 'password': 'bad'})
    with patch(REQUEST, return_value=make_response(401)):
        with pytest.raises(AuthExpired):
            WebDAVAdapter().test(credential)


def test_local_upload_and_download(tmp_path):
    """Test local storage writes under the tenant folder without overwriting."""
    adapter = LocalAdapter(tmp_path)
    credential = make_credential('local', adapter.validate_payload({}), tenant_id=4)
    config = make_config('local', tenant_id=4)

    first = adapter.upload(b'one', 'a.zip', config, credential)
    second = adapter.upload(b'two', 'a.zip', config, credential)

    assert first.remote_id == '4/Filament Backups/a.zip'
    assert second.remote_id == '4/Filament Backups/a-1.zip'
    assert adapter.download(first, credential) == b'one'
    assert adapter.download(second, credential) == b'two'

    adapter.delete(first, credential)
    adapter.delete(first, credential)
    with pytest.raises(NotFound):
        adapter.download(first, credential)


def test_local_base_path_must_stay_inside_root(tmp_path):
    """Test that configured base paths cannot escape the backup root."""
    adapter = LocalAdapter(tmp_path / 'root')

    with pytest.raises(ConfigInvalid):
        adapter.validate_payload({'base_path': '../elsewhere'})
    with pytest.raises(ConfigInvalid):
        adapter.validate_payload({'base_path': str(tmp_path / 'other')})
    assert adapter.validate_payload({'base_path': 'nas'}) == {'base_path': 'nas'}


def test_local_test_creates_base(tmp_path):
    """Test that the connection check prepares the target directory."""
    adapter = LocalAdapter(tmp_path)
    adapter.test(make_credential('local', {'base_path': 'nested/dir'}))

    assert (tmp_path / 'nested' / 'dir').is_dir()


def test_google_download_fetches_media():
    """Test that Drive downloads request the file media."""
    adapter = GoogleDriveAdapter(MagicMock(), 'client', 'secret')
    with patch(REQUEST, return_value=make_response(200, content=b'zipdata')) as mock_request:
        data = adapter.download(RemoteRef('google', 'file-1'), make_credential('google', fresh_tokens()))

    assert data == b'zipdata'
    method, url = mock_request.call_args.args
    assert (method, url) == ('GET', f'{GoogleDriveAdapter.FILES_URL}/file-1')
    assert mock_request.call_args.kwargs['params'] == {'alt': 'media'}
    assert mock_request.call_args.kwargs['headers']['Authorization'] == 'Bearer access'


def test_google_download_with_revoked_access():
    """Test that a rejected download asks for reconnection."""
    adapter = GoogleDriveAdapter(MagicMock(), 'client', 'secret')
    with patch(REQUEST, return_value=make_response(401)):
        with pytest.raises(AuthExpired):
            adapter.download(RemoteRef('google', 'file-1'), make_credential('google', fresh_tokens()))


def test_dropbox_download_and_delete():
    """Test Dropbox content download and deletion by file id."""
    adapter = DropboxAdapter(MagicMock(), 'client', 'secret')
    credential = make_credential('dropbox', fresh_tokens())
    with patch(REQUEST, return_value=make_response(200, content=b'zipdata')) as mock_request:
        data = adapter.download(RemoteRef('dropbox', 'id:abc'), credential)

    assert data == b'zipdata'
    assert mock_request.call_args.args == ('POST', DropboxAdapter.DOWNLOAD_URL)
    assert json.loads(mock_request.call_args.kwargs['headers']['Dropbox-API-Arg']) == {'path': 'id:abc'}

    with patch(REQUEST, return_value=make_response(200, {'metadata': {}})) as mock_request:
        adapter.delete(RemoteRef('dropbox', 'id:abc'), credential)

    assert mock_request.call_args.args == ('POST', DropboxAdapter.DELETE_URL)
    assert json.loads(mock_request.call_args.kwargs['data']) == {'path': 'id:abc'}


def test_dropbox_delete_tolerates_missing_file():
    """Test that a path lookup conflict on delete is treated as already gone."""
    adapter = DropboxAdapter(MagicMock(), 'client', 'secret')
    body = {'error_summary': 'path_lookup/not_found/..'}
    with patch(REQUEST, return_value=make_response(409, body)):
        adapter.delete(RemoteRef('dropbox', 'id:abc'), make_credential('dropbox', fresh_tokens()))


def test_dropbox_download_outage():
    """Test that a server error on download stays retryable."""
    adapter = DropboxAdapter(MagicMock(), 'client', 'secret')
    with patch(REQUEST, return_value=make_response(503)):
        with pytest.raises(NetworkError):
            adapter.download(RemoteRef('dropbox', 'id:abc'), make_credential('dropbox', fresh_tokens()))


def test_onedrive_download_and_delete():
    """Test Graph item content download and item deletion."""
    adapter = OneDriveAdapter(MagicMock(), 'client', 'secret')
    credential = make_credential('onedrive', fresh_tokens())
    with patch(REQUEST, return_value=make_response(200, content=b'zipdata')) as mock_request:
        data = adapter.download(RemoteRef('onedrive', 'item-1'), credential)

    assert data == b'zipdata'
    assert mock_request.call_args.args == ('GET', f'{OneDriveAdapter.GRAPH_ROOT}/me/drive/items/item-1/content')

    with patch(REQUEST, return_value=make_response(404)) as mock_request:
        adapter.delete(RemoteRef('onedrive', 'item-1'), credential)

    assert mock_request.call_args.args == ('DELETE', f'{OneDriveAdapter.GRAPH_ROOT}/me/drive/items/item-1')


def test_onedrive_delete_with_revoked_access():
    """Test that a forbidden delete is reported as expired authorization."""
    adapter = OneDriveAdapter(MagicMock(), 'client', 'secret')
    with patch(REQUEST, return_value=make_response(403, content=b'accessDenied')):
        with pytest.raises(AuthExpired):
            adapter.delete(RemoteRef('onedrive', 'item-1'), make_credential('onedrive', fresh_tokens()))


@patch('filabackup.destinations.s3.boto3.client')
def test_s3_download_and_delete(mock_client_factory):
    """Test object reads and deletes against the configured bucket."""
    client = mock_client_factory.return_value
    client.get_object.return_value = {'Body': MagicMock(read=MagicMock(return_value=b'zipdata'))}
    credential = make_credential('s3', {'bucket': 'backups', 'access_key_id': 'a', 'secret_access_key': 's'})
    adapter = S3Adapter()

    data = adapter.download(RemoteRef('s3', 'Filament Backups/a.zip'), credential)
    adapter.delete(RemoteRef('s3', 'Filament Backups/a.zip'), credential)

    assert data == b'zipdata'
    client.get_object.assert_called_once_with(Bucket='backups', Key='Filament Backups/a.zip')
    client.delete_object.assert_called_once_with(Bucket='backups', Key='Filament Backups/a.zip')


@patch('filabackup.destinations.s3.boto3.client')
def test_s3_download_errors(mock_client_factory):
    """Test that download failures map onto the adapter error kinds."""
    client = mock_client_factory.return_value
    credential = make_credential('s3', {'bucket': 'backups', 'access_key_id': 'a', 'secret_access_key': 's'})

    client.get_object.side_effect = client_error('ExpiredToken', 400)
    with pytest.raises(AuthExpired):
        S3Adapter().download(RemoteRef('s3', 'a.zip'), credential)

    client.delete_object.side_effect = EndpointConnectionError(endpoint_url='https://s3.amazonaws.com')
    with pytest.raises(NetworkError):
        S3Adapter().delete(RemoteRef('s3', 'a.zip'), credential)


def test_webdav_download_and_delete():
    """Test GET and DELETE against the stored remote path."""
    adapter = WebDAVAdapter()
    credential = make_credential('webdav', {'url': 'https://dav.example.com', 'username': 'u', 'password': 'p'})
    with patch(REQUEST, return_value=make_response(200, content=b'zipdata')) as mock_request:
        data = adapter.download(RemoteRef('webdav', '/Filament Backups/a.zip'), credential)

    assert data == b'zipdata'
    assert mock_request.call_args.args == ('GET', 'https://dav.example.com/Filament%20Backups/a.zip')
    assert mock_request.call_args.kwargs['auth'].username == 'u'

    with patch(REQUEST, return_value=make_response(404)) as mock_request:
        adapter.delete(RemoteRef('webdav', '/Filament Backups/a.zip'), credential)

    assert mock_request.call_args.args == ('DELETE', 'https://dav.example.com/Filament%20Backups/a.zip')


def test_webdav_download_with_bad_password():
    """Test that a rejected download asks for new credentials."""
    credential = make_credential('webdav', {'url': 'https://dav.example.com', 'username': 'u', 'password': 'bad'})
    with patch(REQUEST, return_value=make_response(401)):
        with pytest.raises(AuthExpired):
            WebDAVAdapter().download(RemoteRef('webdav', '/a.zip'), credential)
