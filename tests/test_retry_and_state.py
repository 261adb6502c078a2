"""Tests for OAuth state tokens, transfer retry and the event log."""

import time
from unittest.mock import MagicMock

import pytest

from filabackup.errors import AuthorizationError, ConfigInvalid, NetworkError
from filabackup.logging.event_logger import EventLogger
from filabackup.orchestrator.oauth_state import OAuthStateStore
from filabackup.orchestrator.retry import TransferRetry


def test_state_is_single_use():
    """Test that a state token authorizes exactly one callback."""
    store = OAuthStateStore()
    state = store.issue(7, 'google', 'http://testserver/cb')

    pending = store.consume(state, 'google')
    assert pending.tenant_id == 7
    assert pending.redirect_uri == 'http://testserver/cb'

    with pytest.raises(AuthorizationError):
        store.consume(state, 'google')


def test_state_provider_mismatch_burns_token():
    """Test that a token replayed on another provider is rejected and spent."""
    store = OAuthStateStore()
    state = store.issue(7, 'google', 'http://testserver/cb')

    with pytest.raises(AuthorizationError) as excinfo:
        store.consume(state, 'dropbox')
    assert excinfo.value.message == 'OAuth provider mismatch.'

    with pytest.raises(AuthorizationError):
        store.consume(state, 'google')


def test_state_expires():
    """Test that stale tokens are refused."""
    store = OAuthStateStore(ttl_seconds=0.01)
    state = store.issue(1, 'onedrive', 'http://testserver/cb')
    time.sleep(0.05)

    with pytest.raises(AuthorizationError):
        store.consume(state, 'onedrive')


def test_missing_state_is_rejected():
    """Test that a callback without state never reaches the token exchange."""
    with pytest.raises(AuthorizationError):
        OAuthStateStore().consume(None, 'google')


def test_retry_recovers_from_transient_failures():
    """Test that network errors are retried with capped backoff."""
    sleep = MagicMock()
    retry = TransferRetry(attempts=3, base_delay=2.0, max_delay=3.0, sleep=sleep)
    operation = MagicMock(side_effect=[NetworkError('reset'), NetworkError('reset'), 'ok'])

    assert retry.run(operation) == 'ok'
    assert operation.call_count == 3
    assert [call.args[0] for call in sleep.call_args_list] == [2.0, 3.0]


def test_retry_gives_up_after_attempts(tmp_path):
    """Test that the last transient error is raised and each retry is logged."""
    events = EventLogger(tmp_path / 'logs')
    retry = TransferRetry(attempts=2, base_delay=0, event_logger=events, sleep=MagicMock())
    operation = MagicMock(side_effect=NetworkError('timeout', 's3'))

    with pytest.raises(NetworkError):
        retry.run(operation, {'tenant_id': 1, 'destination_id': 's3'})

    assert operation.call_count == 2
    logged = events.recent(category='error')
    assert len(logged) == 1
    assert logged[0]['payload']['destination_id'] == 's3'
    assert logged[0]['payload']['attempt'] == 1


def test_retry_does_not_repeat_permanent_failures():
    """Test that configuration errors fail on the first attempt."""
    operation = MagicMock(side_effect=ConfigInvalid('bad bucket'))

    with pytest.raises(ConfigInvalid):
        TransferRetry(sleep=MagicMock()).run(operation)
    assert operation.call_count == 1


def test_event_logger_filters_and_limits(tmp_path):
    """Test JSON line storage with category filtering."""
    events = EventLogger(tmp_path)
    events.log_event('backup', 'started', {'tenant_id': 1})
    events.log_event('restore', 'finished')
    events.log_event('backup', 'completed', {'tenant_id': 1})
    with events.log_file.open('a', encoding='utf-8') as handle:
        handle.write('not json\n')

    assert [entry['message'] for entry in events.recent(category='backup')] == ['started', 'completed']
    assert [entry['message'] for entry in events.recent(limit=1)] == ['completed']
    assert events.recent(category='restore')[0]['payload'] == {}
