"""Tests for the operator CLI."""

import json
from unittest.mock import patch

import pytest

from filabackup.cli.__main__ import main


@pytest.fixture
def cli(services):
    with patch('filabackup.cli.__main__.build_services', return_value=services):
        yield services


@pytest.fixture
def tenant(seed):
    tenant = seed.tenant('ada')
    seed.item(tenant, 'Galaxy PLA')
    return tenant


def test_status_json(cli, tenant, capsys):
    """Test machine-readable destination status."""
    assert main(['status', '--tenant', str(tenant), '--json']) == 0

    status = json.loads(capsys.readouterr().out)
    assert status['local'] == {'configured': False, 'enabled': False, 'lastBackup': None}


def test_backup_and_history(cli, tenant, capsys):
    """Test a backup run and its listing."""
    cli.orchestrator.configure(tenant, 'local', {'base_path': ''})

    assert main(['backup', '--tenant', str(tenant), '--destination', 'local']) == 0
    assert 'completed' in capsys.readouterr().out

    assert main(['history', '--tenant', str(tenant), '--json']) == 0
    history = json.loads(capsys.readouterr().out)
    assert [entry['status'] for entry in history] == ['completed']


def test_backup_of_unconfigured_destination(cli, tenant, capsys):
    """Test that core errors become exit code 2 with the error kind."""
    assert main(['backup', '--tenant', str(tenant), '--destination', 's3']) == 2
    assert 'config_invalid' in capsys.readouterr().err


def test_export_and_restore(cli, tenant, tmp_path, capsys):
    """Test writing an archive to disk and merging it back."""
    assert main(['export', '--tenant', str(tenant), '--out', str(tmp_path)]) == 0
    archives = list(tmp_path.glob('filabackup-user-*.zip'))
    assert len(archives) == 1

    assert main(['restore', '--tenant', str(tenant), '--archive', str(archives[0])]) == 2
    assert '--yes' in capsys.readouterr().err

    assert main(['restore', '--tenant', str(tenant), '--archive', str(archives[0]), '--yes', '--json']) == 0
    report = json.loads(capsys.readouterr().out)
    assert report['restoredCounts']['items'] == 0


def test_export_unknown_tenant(cli, tmp_path, capsys):
    """Test that a missing tenant is reported instead of exported."""
    assert main(['export', '--tenant', '404', '--out', str(tmp_path / 'x.zip')]) == 2
    assert 'not found' in capsys.readouterr().err
