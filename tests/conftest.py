"""Shared fixtures: isolated settings, wired services and inventory seeding."""

import json
from pathlib import Path
from typing import Any, Dict, Optional

import pytest
import requests

from filabackup.api.globals import build_services
from filabackup.config import Settings
from filabackup.storage.inventory import SPECS_BY_NAME, InventoryStore


def make_response(status: int = 200, json_body: Any = None, content: bytes = b'') -> requests.Response:
    """Build a real requests.Response for patched HTTP calls."""
    response = requests.Response()
    response.status_code = status
    response.encoding = 'utf-8'
    response._content = json.dumps(json_body).encode('utf-8') if json_body is not None else content
    return response


class Seeder:
    """Writes inventory rows the way the surrounding application would."""

    def __init__(self, inventory: InventoryStore):
        self.inventory = inventory

    def tenant(self, username: str, is_admin: bool = False) -> int:
        with self.inventory.db.transaction() as conn:
            return self.inventory.create_account(
                conn, username, 'hash', is_admin=is_admin, force_change_password=False
            )

    def item(self, tenant_id: int, name: str, image: Optional[str] = None, **extra: Any) -> int:
        values: Dict[str, Any] = {
            'name': name,
            'manufacturer': 'Prusament',
            'material': 'PLA',
            'color_name': 'Galaxy Black',
            'color_code': '#1b1b1b',
            'diameter': 1.75,
            'total_weight': 1000.0,
            'remaining_percentage': 80.0,
            'purchase_date': '2024-01-05',
            'image_path': image,
        }
        values.update(extra)
        return self._insert('items', tenant_id, values)

    def image(self, relative: str, content: bytes = b'\x89PNG fake image') -> Path:
        path = self.inventory.assets_root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return path

    def profile(self, tenant_id: int, filament_id: Optional[int], name: str, slicer: str = 'PrusaSlicer') -> int:
        return self._insert('profiles', tenant_id, {'filament_id': filament_id, 'name': name, 'slicer': slicer})

    def usage(self, tenant_id: int, filament_id: int, recorded_at: str, remaining: float) -> int:
        return self._insert(
            'usage_history',
            tenant_id,
            {'filament_id': filament_id, 'recorded_at': recorded_at, 'remaining_percentage': remaining},
        )

    def print_job(self, tenant_id: int, name: str, started_at: Optional[str] = None, weight: float = 42.5) -> int:
        return self._insert(
            'print_jobs',
            tenant_id,
            {'name': name, 'print_started_at': started_at, 'actual_weight': weight, 'status': 'completed'},
        )

    def settings(self, tenant_id: int, language: str = 'en') -> int:
        return self._insert(
            'user_settings', tenant_id, {'language': language, 'currency': 'EUR', 'temperature_unit': 'C'}
        )

    def count(self, entity: str, tenant_id: int) -> int:
        with self.inventory.db.snapshot() as conn:
            return self.inventory.count_rows(conn, SPECS_BY_NAME[entity], tenant_id)

    def account(self, username: str):
        with self.inventory.db.connection() as conn:
            return self.inventory.find_account(conn, username)

    def _insert(self, entity: str, tenant_id: int, values: Dict[str, Any]) -> int:
        with self.inventory.db.transaction() as conn:
            return self.inventory.insert_record(conn, SPECS_BY_NAME[entity], tenant_id, values)


def make_settings(root: Path) -> Settings:
    """Settings with every path under ``root`` and no retry delays."""
    data_dir = root / 'data'
    return Settings(
        data_dir=data_dir,
        inventory_db_path=data_dir / 'inventory.db',
        registry_db_path=data_dir / 'backups.db',
        secret_key_path=data_dir / 'secrets' / 'fernet.key',
        assets_root=data_dir / 'uploads',
        local_backup_root=data_dir / 'local_backups',
        app_url='http://testserver',
        retry_attempts=3,
        retry_base_delay_seconds=0,
        retry_max_delay_seconds=0,
        google_client_id='google-client',
        google_client_secret='google-secret',
        dropbox_client_id=None,
        dropbox_client_secret=None,
        onedrive_client_id='onedrive-client',
        onedrive_client_secret='onedrive-secret',
    )


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def services(settings):
    return build_services(settings)


@pytest.fixture
def seed(services):
    return Seeder(services.inventory)
