"""
Shared fixtures for the Cosmetica session client tests.
"""

import pytest
from unittest.mock import MagicMock

from cosmetica.api_client import CosmeticaAPIClient
from cosmetica.config import ClientConfiguration
from cosmetica_shared.models import Identity, LoginInfo, UserInfo, UserSettings, ProfileData

TEST_UUID = "f1c7d4b2-3a5e-4c8f-9b1d-2e6a7c8d9e0f"
OTHER_UUID = "0a1b2c3d-4e5f-4a6b-8c7d-9e0f1a2b3c4d"

ENVIRONMENT_VARIABLES = (
    'COSMETICA_API_URL',
    'COSMETICA_API_URL_LOOKUP',
    'COSMETICA_TOKEN',
    'COSMETICA_CLIENT',
    'COSMETICA_CACHE_DIR',
    'COSMETICA_LOG_LEVEL',
    'COSMETICA_ELEVATED_LOGGING',
    'COSMETICA_ACCESS_TOKEN',
)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep the developer's environment out of the tests."""
    for variable in ENVIRONMENT_VARIABLES:
        monkeypatch.delenv(variable, raising=False)


@pytest.fixture
def identity():
    return Identity(user_id=TEST_UUID, display_name="Steve")


@pytest.fixture
def other_identity():
    return Identity(user_id=OTHER_UUID, display_name="Alex")


@pytest.fixture
def config(tmp_path):
    """Configuration backed by a temporary directory."""
    config = ClientConfiguration(str(tmp_path / "client.conf"))
    config.set_override('auth.cache_dir', str(tmp_path / "cache"))
    return config


@pytest.fixture
def api_client(identity):
    """API client mock answering every call successfully."""
    api = MagicMock(spec=CosmeticaAPIClient)
    api.api_url = "https://api.example.test"
    api.get_uuid.return_value = {'uuid': TEST_UUID, 'username': 'Steve'}
    api.get_login_info.return_value = LoginInfo(new_player=False)
    api.get_user_settings.return_value = UserSettings.from_dict({'uuid': TEST_UUID, 'dohats': True})
    api.get_user_info.return_value = UserInfo(lore="")
    api.get_user_profile.return_value = ProfileData(identity=identity, skin="steve.png")
    return api
