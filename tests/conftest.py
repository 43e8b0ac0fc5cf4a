"""
Pytest configuration and shared fixtures.

- Settings built in code (no .env needed)
- In-memory SQLite session factories
- A controllable clock and fake collaborators for the async components
"""

import os
import sys
from unittest.mock import AsyncMock, MagicMock

import pytest

# Environment setup before any imports
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["USE_CLOUD_STORAGE"] = "false"

# Ensure project root is in path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from cryptography.fernet import Fernet  # noqa: E402

from config import AppCredentials, Settings  # noqa: E402
from database import get_session_factory, init_db  # noqa: E402
from encryption import TokenCipher  # noqa: E402
from models import Platform  # noqa: E402
from secret_manager import SecretManager  # noqa: E402


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakePlatformApi:
    """Stands in for a ``platforms`` class in broker and adapter tests."""

    def __init__(self, platform=Platform.LINKEDIN, requires_media=False, uses_pkce=False):
        self.platform = platform
        self.requires_media = requires_media
        self.uses_pkce = uses_pkce
        self.token_response = {
            'access_token': 'upstream-access-token',
            'refresh_token': 'upstream-refresh-token',
            'expires_in': 5184000,
        }
        self.profile = {'id': 'member-42', 'name': 'Ada Lovelace', 'email': 'ada@example.com'}
        self.publish_result = {
            'status': 'published',
            'post_id': 'urn:li:share:1',
            'post_url': 'https://www.linkedin.com/feed/update/urn:li:share:1/',
            'error': None,
        }
        self.exchange_code_for_token = AsyncMock(side_effect=self._exchange)
        self.get_user_profile = AsyncMock(side_effect=self._profile)
        self.publish_post = AsyncMock(side_effect=self._publish)

    async def _exchange(self, code, redirect_uri, client_id, client_secret, code_verifier=None):
        return dict(self.token_response)

    async def _profile(self, access_token):
        return dict(self.profile)

    async def _publish(self, access_token, content, media_url=None, platform_metadata=None):
        return dict(self.publish_result)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        use_cloud_storage=False,
        secret_broker_url='http://broker.test',
        app_origin='http://localhost:8081',
        user_id='test-user',
        database_url='sqlite://',
        broker_database_url='sqlite://',
        encryption_key=Fernet.generate_key().decode('utf-8'),
        admin_secret='admin-secret',
        credential_cache_ttl=300.0,
        oauth_timeout=2.0,
        publish_timeout=1.0,
        broker_timeout=2.0,
        allowed_origins=['http://localhost:3000'],
        app_credentials={
            Platform.LINKEDIN: AppCredentials('linkedin-client', 'linkedin-secret'),
            Platform.INSTAGRAM: AppCredentials('instagram-client', 'instagram-secret'),
            Platform.TWITTER: AppCredentials('twitter-client', 'twitter-secret'),
        },
    )


@pytest.fixture
def session_factory():
    return get_session_factory(init_db('sqlite://'))


@pytest.fixture
def cipher(settings):
    return TokenCipher(settings.encryption_key)


@pytest.fixture
def secret_manager(session_factory, cipher):
    return SecretManager(session_factory, cipher)


@pytest.fixture
def fake_platform():
    return FakePlatformApi()


@pytest.fixture
def mock_broker():
    """SecretBrokerClient double with every network call mocked."""
    broker = MagicMock()
    broker.get_credentials = AsyncMock()
    broker.save_credentials = AsyncMock(return_value='saved')
    broker.delete_credentials = AsyncMock(return_value=None)
    broker.exchange_token = AsyncMock()
    broker.publish = AsyncMock()
    broker.test_connection = AsyncMock()
    broker.health_check = AsyncMock(return_value=True)
    return broker
