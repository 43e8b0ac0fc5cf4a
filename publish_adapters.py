import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

import aiohttp

from config import SUPPORTED_PLATFORMS, Settings
from credential_store import CredentialStore
from errors import BrokerError, CredentialError
from models import AdapterResult, Platform, PlatformCredential
from platforms import get_platform
from platforms.base import BasePlatform
from secret_broker_client import SecretBrokerClient

logger = logging.getLogger(__name__)


class PublishAdapter(ABC):
    """Posts content to one platform. Failures come back as results, never as exceptions."""

    requires_media = False

    def __init__(self, platform: Platform, credential_store: CredentialStore):
        self.platform = Platform(platform)
        self.credential_store = credential_store

    async def publish(self, content: str, media_url: Optional[str] = None) -> AdapterResult:
        name = self.platform.display_name
        try:
            credential = await self.credential_store.get(self.platform)
        except CredentialError as e:
            return AdapterResult(success=False, error=f"Could not read {name} credentials: {e}")

        if not credential.connected:
            return AdapterResult(success=False, error=f"{name} is not connected", not_connected=True)

        try:
            return await self._publish(credential, content, media_url)
        except (aiohttp.ClientError, asyncio.TimeoutError, BrokerError) as e:
            logger.error(f"❌ {name} publish error: {e or type(e).__name__}")
            return AdapterResult(success=False, error=str(e) or type(e).__name__)

    @abstractmethod
    async def _publish(self, credential: PlatformCredential, content: str, media_url: Optional[str]) -> AdapterResult:
        pass


class DirectPublishAdapter(PublishAdapter):
    """Calls the platform API from this process with the stored access token."""

    def __init__(self, platform_api: BasePlatform, credential_store: CredentialStore):
        super().__init__(platform_api.platform, credential_store)
        self.platform_api = platform_api
        self.requires_media = platform_api.requires_media

    async def _publish(self, credential: PlatformCredential, content: str, media_url: Optional[str]) -> AdapterResult:
        if not credential.access_token:
            return AdapterResult(
                success=False,
                error=f"No usable {self.platform.display_name} access token on this device",
                not_connected=True,
            )

        result = await self.platform_api.publish_post(
            credential.access_token,
            content,
            media_url,
            {'user_id': credential.external_id},
        )
        if result.get('status') == 'published':
            return AdapterResult(success=True, post_id=result.get('post_id'), post_url=result.get('post_url'))
        return AdapterResult(success=False, error=result.get('error') or 'Unknown publish error')


class BrokerPublishAdapter(PublishAdapter):
    """Delegates the post to the secret broker, which holds the token."""

    def __init__(self, platform: Platform, credential_store: CredentialStore, broker: SecretBrokerClient):
        super().__init__(platform, credential_store)
        self.broker = broker

    async def _publish(self, credential: PlatformCredential, content: str, media_url: Optional[str]) -> AdapterResult:
        data = await self.broker.publish(self.platform, content, media_url)
        return AdapterResult(
            success=True,
            post_id=data.get('postId'),
            post_url=data.get('postUrl'),
        )


def build_adapters(
    settings: Settings,
    credential_store: CredentialStore,
    broker: Optional[SecretBrokerClient] = None,
    platform_factory=get_platform,
) -> Dict[Platform, PublishAdapter]:
    adapters = {}
    for platform in SUPPORTED_PLATFORMS:
        if platform == Platform.LINKEDIN and broker is not None:
            adapters[platform] = BrokerPublishAdapter(platform, credential_store, broker)
        else:
            adapters[platform] = DirectPublishAdapter(platform_factory(platform, settings), credential_store)
    return adapters
