import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp

from config import SUPPORTED_PLATFORMS
from errors import BrokerError, BrokerUnreachableError, CredentialErrorKind
from models import Platform, PlatformCredential

logger = logging.getLogger(__name__)

GATEWAY_STATUSES = (502, 503, 504)


class SecretBrokerClient:
    """JSON-over-HTTP client for the secret broker, scoped to one user."""

    def __init__(self, base_url: str, user_id: str, timeout: float = 30.0):
        self.base_url = base_url.rstrip('/')
        self.user_id = user_id
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def _request(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        path: str = '',
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        logger.debug(f"▶️ Broker request {method} {url} action={(body or {}).get('action')} "
                     f"platform={(body or params or {}).get('platform')}")
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.request(method, url, params=params, json=body) as resp:
                    status = resp.status
                    text = await resp.text()
                    try:
                        data = await resp.json(content_type=None)
                    except ValueError:
                        data = None
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise BrokerUnreachableError(f"Secret broker unreachable: {e or type(e).__name__}")

        logger.debug(f"◀️ Broker response {status}")
        if not isinstance(data, dict):
            if status in GATEWAY_STATUSES:
                raise BrokerUnreachableError(f"Secret broker unavailable: HTTP {status}", status=status)
            raise BrokerError(f"HTTP {status}: {text[:200]}", status=status)

        if status >= 400 or not data.get('success'):
            raise BrokerError(
                data.get('error') or f"HTTP {status}",
                status=status,
                error_kind=data.get('errorKind'),
            )
        return data

    async def get_credentials(self, platform: Platform) -> PlatformCredential:
        platform = Platform(platform)
        try:
            data = await self._request('GET', params={'userId': self.user_id, 'platform': platform.value})
        except BrokerError as e:
            if isinstance(e, BrokerUnreachableError):
                raise
            if e.status == 404 or e.error_kind == CredentialErrorKind.NOT_FOUND.value:
                return PlatformCredential.disconnected(platform)
            raise
        return PlatformCredential.from_wire(platform, data.get('credentials'))

    async def get_all_credentials(self) -> Dict[Platform, PlatformCredential]:
        data = await self._request('GET', params={'userId': self.user_id})
        credentials = data.get('credentials') or {}
        return {
            platform: PlatformCredential.from_wire(platform, credentials.get(platform.value))
            for platform in SUPPORTED_PLATFORMS
        }

    async def save_credentials(self, platform: Platform, credential: PlatformCredential) -> str:
        platform = Platform(platform)
        data = await self._request('POST', body={
            'userId': self.user_id,
            'platform': platform.value,
            'credentials': credential.to_wire(),
        })
        return data.get('message', '')

    async def delete_credentials(self, platform: Platform) -> None:
        platform = Platform(platform)
        try:
            await self._request('DELETE', body={'userId': self.user_id, 'platform': platform.value})
        except BrokerError as e:
            if e.status == 404 and not isinstance(e, BrokerUnreachableError):
                return
            raise

    async def test_connection(self, platform: Platform) -> Dict[str, Any]:
        platform = Platform(platform)
        try:
            return await self._request('POST', body={
                'userId': self.user_id,
                'platform': platform.value,
                'action': 'test',
            })
        except BrokerError as e:
            return {'success': False, 'platform': platform.value, 'error': str(e)}

    async def exchange_token(
        self,
        platform: Platform,
        code: str,
        redirect_uri: str,
        code_verifier: Optional[str] = None,
    ) -> Dict[str, Any]:
        body = {
            'userId': self.user_id,
            'platform': Platform(platform).value,
            'action': 'exchange_token',
            'code': code,
            'redirectUri': redirect_uri,
        }
        if code_verifier:
            body['codeVerifier'] = code_verifier
        return await self._request('POST', body=body)

    async def publish(self, platform: Platform, content: str, image_url: Optional[str] = None) -> Dict[str, Any]:
        return await self._request('POST', body={
            'userId': self.user_id,
            'platform': Platform(platform).value,
            'action': 'publish',
            'content': content,
            'imageUrl': image_url,
        })

    async def health_check(self) -> bool:
        try:
            data = await self._request('GET', path='/health')
        except BrokerError as e:
            logger.error(f"Secret broker health check failed: {e}")
            return False
        return bool(data.get('success'))
