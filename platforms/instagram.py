import logging
from typing import Any, Dict, Optional

import aiohttp

from models import Platform
from .base import BasePlatform, failed, read_json

logger = logging.getLogger(__name__)


class InstagramPlatform(BasePlatform):
    """Instagram API with Instagram Login: container creation, then media_publish."""

    platform = Platform.INSTAGRAM
    auth_url = "https://www.instagram.com/oauth/authorize"
    token_url = "https://api.instagram.com/oauth/access_token"
    graph_base = "https://graph.instagram.com/v21.0"
    scope_separator = ','
    requires_media = True

    async def exchange_code_for_token(
        self,
        code: str,
        redirect_uri: str,
        client_id: str,
        client_secret: str,
        code_verifier: Optional[str] = None,
    ) -> Dict[str, Any]:
        data = {
            'client_id': client_id,
            'client_secret': client_secret,
            'grant_type': 'authorization_code',
            'redirect_uri': redirect_uri,
            'code': code,
        }
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.post(self.token_url, data=data) as resp:
                token_data = await read_json(resp)
                # Newer responses wrap the token in a one-element "data" list
                if 'data' in token_data and isinstance(token_data['data'], list) and token_data['data']:
                    token_data = token_data['data'][0]
                return token_data

    async def get_user_profile(self, access_token: str) -> Dict[str, Any]:
        params = {'fields': 'user_id,username', 'access_token': access_token}
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.get(f"{self.graph_base}/me", params=params) as resp:
                data = await read_json(resp)
                if resp.status != 200:
                    return {'id': None, 'error': f"HTTP {resp.status}: {data.get('error') or data}"}
                return {
                    'id': str(data.get('user_id') or data.get('id') or '') or None,
                    'username': data.get('username', ''),
                }

    async def publish_post(
        self,
        access_token: str,
        content: str,
        media_url: Optional[str] = None,
        platform_metadata: Optional[Dict] = None,
    ) -> Dict[str, Any]:
        if not media_url:
            return failed('Instagram posts require an image')

        platform_metadata = platform_metadata or {}
        ig_user_id = platform_metadata.get('user_id') or 'me'

        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            container_params = {
                'image_url': media_url,
                'caption': content[:2200],
                'access_token': access_token,
            }
            async with session.post(f"{self.graph_base}/{ig_user_id}/media", data=container_params) as resp:
                container = await read_json(resp)
                if resp.status != 200 or not container.get('id'):
                    return failed(f"Instagram container error: {self._error_message(container)}",
                                  response_status=resp.status)

            publish_params = {
                'creation_id': container['id'],
                'access_token': access_token,
            }
            async with session.post(f"{self.graph_base}/{ig_user_id}/media_publish", data=publish_params) as resp:
                result = await read_json(resp)
                if resp.status == 200 and result.get('id'):
                    logger.info(f"✅ Instagram media published: {result['id']}")
                    return {
                        'post_id': result['id'],
                        'post_url': None,
                        'status': 'published',
                        'error': None,
                    }
                return failed(f"Instagram publish error: {self._error_message(result)}",
                              response_status=resp.status)

    @staticmethod
    def _error_message(data: Dict[str, Any]) -> str:
        error = data.get('error')
        if isinstance(error, dict):
            return error.get('message') or str(error)
        return str(error or data)
