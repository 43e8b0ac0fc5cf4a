import logging
from typing import Any, Dict, Optional

import aiohttp

from models import Platform
from .base import BasePlatform, failed, read_json

logger = logging.getLogger(__name__)


class TwitterPlatform(BasePlatform):
    """Twitter/X API v2 with OAuth 2.0 PKCE."""

    platform = Platform.TWITTER
    auth_url = "https://twitter.com/i/oauth2/authorize"
    token_url = "https://api.twitter.com/2/oauth2/token"
    api_base = "https://api.twitter.com/2"
    uses_pkce = True

    async def exchange_code_for_token(
        self,
        code: str,
        redirect_uri: str,
        client_id: str,
        client_secret: str,
        code_verifier: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not code_verifier:
            return {'error': 'invalid_request', 'error_description': 'Twitter requires a PKCE code verifier'}

        data = {
            'grant_type': 'authorization_code',
            'code': code,
            'redirect_uri': redirect_uri,
            'code_verifier': code_verifier,
            'client_id': client_id,
        }
        auth = aiohttp.BasicAuth(client_id, client_secret) if client_secret else None
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.post(self.token_url, data=data, auth=auth) as resp:
                return await read_json(resp)

    async def get_user_profile(self, access_token: str) -> Dict[str, Any]:
        headers = {'Authorization': f'Bearer {access_token}'}
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.get(f"{self.api_base}/users/me", headers=headers) as resp:
                data = await read_json(resp)
                if resp.status != 200:
                    return {'id': None, 'error': f"HTTP {resp.status}: {data.get('detail') or data}"}
                user = data.get('data', {})
                return {
                    'id': user.get('id'),
                    'username': user.get('username', ''),
                    'name': user.get('name', ''),
                }

    async def publish_post(
        self,
        access_token: str,
        content: str,
        media_url: Optional[str] = None,
        platform_metadata: Optional[Dict] = None,
    ) -> Dict[str, Any]:
        if media_url:
            # Media upload needs the v1.1 OAuth 1.0a endpoint; post text only
            logger.info("ℹ️ Twitter post sent without image")

        headers = {
            'Authorization': f'Bearer {access_token}',
            'Content-Type': 'application/json',
        }
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.post(f"{self.api_base}/tweets", headers=headers, json={'text': content[:280]}) as resp:
                result = await read_json(resp)
                tweet_id = result.get('data', {}).get('id') if isinstance(result.get('data'), dict) else None
                if resp.status in (200, 201) and tweet_id:
                    return {
                        'post_id': tweet_id,
                        'post_url': f"https://x.com/i/web/status/{tweet_id}",
                        'status': 'published',
                        'error': None,
                    }
                detail = result.get('detail') or result.get('title') or result.get('raw_text') or str(result)
                return failed(f"Twitter API error: {detail}", response_status=resp.status)
