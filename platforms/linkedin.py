import json
import logging
from typing import Any, Dict, Optional

import aiohttp

from models import Platform
from .base import BasePlatform, failed, read_json

logger = logging.getLogger(__name__)


class LinkedInPlatform(BasePlatform):
    platform = Platform.LINKEDIN
    auth_url = "https://www.linkedin.com/oauth/v2/authorization"
    token_url = "https://www.linkedin.com/oauth/v2/accessToken"
    api_base = "https://api.linkedin.com/v2"

    async def exchange_code_for_token(
        self,
        code: str,
        redirect_uri: str,
        client_id: str,
        client_secret: str,
        code_verifier: Optional[str] = None,
    ) -> Dict[str, Any]:
        data = {
            'grant_type': 'authorization_code',
            'code': code,
            'redirect_uri': redirect_uri,
            'client_id': client_id,
            'client_secret': client_secret,
        }
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.post(self.token_url, data=data) as resp:
                return await read_json(resp)

    async def get_user_profile(self, access_token: str) -> Dict[str, Any]:
        """OIDC userinfo; the ``sub`` claim is the member id used in author URNs."""
        headers = {
            'Authorization': f'Bearer {access_token}',
            'Content-Type': 'application/json',
        }
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.get(f"{self.api_base}/userinfo", headers=headers) as resp:
                if resp.status != 200:
                    error_text = await resp.text()
                    logger.warning(f"❌ LinkedIn userinfo error: {resp.status}")
                    return {'id': None, 'error': f"HTTP {resp.status}: {error_text}"}

                userinfo = await resp.json()
                user_id = userinfo.get('sub') or ''
                user_id = user_id.replace('urn:li:person:', '')
                return {
                    'id': user_id or None,
                    'firstName': userinfo.get('given_name', ''),
                    'lastName': userinfo.get('family_name', ''),
                    'email': userinfo.get('email', ''),
                    'picture': userinfo.get('picture', ''),
                }

    async def publish_post(
        self,
        access_token: str,
        content: str,
        media_url: Optional[str] = None,
        platform_metadata: Optional[Dict] = None,
    ) -> Dict[str, Any]:
        platform_metadata = platform_metadata or {}
        user_id = platform_metadata.get('user_id')
        if not user_id:
            profile = await self.get_user_profile(access_token)
            user_id = profile.get('id')
            if not user_id:
                return failed('Invalid access token or insufficient LinkedIn permissions')

        headers = {
            'Authorization': f'Bearer {access_token}',
            'Content-Type': 'application/json',
            'X-Restli-Protocol-Version': '2.0.0',
        }

        share_content = {
            "shareCommentary": {"text": content[:3000]},
            "shareMediaCategory": "NONE",
        }
        if media_url:
            share_content["shareMediaCategory"] = "ARTICLE"
            share_content["media"] = [{"status": "READY", "originalUrl": media_url}]

        post_data = {
            "author": f"urn:li:person:{user_id}",
            "lifecycleState": "PUBLISHED",
            "specificContent": {"com.linkedin.ugc.ShareContent": share_content},
            "visibility": {"com.linkedin.ugc.MemberNetworkVisibility": "PUBLIC"},
        }

        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.post(f"{self.api_base}/ugcPosts", headers=headers, json=post_data) as resp:
                result_text = await resp.text()
                logger.info(f"🔗 LinkedIn API response status: {resp.status}")

                if resp.status == 201:
                    post_id = resp.headers.get('X-RestLi-Id', '')
                    if not post_id:
                        return failed('LinkedIn API returned success but no post ID', response_status=resp.status)
                    return {
                        'post_id': post_id,
                        'post_url': f"https://www.linkedin.com/feed/update/{post_id}/",
                        'status': 'published',
                        'error': None,
                    }

                return failed(
                    self._parse_linkedin_error(result_text),
                    response_status=resp.status,
                )

    def _parse_linkedin_error(self, error_text: str) -> str:
        """Readable message that still carries LinkedIn's error code."""
        try:
            error_data = json.loads(error_text)
        except ValueError:
            return f"LinkedIn error: {error_text}"

        message = error_data.get('message', 'Unknown error')
        code = error_data.get('code') or error_data.get('serviceErrorCode')
        if 'duplicate' in message.lower() and not code:
            code = 'DUPLICATE_POST'

        if 'insufficient permissions' in message.lower():
            detail = f"LinkedIn permissions error: {message}. Please ensure your app has 'w_member_social' scope."
        else:
            detail = f"LinkedIn API error: {message}"
        return f"{detail} ({code})" if code else detail
