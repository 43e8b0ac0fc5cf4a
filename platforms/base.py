from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import aiohttp

from config import PLATFORM_SCOPES, Settings
from models import Platform


class BasePlatform(ABC):
    """Upstream API of one social platform: authorization, token exchange and posting."""

    platform: Platform
    auth_url: str
    scope_separator = ' '
    requires_media = False
    uses_pkce = False

    def __init__(self, settings: Settings):
        self.settings = settings
        app = settings.app_credentials.get(self.platform)
        self.client_id = app.client_id if app else None
        self.client_secret = app.client_secret if app else None
        self.scopes: List[str] = PLATFORM_SCOPES[self.platform]
        self.timeout = aiohttp.ClientTimeout(total=settings.publish_timeout)

    @property
    def scope(self) -> str:
        return self.scope_separator.join(self.scopes)

    def get_auth_url(self, state: str, redirect_uri: str, code_challenge: Optional[str] = None) -> str:
        params = {
            'response_type': 'code',
            'client_id': self.client_id or '',
            'redirect_uri': redirect_uri,
            'state': state,
            'scope': self.scope,
        }
        if code_challenge:
            params['code_challenge'] = code_challenge
            params['code_challenge_method'] = 'S256'
        return f"{self.auth_url}?{urlencode(params)}"

    @abstractmethod
    async def exchange_code_for_token(
        self,
        code: str,
        redirect_uri: str,
        client_id: str,
        client_secret: str,
        code_verifier: Optional[str] = None,
    ) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def get_user_profile(self, access_token: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def publish_post(
        self,
        access_token: str,
        content: str,
        media_url: Optional[str] = None,
        platform_metadata: Optional[Dict] = None,
    ) -> Dict[str, Any]:
        pass


async def read_json(resp: aiohttp.ClientResponse) -> Dict[str, Any]:
    """Decode a JSON body, falling back to the raw text."""
    text = await resp.text()
    try:
        data = await resp.json(content_type=None)
    except ValueError:
        return {'raw_text': text}
    return data if isinstance(data, dict) else {'raw_text': text}


def failed(error: str, **extra) -> Dict[str, Any]:
    return {'status': 'failed', 'error': error, **extra}
