"""Secret broker service.

Holds per-user platform credentials in the managed secret store and performs
the operations that need them server-side: token exchange, connectivity
tests and delegated LinkedIn publishing. Every response is JSON of the form
``{success: bool, error?, ...}``.
"""

import asyncio
import hmac
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import aiohttp
import uvicorn
from cryptography.fernet import InvalidToken
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import SUPPORTED_PLATFORMS, Settings
from database import get_session_factory, init_db
from encryption import TokenCipher
from logging_setup import redact
from models import Platform, PlatformCredential
from platforms import get_platform
from secret_manager import SecretManager, app_secret_id, sanitize_secret_value

logger = logging.getLogger(__name__)


def _error(message: str, status_code: int = 400, **extra) -> JSONResponse:
    return JSONResponse({'success': False, 'error': message, **extra}, status_code=status_code)


def _internal_error(context: str, e: Exception) -> JSONResponse:
    logger.exception(f"💥 {context}")
    return _error('Internal server error', status_code=500, details=f"{context}: {type(e).__name__}")


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _validate(source: Dict[str, Any], require_platform: bool) -> Tuple[Optional[JSONResponse], Optional[str], Optional[Platform]]:
    user_id = source.get('userId')
    if not user_id:
        return _error('userId is required'), None, None

    platform_name = source.get('platform')
    if not platform_name:
        if require_platform:
            return _error('platform is required'), None, None
        return None, str(user_id), None
    try:
        platform = Platform(platform_name)
    except ValueError:
        return _error(f"Unsupported platform: {platform_name}"), None, None
    return None, str(user_id), platform


def create_broker_app(settings: Settings, secret_manager: SecretManager, platform_factory=get_platform) -> FastAPI:
    app = FastAPI(title="Social Link Secret Broker")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=['GET', 'POST', 'DELETE', 'OPTIONS'],
        allow_headers=['*'],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return _error(str(exc.detail), status_code=exc.status_code)

    def app_credentials(platform: Platform) -> Tuple[Optional[str], Optional[str]]:
        client_id = secret_manager.get_secret_value(app_secret_id(platform, 'client-id'))
        client_secret = secret_manager.get_secret_value(app_secret_id(platform, 'client-secret'))
        configured = settings.app_credentials.get(platform)
        if configured:
            client_id = client_id or sanitize_secret_value(configured.client_id)
            client_secret = client_secret or sanitize_secret_value(configured.client_secret)
        if client_id:
            # Client ids are alphanumeric; stray newlines break the token request
            client_id = re.sub(r'\s+', '', client_id)
        return client_id or None, client_secret or None

    def stored_credential(user_id: str, platform: Platform) -> PlatformCredential:
        return PlatformCredential.from_wire(platform, secret_manager.get_credentials(user_id, platform))

    @app.get("/health")
    async def health():
        return {
            'success': True,
            'message': 'Social Link secret broker running',
            'timestamp': datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/")
    async def get_credentials(request: Request):
        source = dict(request.query_params)
        invalid, user_id, platform = _validate(source, require_platform=False)
        if invalid:
            return invalid
        logger.info(f"🔐 Reading credentials user={user_id} platform={platform.value if platform else 'all'}")

        try:
            if platform:
                return {
                    'success': True,
                    'platform': platform.value,
                    'credentials': secret_manager.get_credentials(user_id, platform),
                }

            credentials = {}
            for each in SUPPORTED_PLATFORMS:
                try:
                    credentials[each.value] = secret_manager.get_credentials(user_id, each)
                except (SQLAlchemyError, InvalidToken, ValueError) as e:
                    logger.error(f"❌ Could not read {each.value} credentials for {user_id}: {e}")
                    credentials[each.value] = {'connected': False}
            return {'success': True, 'credentials': credentials}
        except Exception as e:
            return _internal_error('Error reading credentials', e)

    @app.post("/")
    async def post_credentials(request: Request):
        body = await _json_body(request)
        invalid, user_id, platform = _validate(body, require_platform=True)
        if invalid:
            return invalid
        action = body.get('action')
        logger.info(f"💾 POST user={user_id} platform={platform.value} action={action or 'save'}")

        try:
            if action == 'test':
                return await test_connection(user_id, platform)
            if action == 'exchange_token':
                return await exchange_token(user_id, platform, body)
            if action == 'publish':
                return await publish(user_id, platform, body)
            if action:
                return _error(f"Unsupported action: {action}")

            credentials = body.get('credentials')
            if not isinstance(credentials, dict):
                return _error('credentials are required')
            secret_manager.save_credentials(user_id, platform, credentials)
            return {
                'success': True,
                'message': f"{platform.display_name} credentials saved",
                'platform': platform.value,
            }
        except Exception as e:
            return _internal_error(f"Error handling {action or 'save'} for {platform.value}", e)

    @app.delete("/")
    async def delete_credentials(request: Request):
        body = await _json_body(request) or dict(request.query_params)
        invalid, user_id, platform = _validate(body, require_platform=True)
        if invalid:
            return invalid

        try:
            secret_manager.delete_credentials(user_id, platform)
        except Exception as e:
            return _internal_error('Error deleting credentials', e)
        return {
            'success': True,
            'message': f"{platform.display_name} credentials deleted",
            'platform': platform.value,
        }

    @app.post("/admin/app-credentials")
    async def set_app_credentials(request: Request):
        if not settings.admin_secret:
            return _error('Admin endpoint disabled: ADMIN_SECRET is not configured', status_code=503)

        body = await _json_body(request)
        if not hmac.compare_digest(str(body.get('adminSecret') or ''), settings.admin_secret):
            logger.warning("🚫 Rejected app credential update with a bad admin secret")
            return _error('Forbidden', status_code=403)

        try:
            platform = Platform(body.get('platform'))
        except ValueError:
            return _error(f"Unsupported platform: {body.get('platform')}")
        if not body.get('clientId') or not body.get('clientSecret'):
            return _error('clientId and clientSecret are required')

        try:
            secret_manager.set_secret_value(app_secret_id(platform, 'client-id'), body['clientId'])
            secret_manager.set_secret_value(app_secret_id(platform, 'client-secret'), body['clientSecret'])
        except Exception as e:
            return _internal_error('Error saving app credentials', e)
        logger.info(f"🔑 Updated {platform.value} app credentials")
        return {'success': True, 'message': f"{platform.display_name} app credentials updated"}

    async def test_connection(user_id: str, platform: Platform):
        credential = stored_credential(user_id, platform)
        if not credential.connected or not credential.access_token:
            return {'success': False, 'error': f"No credentials found for {platform.value}", 'platform': platform.value}

        api = platform_factory(platform, settings)
        try:
            profile = await api.get_user_profile(credential.access_token)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            return {
                'success': False,
                'error': f"Error connecting to {platform.display_name}: {e or type(e).__name__}",
                'platform': platform.value,
            }

        if not profile.get('id'):
            return {
                'success': False,
                'error': profile.get('error') or f"{platform.display_name} rejected the stored token",
                'platform': platform.value,
            }
        return {
            'success': True,
            'message': f"{platform.display_name} connection verified",
            'platform': platform.value,
            'externalId': profile['id'],
        }

    async def exchange_token(user_id: str, platform: Platform, body: Dict[str, Any]):
        code = body.get('code')
        redirect_uri = body.get('redirectUri')
        if not code or not redirect_uri:
            return _error('code and redirectUri are required')

        client_id, client_secret = app_credentials(platform)
        if not client_id or not client_secret:
            return _error(f"{platform.display_name} app credentials are not configured")

        api = platform_factory(platform, settings)
        logger.info(f"🔄 Exchanging {platform.value} code for user {user_id}, redirect_uri={redirect_uri}")
        try:
            token_data = await api.exchange_code_for_token(
                code, redirect_uri, client_id, client_secret, body.get('codeVerifier')
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            return _error(f"{platform.display_name} token exchange failed: {e or type(e).__name__}", status_code=502)

        access_token = token_data.get('access_token')
        if not access_token:
            detail = (token_data.get('error_description') or token_data.get('error_message')
                      or token_data.get('error') or token_data.get('raw_text') or 'Unknown error')
            logger.error(f"❌ {platform.value} token exchange rejected: {redact(detail)}")
            return _error(f"{platform.display_name} token exchange failed: {detail}")

        try:
            profile = await api.get_user_profile(access_token)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"⚠️ Could not load {platform.value} profile: {e}")
            profile = {}
        external_id = profile.get('id') or token_data.get('user_id')
        profile = {k: v for k, v in profile.items() if k not in ('id', 'error') and v}

        record = {
            'connected': True,
            'accessToken': access_token,
            'refreshToken': token_data.get('refresh_token'),
            'expiresIn': token_data.get('expires_in'),
            'externalId': str(external_id) if external_id else None,
            'profile': profile,
            'savedAt': datetime.now(timezone.utc).isoformat(),
        }
        secret_manager.save_credentials(user_id, platform, record)

        return {
            'success': True,
            'message': f"{platform.display_name} authorized",
            'platform': platform.value,
            'credentials': {
                'connected': True,
                'redacted': True,
                'externalId': record['externalId'],
                'profile': profile,
            },
        }

    async def publish(user_id: str, platform: Platform, body: Dict[str, Any]):
        if platform != Platform.LINKEDIN:
            return _error('Publishing through the broker is only supported for LinkedIn')
        content = body.get('content')
        if not isinstance(content, str) or not content.strip():
            return _error('content is required')

        credential = stored_credential(user_id, platform)
        if not credential.connected or not credential.access_token:
            return _error(f"{platform.display_name} is not connected")

        if not settings.enable_real_publish:
            logger.info(f"🧪 Demo mode: {platform.value} publish validated but not sent")
            return {
                'success': False,
                'demo': True,
                'error': 'Real publishing is disabled on the secret broker (ENABLE_REAL_PUBLISH=false)',
            }

        api = platform_factory(platform, settings)
        try:
            result = await api.publish_post(
                credential.access_token,
                content,
                body.get('imageUrl'),
                {'user_id': credential.external_id},
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            return _error(f"{platform.display_name} API unreachable: {e or type(e).__name__}", status_code=502)

        if result.get('status') != 'published':
            return _error(result.get('error') or 'Unknown publish error', status_code=502)
        return {
            'success': True,
            'message': f"Published to {platform.display_name}",
            'platform': platform.value,
            'postId': result.get('post_id'),
            'postUrl': result.get('post_url'),
        }

    return app


def build_broker_app(settings: Settings) -> FastAPI:
    cipher = TokenCipher(settings.encryption_key)
    if not cipher.self_test():
        raise RuntimeError("Encryption self-test failed")
    engine = init_db(settings.broker_database_url)
    secret_manager = SecretManager(get_session_factory(engine), cipher)
    logger.info(f"🚀 Secret broker ready, allowed origins: {', '.join(settings.allowed_origins)}")
    return create_broker_app(settings, secret_manager)


def run_broker(settings: Settings, host: str = "0.0.0.0", port: int = 8000) -> None:
    uvicorn.run(build_broker_app(settings), host=host, port=port, log_level=settings.log_level.lower())
