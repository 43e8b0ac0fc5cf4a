from contextlib import asynccontextmanager

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer as StubServer

from errors import BrokerError, BrokerUnreachableError
from models import Platform, PlatformCredential
from secret_broker_client import SecretBrokerClient


@asynccontextmanager
async def broker_stub(handler):
    """Serve ``handler`` on / and /health; yields (base_url, recorded requests)."""
    seen = []

    async def recording_handler(request):
        body = await request.json() if request.can_read_body else None
        seen.append({'method': request.method, 'path': request.path, 'query': dict(request.query), 'body': body})
        return await handler(request, body)

    app = web.Application()
    app.router.add_route('*', '/', recording_handler)
    app.router.add_route('*', '/health', recording_handler)
    server = StubServer(app)
    await server.start_server()
    try:
        yield f"http://{server.host}:{server.port}", seen
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_get_credentials():
    async def handler(request, body):
        return web.json_response({
            'success': True,
            'platform': 'linkedin',
            'credentials': {'connected': True, 'accessToken': 'tok', 'memberId': 'abc'},
        })

    async with broker_stub(handler) as (url, seen):
        client = SecretBrokerClient(url, 'user-1')
        credential = await client.get_credentials(Platform.LINKEDIN)

    assert credential.connected
    assert credential.external_id == 'abc'
    assert seen[0]['query'] == {'userId': 'user-1', 'platform': 'linkedin'}


@pytest.mark.asyncio
async def test_get_all_credentials():
    async def handler(request, body):
        return web.json_response({
            'success': True,
            'credentials': {
                'linkedin': {'connected': True, 'accessToken': 'tok'},
                'instagram': {'connected': False},
            },
        })

    async with broker_stub(handler) as (url, seen):
        credentials = await SecretBrokerClient(url, 'user-1').get_all_credentials()

    assert credentials[Platform.LINKEDIN].connected
    assert credentials[Platform.INSTAGRAM].connected is False
    assert credentials[Platform.TWITTER].connected is False
    assert seen[0]['query'] == {'userId': 'user-1'}


@pytest.mark.asyncio
async def test_not_found_reads_as_disconnected():
    async def handler(request, body):
        return web.json_response({'success': False, 'errorKind': 'NOT_FOUND', 'error': 'missing'}, status=404)

    async with broker_stub(handler) as (url, _):
        credential = await SecretBrokerClient(url, 'user-1').get_credentials('twitter')

    assert credential.connected is False


@pytest.mark.asyncio
async def test_error_message_surfaced():
    async def handler(request, body):
        return web.json_response({'success': False, 'error': 'LinkedIn token exchange failed: invalid code'}, status=400)

    async with broker_stub(handler) as (url, _):
        with pytest.raises(BrokerError) as exc_info:
            await SecretBrokerClient(url, 'user-1').exchange_token(Platform.LINKEDIN, 'code', 'http://cb')

    assert str(exc_info.value) == 'LinkedIn token exchange failed: invalid code'
    assert exc_info.value.status == 400


@pytest.mark.asyncio
async def test_gateway_error_is_unreachable():
    async def handler(request, body):
        return web.Response(text='<html>Bad gateway</html>', status=502, content_type='text/html')

    async with broker_stub(handler) as (url, _):
        with pytest.raises(BrokerUnreachableError):
            await SecretBrokerClient(url, 'user-1').get_credentials(Platform.LINKEDIN)


@pytest.mark.asyncio
async def test_connection_refused_is_unreachable():
    async def handler(request, body):
        return web.json_response({'success': True})

    async with broker_stub(handler) as (url, _):
        pass

    with pytest.raises(BrokerUnreachableError):
        await SecretBrokerClient(url, 'user-1', timeout=2).get_credentials(Platform.LINKEDIN)


@pytest.mark.asyncio
async def test_exchange_token_sends_pkce_verifier():
    async def handler(request, body):
        return web.json_response({'success': True, 'credentials': {'connected': True, 'redacted': True}})

    async with broker_stub(handler) as (url, seen):
        await SecretBrokerClient(url, 'user-1').exchange_token(
            Platform.TWITTER, 'the-code', 'http://localhost:8081/auth/twitter/callback/', 'verifier'
        )

    assert seen[0]['body'] == {
        'userId': 'user-1',
        'platform': 'twitter',
        'action': 'exchange_token',
        'code': 'the-code',
        'redirectUri': 'http://localhost:8081/auth/twitter/callback/',
        'codeVerifier': 'verifier',
    }


@pytest.mark.asyncio
async def test_save_and_delete():
    async def handler(request, body):
        if request.method == 'DELETE':
            return web.json_response({'success': False, 'error': 'gone'}, status=404)
        return web.json_response({'success': True, 'message': 'LinkedIn credentials saved'})

    credential = PlatformCredential(platform=Platform.LINKEDIN, connected=True, access_token='tok')
    async with broker_stub(handler) as (url, seen):
        client = SecretBrokerClient(url, 'user-1')
        message = await client.save_credentials(Platform.LINKEDIN, credential)
        await client.delete_credentials(Platform.LINKEDIN)

    assert message == 'LinkedIn credentials saved'
    assert seen[0]['body']['credentials']['accessToken'] == 'tok'
    assert seen[1]['method'] == 'DELETE'


@pytest.mark.asyncio
async def test_test_connection_never_raises():
    async def handler(request, body):
        return web.json_response({'success': False, 'error': 'No credentials found for instagram'})

    async with broker_stub(handler) as (url, _):
        result = await SecretBrokerClient(url, 'user-1').test_connection(Platform.INSTAGRAM)

    assert result == {'success': False, 'platform': 'instagram', 'error': 'No credentials found for instagram'}


@pytest.mark.asyncio
async def test_health_check():
    async def handler(request, body):
        return web.json_response({'success': True, 'message': 'ok'})

    async with broker_stub(handler) as (url, seen):
        assert await SecretBrokerClient(url, 'user-1').health_check() is True

    assert seen[0]['path'] == '/health'
