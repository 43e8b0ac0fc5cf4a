from urllib.parse import parse_qs, urlparse

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer as StubServer

from models import Platform
from platforms import get_platform
from platforms.instagram import InstagramPlatform
from platforms.linkedin import LinkedInPlatform
from platforms.twitter import TwitterPlatform


@pytest_asyncio.fixture
async def upstream():
    """Fake provider API; tests register routes before calling ``start``."""
    app = web.Application()
    received = []
    servers = []

    async def start():
        server = StubServer(app)
        await server.start_server()
        servers.append(server)
        return f"http://{server.host}:{server.port}"

    yield app, received, start
    for server in servers:
        await server.close()


def test_get_platform(settings):
    assert isinstance(get_platform('linkedin', settings), LinkedInPlatform)
    assert isinstance(get_platform(Platform.TWITTER, settings), TwitterPlatform)
    with pytest.raises(ValueError):
        get_platform('myspace', settings)


def test_instagram_scope_is_comma_separated(settings):
    url = InstagramPlatform(settings).get_auth_url('nonce', 'http://localhost:8081/auth/instagram/callback/')

    query = parse_qs(urlparse(url).query)
    assert query['scope'] == ['instagram_business_basic,instagram_business_content_publish']
    assert query['client_id'] == ['instagram-client']


@pytest.mark.asyncio
async def test_linkedin_publish_with_image(settings, upstream):
    app, received, start = upstream

    async def ugc_posts(request):
        received.append((request.headers['Authorization'], await request.json()))
        return web.Response(status=201, headers={'X-RestLi-Id': 'urn:li:share:77'})

    app.router.add_post('/ugcPosts', ugc_posts)
    linkedin = LinkedInPlatform(settings)
    linkedin.api_base = await start()

    result = await linkedin.publish_post('tok', 'Hello', 'https://cdn.example.com/a.png', {'user_id': 'member-42'})

    assert result['status'] == 'published'
    assert result['post_url'] == 'https://www.linkedin.com/feed/update/urn:li:share:77/'
    authorization, body = received[0]
    assert authorization == 'Bearer tok'
    assert body['author'] == 'urn:li:person:member-42'
    share = body['specificContent']['com.linkedin.ugc.ShareContent']
    assert share['shareMediaCategory'] == 'ARTICLE'
    assert share['media'][0]['originalUrl'] == 'https://cdn.example.com/a.png'


@pytest.mark.asyncio
async def test_linkedin_duplicate_error_carries_code(settings, upstream):
    app, _, start = upstream

    async def ugc_posts(request):
        return web.json_response({'message': 'Content is a duplicate of urn:li:share:1', 'status': 422}, status=422)

    app.router.add_post('/ugcPosts', ugc_posts)
    linkedin = LinkedInPlatform(settings)
    linkedin.api_base = await start()

    result = await linkedin.publish_post('tok', 'Hello', None, {'user_id': 'member-42'})

    assert result['status'] == 'failed'
    assert 'DUPLICATE_POST' in result['error']
    assert result['response_status'] == 422


@pytest.mark.asyncio
async def test_linkedin_profile_strips_urn(settings, upstream):
    app, _, start = upstream

    async def userinfo(request):
        return web.json_response({'sub': 'urn:li:person:abc', 'given_name': 'Ada', 'family_name': 'Lovelace'})

    app.router.add_get('/userinfo', userinfo)
    linkedin = LinkedInPlatform(settings)
    linkedin.api_base = await start()

    profile = await linkedin.get_user_profile('tok')

    assert profile['id'] == 'abc'
    assert profile['firstName'] == 'Ada'


@pytest.mark.asyncio
async def test_twitter_exchange_needs_verifier(settings):
    result = await TwitterPlatform(settings).exchange_code_for_token('c', 'http://x/cb/', 'id', 'secret')

    assert result['error'] == 'invalid_request'
    assert 'access_token' not in result


@pytest.mark.asyncio
async def test_twitter_exchange_sends_verifier_with_basic_auth(settings, upstream):
    app, received, start = upstream

    async def token(request):
        form = await request.post()
        received.append((request.headers.get('Authorization'), dict(form)))
        return web.json_response({'access_token': 'tw-token', 'refresh_token': 'tw-refresh', 'expires_in': 7200})

    app.router.add_post('/token', token)
    twitter = TwitterPlatform(settings)
    twitter.token_url = f"{await start()}/token"

    result = await twitter.exchange_code_for_token('c', 'http://x/cb/', 'twitter-client', 'twitter-secret', 'verifier')

    assert result['access_token'] == 'tw-token'
    authorization, form = received[0]
    assert authorization.startswith('Basic ')
    assert form['code_verifier'] == 'verifier'
    assert form['grant_type'] == 'authorization_code'


@pytest.mark.asyncio
async def test_twitter_publish(settings, upstream):
    app, received, start = upstream

    async def tweets(request):
        received.append(await request.json())
        return web.json_response({'data': {'id': '1799', 'text': 'hi'}}, status=201)

    app.router.add_post('/tweets', tweets)
    twitter = TwitterPlatform(settings)
    twitter.api_base = await start()

    result = await twitter.publish_post('tok', 'x' * 300)

    assert result['post_url'] == 'https://x.com/i/web/status/1799'
    assert len(received[0]['text']) == 280


@pytest.mark.asyncio
async def test_instagram_requires_image(settings):
    result = await InstagramPlatform(settings).publish_post('tok', 'caption')

    assert result == {'status': 'failed', 'error': 'Instagram posts require an image'}


@pytest.mark.asyncio
async def test_instagram_container_then_publish(settings, upstream):
    app, received, start = upstream

    async def media(request):
        received.append(('media', dict(await request.post())))
        return web.json_response({'id': 'container-1'})

    async def media_publish(request):
        received.append(('media_publish', dict(await request.post())))
        return web.json_response({'id': 'ig-post-1'})

    app.router.add_post('/ig-user/media', media)
    app.router.add_post('/ig-user/media_publish', media_publish)
    instagram = InstagramPlatform(settings)
    instagram.graph_base = await start()

    result = await instagram.publish_post('tok', 'caption', 'https://cdn.example.com/a.png', {'user_id': 'ig-user'})

    assert result['status'] == 'published'
    assert result['post_id'] == 'ig-post-1'
    assert received[0][1]['image_url'] == 'https://cdn.example.com/a.png'
    assert received[1][1]['creation_id'] == 'container-1'


@pytest.mark.asyncio
async def test_instagram_container_error(settings, upstream):
    app, _, start = upstream

    async def media(request):
        return web.json_response({'error': {'message': 'Invalid image URL', 'code': 9004}}, status=400)

    app.router.add_post('/me/media', media)
    instagram = InstagramPlatform(settings)
    instagram.graph_base = await start()

    result = await instagram.publish_post('tok', 'caption', 'https://cdn.example.com/a.png')

    assert result['status'] == 'failed'
    assert 'Invalid image URL' in result['error']
