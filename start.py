import argparse
import asyncio
import getpass
import json
import logging
import sys
from urllib.parse import urlparse

import uvicorn

from broker_server import run_broker
from callback_server import create_callback_app
from config import SUPPORTED_PLATFORMS, Settings, load_settings
from credential_store import build_credential_store
from database import get_session_factory, init_db
from errors import AuthorizationError, ConfigurationError, ExchangeError, SocialLinkError
from logging_setup import configure_logging
from media import HttpMediaUploader
from models import Platform, PlatformCredential, PublishContentMap
from oauth_coordinator import AuthorizationCoordinator, BrowserSurface, CallbackMessageBus
from publish_adapters import build_adapters
from publishing_service import PublicationLedger, PublishingService
from secret_broker_client import SecretBrokerClient
from token_exchange import AccountLinker, TokenExchangeClient

logger = logging.getLogger(__name__)


class Services:
    """Everything a client-side command needs, wired from one Settings."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.session_factory = get_session_factory(init_db(settings.database_url))
        self.credential_store = build_credential_store(settings, self.session_factory)
        self.broker = None
        if settings.secret_broker_url:
            self.broker = SecretBrokerClient(settings.secret_broker_url, settings.user_id, timeout=settings.broker_timeout)

    def require_broker(self) -> SecretBrokerClient:
        if self.broker is None:
            raise ConfigurationError("SECRET_BROKER_URL is required for this command")
        return self.broker

    def publishing_service(self) -> PublishingService:
        uploader = None
        if self.settings.media_upload_url:
            uploader = HttpMediaUploader(self.settings.media_upload_url, timeout=self.settings.publish_timeout)
        return PublishingService(
            self.settings,
            self.credential_store,
            build_adapters(self.settings, self.credential_store, self.broker),
            uploader=uploader,
            ledger=PublicationLedger(self.session_factory),
        )


def callback_port(settings: Settings) -> int:
    parsed = urlparse(settings.app_origin)
    return parsed.port or (443 if parsed.scheme == 'https' else 80)


async def link(services: Services, platform: Platform) -> int:
    settings = services.settings
    exchange_client = TokenExchangeClient(services.require_broker(), services.credential_store)
    bus = CallbackMessageBus()
    server_config = uvicorn.Config(
        create_callback_app(bus, settings),
        host="127.0.0.1",
        port=callback_port(settings),
        log_level="warning",
    )
    server = uvicorn.Server(server_config)
    server_task = asyncio.create_task(server.serve())

    coordinator = AuthorizationCoordinator(settings, BrowserSurface(), bus)
    linker = AccountLinker(coordinator, exchange_client)
    try:
        credential = await linker.link(platform)
    except (AuthorizationError, ExchangeError) as e:
        print(f"❌ {platform.display_name} linking failed: {e}")
        return 1
    finally:
        server.should_exit = True
        await server_task

    if credential is None:
        print(f"👋 {platform.display_name} linking cancelled")
        return 0
    print(f"✅ {platform.display_name} connected (account {credential.external_id or 'unknown'})")
    return 0


async def connect(services: Services, args) -> int:
    """Store a token obtained outside the OAuth flow, e.g. from the platform's developer console."""
    platform = Platform(args.platform)
    token = (args.token or getpass.getpass(f"{platform.display_name} access token: ")).strip()
    if not token:
        print(f"❌ No {platform.display_name} access token given")
        return 1

    credential = PlatformCredential(
        platform=platform,
        connected=True,
        access_token=token,
        refresh_token=args.refresh_token,
        external_id=args.external_id,
    )
    await services.credential_store.save(platform, credential)
    print(f"✅ {platform.display_name} token saved")
    return 0


async def disconnect(services: Services, target: str) -> int:
    store = services.credential_store
    if target == 'all':
        cleared = await store.clear_all()
        print(f"🧹 Disconnected {cleared} of {len(SUPPORTED_PLATFORMS)} platforms")
        return 0 if cleared == len(SUPPORTED_PLATFORMS) else 1
    platform = Platform(target)
    await store.delete(platform)
    print(f"🗑️ {platform.display_name} disconnected")
    return 0


async def status(services: Services) -> int:
    connected = await services.credential_store.get_connected_platforms()
    for platform, is_connected in connected.items():
        enabled = platform in services.settings.enabled_platforms
        print(f"{'✅' if is_connected else '⭕'} {platform.display_name:<10} "
              f"{'connected' if is_connected else 'not connected'}{'' if enabled else ' (generation disabled)'}")
    if services.broker is not None:
        healthy = await services.broker.health_check()
        print(f"{'🌥️' if healthy else '⚠️'} Secret broker {'reachable' if healthy else 'unreachable'}")
    return 0


async def test(services: Services, platform: Platform) -> int:
    result = await services.require_broker().test_connection(platform)
    if result.get('success'):
        print(f"✅ {result.get('message')}")
        return 0
    print(f"❌ {result.get('error')}")
    return 1


async def publish(services: Services, args) -> int:
    content_map = PublishContentMap.build(
        {platform: getattr(args, platform.value) for platform in SUPPORTED_PLATFORMS},
        services.settings.enabled_platforms,
    )
    summary = await services.publishing_service().publish(content_map, args.media, args.content_id)
    print(json.dumps(summary.to_dict(), indent=2))
    return 0 if summary.success else 1


async def republish(services: Services, args) -> int:
    result = await services.publishing_service().republish(
        args.content_id, Platform(args.platform), args.content, args.media
    )
    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.success else 1


def build_parser() -> argparse.ArgumentParser:
    platform_names = [platform.value for platform in SUPPORTED_PLATFORMS]
    parser = argparse.ArgumentParser(description="Link social accounts and publish content to them")
    sub = parser.add_subparsers(dest='command', required=True)

    broker = sub.add_parser('broker', help="Run the secret broker service")
    broker.add_argument('--host', default='0.0.0.0')
    broker.add_argument('--port', type=int, default=8000)

    link_cmd = sub.add_parser('link', help="Connect an account through OAuth")
    link_cmd.add_argument('platform', choices=platform_names)

    connect_cmd = sub.add_parser('connect', help="Store an access token entered by hand")
    connect_cmd.add_argument('platform', choices=platform_names)
    connect_cmd.add_argument('--token', help="Access token; prompted for when omitted")
    connect_cmd.add_argument('--refresh-token')
    connect_cmd.add_argument('--external-id', help="Account id on the platform (Instagram user id, LinkedIn member id)")

    disconnect_cmd = sub.add_parser('disconnect', help="Remove stored credentials")
    disconnect_cmd.add_argument('platform', choices=platform_names + ['all'])

    sub.add_parser('status', help="Show which platforms are connected")

    test_cmd = sub.add_parser('test', help="Check a stored credential against the platform")
    test_cmd.add_argument('platform', choices=platform_names)

    publish_cmd = sub.add_parser('publish', help="Publish to every platform given content")
    for platform in SUPPORTED_PLATFORMS:
        publish_cmd.add_argument(f'--{platform.value}', metavar='TEXT', help=f"{platform.display_name} content")
    publish_cmd.add_argument('--media', help="Image URL, file path or data: URI")
    publish_cmd.add_argument('--content-id', help="Content item id; skips platforms already published")

    republish_cmd = sub.add_parser('republish', help="Publish one platform again")
    republish_cmd.add_argument('content_id')
    republish_cmd.add_argument('platform', choices=platform_names)
    republish_cmd.add_argument('content')
    republish_cmd.add_argument('--media')

    return parser


async def run_command(services: Services, args) -> int:
    if args.command == 'link':
        return await link(services, Platform(args.platform))
    if args.command == 'connect':
        return await connect(services, args)
    if args.command == 'disconnect':
        return await disconnect(services, args.platform)
    if args.command == 'status':
        return await status(services)
    if args.command == 'test':
        return await test(services, Platform(args.platform))
    if args.command == 'publish':
        return await publish(services, args)
    if args.command == 'republish':
        return await republish(services, args)
    raise ValueError(f"Unknown command: {args.command}")


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = load_settings()
    except ConfigurationError as e:
        print(f"❌ Configuration error: {e}")
        return 2
    configure_logging(settings.log_level)

    if args.command == 'broker':
        print("=" * 60)
        print("Social Link - Secret Broker")
        print(f"Supported: {', '.join(p.display_name for p in SUPPORTED_PLATFORMS)}")
        print("=" * 60)
        run_broker(settings, host=args.host, port=args.port)
        return 0

    try:
        return asyncio.run(run_command(Services(settings), args))
    except SocialLinkError as e:
        print(f"❌ {e}")
        return 1
    except KeyboardInterrupt:
        print("Shutting down...")
        return 130


if __name__ == "__main__":
    sys.exit(main())
