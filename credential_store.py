import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from config import SUPPORTED_PLATFORMS, Settings
from credential_cache import CredentialCache
from database import LocalCredential, get_session_factory, init_db
from errors import BrokerError, BrokerUnreachableError, CredentialError, CredentialErrorKind
from models import Platform, PlatformCredential
from secret_broker_client import SecretBrokerClient

logger = logging.getLogger(__name__)


class CredentialStore(ABC):
    """Read/write access to platform credentials, whatever the backend."""

    @abstractmethod
    async def get(self, platform: Platform) -> PlatformCredential:
        pass

    @abstractmethod
    async def save(self, platform: Platform, credential: PlatformCredential) -> None:
        pass

    @abstractmethod
    async def delete(self, platform: Platform) -> None:
        pass

    def invalidate(self, platform: Platform) -> None:
        """Drop any cached copy so the next read goes to the backend."""

    async def record_link(self, platform: Platform, credential: PlatformCredential) -> None:
        """Called after a successful token exchange; the broker already holds the token."""
        self.invalidate(platform)

    async def is_connected(self, platform: Platform) -> bool:
        try:
            credential = await self.get(platform)
        except CredentialError as e:
            logger.warning(f"⚠️ Treating {Platform(platform).value} as disconnected: {e}")
            return False
        return credential.connected

    async def get_all(self) -> Dict[Platform, PlatformCredential]:
        credentials = await asyncio.gather(
            *(self.get(platform) for platform in SUPPORTED_PLATFORMS),
            return_exceptions=True,
        )
        result = {}
        for platform, credential in zip(SUPPORTED_PLATFORMS, credentials):
            if isinstance(credential, CredentialError):
                logger.warning(f"⚠️ Could not read {platform.value} credentials: {credential}")
                credential = PlatformCredential.disconnected(platform)
            elif isinstance(credential, BaseException):
                raise credential
            result[platform] = credential
        return result

    async def get_connected_platforms(self) -> Dict[Platform, bool]:
        credentials = await self.get_all()
        return {platform: credential.connected for platform, credential in credentials.items()}

    async def clear_all(self) -> int:
        """Disconnect every platform; returns how many deletes succeeded."""
        cleared = 0
        for platform in SUPPORTED_PLATFORMS:
            try:
                await self.delete(platform)
                cleared += 1
            except (CredentialError, BrokerError) as e:
                logger.error(f"❌ Could not disconnect {platform.value}: {e}")
        logger.info(f"🧹 {cleared} of {len(SUPPORTED_PLATFORMS)} platforms disconnected")
        return cleared


class LocalCredentialStore(CredentialStore):
    """On-device store: one row per platform in the local database."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def get(self, platform: Platform) -> PlatformCredential:
        platform = Platform(platform)
        session = self._session_factory()
        try:
            row = session.get(LocalCredential, platform.value)
            if not row:
                return PlatformCredential.disconnected(platform)
            try:
                data = json.loads(row.payload)
            except ValueError:
                logger.error(f"❌ Corrupt local {platform.value} credential record, ignoring it")
                return PlatformCredential.disconnected(platform)
            return PlatformCredential.from_wire(platform, data)
        finally:
            session.close()

    async def save(self, platform: Platform, credential: PlatformCredential) -> None:
        platform = Platform(platform)
        session = self._session_factory()
        try:
            session.merge(LocalCredential(platform=platform.value, payload=json.dumps(credential.to_wire())))
            session.commit()
            logger.info(f"💾 Saved {platform.value} credentials locally")
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()

    async def delete(self, platform: Platform) -> None:
        platform = Platform(platform)
        session = self._session_factory()
        try:
            row = session.get(LocalCredential, platform.value)
            if row:
                session.delete(row)
                session.commit()
                logger.info(f"🗑️ Removed local {platform.value} credentials")
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()

    async def record_link(self, platform: Platform, credential: PlatformCredential) -> None:
        # The broker keeps the token; the redacted record marks the platform connected here
        await self.save(platform, credential)


class RemoteCredentialStore(CredentialStore):
    """Secret broker backend behind a TTL cache, mirrored locally for outages."""

    def __init__(
        self,
        broker: SecretBrokerClient,
        cache: CredentialCache,
        mirror: Optional[LocalCredentialStore] = None,
    ):
        self.broker = broker
        self.cache = cache
        self.mirror = mirror

    async def _fetch(self, platform: Platform) -> PlatformCredential:
        generation = self.cache.generation(platform)
        credential = await self.broker.get_credentials(platform)
        # A save or delete finished while this read was in flight; its result is stale
        if generation == self.cache.generation(platform):
            await self._sync_mirror(platform, credential)
        return credential

    async def _sync_mirror(self, platform: Platform, credential: Optional[PlatformCredential]) -> None:
        if self.mirror is None:
            return
        try:
            if credential is not None and credential.connected and not credential.redacted:
                await self.mirror.save(platform, credential)
            else:
                await self.mirror.delete(platform)
        except SQLAlchemyError as e:
            logger.warning(f"⚠️ Could not update local {platform.value} copy: {e}")

    async def get(self, platform: Platform) -> PlatformCredential:
        platform = Platform(platform)
        try:
            return await self.cache.get_or_fetch(platform, lambda: self._fetch(platform))
        except BrokerUnreachableError as e:
            logger.warning(f"⚠️ Secret broker unreachable for {platform.value}, using local copy: {e}")
            fallback = await self.mirror.get(platform) if self.mirror else None
            if fallback is not None and fallback.connected:
                return fallback
            raise CredentialError(CredentialErrorKind.BROKER_UNREACHABLE, str(e))
        except BrokerError as e:
            logger.error(f"❌ Secret broker rejected the {platform.value} read: {e}")
            raise CredentialError(CredentialErrorKind.BROKER_ERROR, str(e))

    async def save(self, platform: Platform, credential: PlatformCredential) -> None:
        platform = Platform(platform)
        try:
            message = await self.broker.save_credentials(platform, credential)
            logger.info(f"☁️ {message or f'Saved {platform.value} credentials'}")
        finally:
            self.cache.invalidate(platform)
        await self._sync_mirror(platform, credential)

    async def delete(self, platform: Platform) -> None:
        platform = Platform(platform)
        try:
            await self.broker.delete_credentials(platform)
        finally:
            self.cache.invalidate(platform)
        await self._sync_mirror(platform, None)

    def invalidate(self, platform: Platform) -> None:
        self.cache.invalidate(platform)


def build_credential_store(settings: Settings, session_factory=None) -> CredentialStore:
    if session_factory is None:
        session_factory = get_session_factory(init_db(settings.database_url))
    local = LocalCredentialStore(session_factory)

    if not settings.use_cloud_storage:
        logger.info("💾 Using local credential storage")
        return local

    logger.info(f"🌥️ Using secret broker credential storage at {settings.secret_broker_url}")
    broker = SecretBrokerClient(settings.secret_broker_url, settings.user_id, timeout=settings.broker_timeout)
    return RemoteCredentialStore(broker, CredentialCache(settings.credential_cache_ttl), mirror=local)
