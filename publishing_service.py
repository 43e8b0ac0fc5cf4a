import asyncio
import logging
from typing import Dict, Mapping, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from config import SUPPORTED_PLATFORMS, Settings
from credential_store import CredentialStore
from database import Publication
from errors import MediaUploadError, PublishErrorKind, classify_publish_error
from media import MediaUploader, resolve_media
from models import AdapterResult, Platform, PublishResult, PublishSummary
from publish_adapters import PublishAdapter

logger = logging.getLogger(__name__)


class PublicationLedger:
    """Per content item, per platform "published" flags."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def _find(self, session, content_id: str, platform: Platform) -> Optional[Publication]:
        return session.query(Publication).filter_by(content_id=content_id, platform=Platform(platform).value).first()

    def is_published(self, content_id: str, platform: Platform) -> bool:
        session = self._session_factory()
        try:
            row = self._find(session, content_id, platform)
            return bool(row and row.published)
        finally:
            session.close()

    def published_platforms(self, content_id: str) -> Dict[Platform, bool]:
        session = self._session_factory()
        try:
            rows = session.query(Publication).filter_by(content_id=content_id).all()
            flags = {platform: False for platform in SUPPORTED_PLATFORMS}
            for row in rows:
                flags[Platform(row.platform)] = bool(row.published)
            return flags
        finally:
            session.close()

    def mark_published(self, content_id: str, platform: Platform, post_url: Optional[str] = None) -> None:
        platform = Platform(platform)
        session = self._session_factory()
        try:
            row = self._find(session, content_id, platform)
            if row:
                row.published = True
                row.post_url = post_url or row.post_url
            else:
                session.add(Publication(
                    content_id=content_id,
                    platform=platform.value,
                    published=True,
                    post_url=post_url,
                ))
            session.commit()
            logger.info(f"💾 Marked {content_id} as published on {platform.value}")
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()


class PublishingService:
    """Publishes one piece of content to several platforms at once.

    Each platform is attempted independently: a failure on one never stops
    the others, and every attempt ends up as a ``PublishResult`` in the
    summary. Attempts on the same platform are serialised so a re-publish
    waits for an in-flight publish.
    """

    def __init__(
        self,
        settings: Settings,
        credential_store: CredentialStore,
        adapters: Mapping[Platform, PublishAdapter],
        uploader: Optional[MediaUploader] = None,
        ledger: Optional[PublicationLedger] = None,
    ):
        self.credential_store = credential_store
        self.adapters = dict(adapters)
        self.uploader = uploader
        self.ledger = ledger
        self.timeout = settings.publish_timeout
        self.enabled_platforms = set(settings.enabled_platforms)
        self._locks = {platform: asyncio.Lock() for platform in SUPPORTED_PLATFORMS}

    async def _resolve_media(self, media) -> Tuple[Optional[str], bool]:
        """Returns ``(public_url, upload_failed)``."""
        try:
            return await resolve_media(media, self.uploader), False
        except MediaUploadError as e:
            logger.warning(f"⚠️ Image upload failed, publishing without image: {e}")
            return None, True

    async def publish(
        self,
        content_map: Mapping[Platform, str],
        media=None,
        content_id: Optional[str] = None,
    ) -> PublishSummary:
        summary = PublishSummary()
        targets: Dict[Platform, str] = {}
        for key, content in content_map.items():
            platform = Platform(key)
            if not content or not content.strip():
                continue
            if platform not in self.enabled_platforms:
                logger.info(f"🚫 {platform.value} is disabled, not publishing")
                continue
            if content_id and self.ledger and self.ledger.is_published(content_id, platform):
                logger.info(f"⏭️ {content_id} already published on {platform.value}, skipping")
                summary.skipped.append(platform)
                continue
            targets[platform] = content

        if not targets:
            logger.info("📭 Nothing to publish")
            return summary

        media_url, upload_failed = await self._resolve_media(media)
        logger.info(f"📤 Publishing to {', '.join(p.value for p in targets)}")

        results = await asyncio.gather(*(
            self._publish_one(platform, content, media_url, upload_failed, content_id)
            for platform, content in targets.items()
        ))
        summary.results.extend(results)
        logger.info(f"📊 Publish finished: {summary.successful}/{summary.total} succeeded")
        return summary

    async def republish(self, content_id: str, platform: Platform, content: str, media=None) -> PublishResult:
        """Publish one platform again, ignoring its published flag."""
        platform = Platform(platform)
        media_url, upload_failed = await self._resolve_media(media)
        return await self._publish_one(platform, content, media_url, upload_failed, content_id)

    async def _publish_one(
        self,
        platform: Platform,
        content: str,
        media_url: Optional[str],
        upload_failed: bool,
        content_id: Optional[str],
    ) -> PublishResult:
        name = platform.display_name
        adapter = self.adapters.get(platform)
        if adapter is None:
            return PublishResult(platform, False, f"No publisher configured for {name}",
                                 PublishErrorKind.UPSTREAM_ERROR)

        if not await self.credential_store.is_connected(platform):
            return PublishResult(platform, False, f"{name} is not connected", PublishErrorKind.NOT_CONNECTED)

        async with self._locks[platform]:
            try:
                outcome = await asyncio.wait_for(adapter.publish(content, media_url), timeout=self.timeout)
            except asyncio.TimeoutError:
                outcome = AdapterResult(success=False, error=f"{name} did not answer within {self.timeout:g}s")
            except Exception as e:
                logger.exception(f"💥 Unexpected {name} publish failure")
                outcome = AdapterResult(success=False, error=str(e) or type(e).__name__)

            if outcome.success:
                logger.info(f"✅ Published to {name}")
                if content_id and self.ledger:
                    try:
                        self.ledger.mark_published(content_id, platform, outcome.post_url)
                    except SQLAlchemyError as e:
                        logger.error(f"❌ Could not record {platform.value} publication for {content_id}: {e}")
                return PublishResult(
                    platform,
                    True,
                    message=f"Published to {name}",
                    post_id=outcome.post_id,
                    post_url=outcome.post_url,
                )

        kind = classify_publish_error(
            outcome.error,
            not_connected=outcome.not_connected,
            upload_failed=upload_failed and adapter.requires_media,
        )
        logger.error(f"❌ {name} publish failed ({kind.value}): {outcome.error}")
        return PublishResult(platform, False, message=outcome.error, error_kind=kind)
