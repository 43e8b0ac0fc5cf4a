import logging
import time
from typing import Awaitable, Callable, Dict, Optional, Tuple

from models import Platform, PlatformCredential

logger = logging.getLogger(__name__)

Fetcher = Callable[[], Awaitable[PlatformCredential]]


class CredentialCache:
    """Per-platform credential cache with a fixed freshness window.

    An entry is served while ``clock() - fetched_at < ttl``. Expired entries
    count as absent and are re-fetched before anything is returned, so a
    caller never sees a value older than the window. Failed fetches are not
    stored.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        if ttl <= 0:
            raise ValueError("Cache TTL must be positive")
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[Platform, Tuple[PlatformCredential, float]] = {}
        self._generations: Dict[Platform, int] = {}

    def generation(self, platform: Platform) -> int:
        """Bumped by every invalidation; a fetch started under an older generation is discarded."""
        return self._generations.get(Platform(platform), 0)

    def peek(self, platform: Platform) -> Optional[PlatformCredential]:
        entry = self._entries.get(Platform(platform))
        if entry is None:
            return None
        value, fetched_at = entry
        if self._clock() - fetched_at >= self.ttl:
            return None
        return value

    async def get_or_fetch(self, platform: Platform, fetcher: Fetcher) -> PlatformCredential:
        platform = Platform(platform)
        cached = self.peek(platform)
        if cached is not None:
            return cached

        generation = self.generation(platform)
        value = await fetcher()
        if generation != self.generation(platform):
            logger.debug(f"🗃️ {platform.value} invalidated during fetch, not caching")
            return value
        self._entries[platform] = (value, self._clock())
        logger.debug(f"🗃️ Cached {platform.value} credential for {self.ttl:.0f}s")
        return value

    def invalidate(self, platform: Platform) -> None:
        platform = Platform(platform)
        self._entries.pop(platform, None)
        self._generations[platform] = self.generation(platform) + 1

    def clear(self) -> None:
        for platform in Platform:
            self.invalidate(platform)

    def __len__(self) -> int:
        return len(self._entries)
