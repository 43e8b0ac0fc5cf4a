"""Authorization-code linking flow.

One linking attempt opens the provider's authorization page and waits for
the redirect back to ``<origin>/auth/<platform>/callback/``. The redirect can
arrive two ways: as the direct result of the authorization surface, or as a
message relayed by the callback page (see ``callback_server``). Whichever
carries a URL first wins; the attempt then checks the CSRF ``state`` and
extracts the code.
"""

import asyncio
import base64
import hashlib
import hmac
import logging
import secrets
import time
import webbrowser
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlparse

from config import Settings
from errors import AuthorizationError, AuthorizationErrorKind
from models import AuthorizationCode, AuthorizationRequest, Platform
from platforms import get_platform

logger = logging.getLogger(__name__)

USER_CANCEL_ERRORS = {'user_cancelled_login', 'user_cancelled_authorize'}


@dataclass
class CallbackMessage:
    url: str
    type: str = 'oauth_redirect'


class CallbackMessageBus:
    """Fan-out of redirect URLs to the linking attempts currently listening."""

    def __init__(self):
        self._subscribers: List[Tuple[asyncio.Queue, asyncio.AbstractEventLoop]] = []

    def subscribe(self) -> asyncio.Queue:
        queue = asyncio.Queue()
        self._subscribers.append((queue, asyncio.get_running_loop()))
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers = [(q, loop) for q, loop in self._subscribers if q is not queue]

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, url: str) -> int:
        """Deliver ``url`` to every subscriber; safe to call from another thread."""
        message = CallbackMessage(url=url)
        delivered = 0
        for queue, loop in list(self._subscribers):
            try:
                loop.call_soon_threadsafe(queue.put_nowait, message)
            except RuntimeError:
                # Subscriber's loop already closed
                continue
            delivered += 1
        return delivered


@dataclass
class SurfaceResult:
    type: str
    url: Optional[str] = None


class AuthorizationSurface(ABC):
    """Where the user sees the provider's consent page."""

    @abstractmethod
    async def open(self, url: str, redirect_uri: str) -> SurfaceResult:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


class BrowserSurface(AuthorizationSurface):
    """System browser. It never reports a direct result; the callback page does."""

    def __init__(self, opener: Callable[[str], bool] = webbrowser.open):
        self._opener = opener

    async def open(self, url: str, redirect_uri: str) -> SurfaceResult:
        loop = asyncio.get_running_loop()
        opened = await loop.run_in_executor(None, self._opener, url)
        if not opened:
            logger.warning("⚠️ Could not open a browser automatically")
        print(f"🔗 Open this URL to authorize:\n{url}")
        await asyncio.Future()

    async def close(self) -> None:
        logger.debug("Browser surface released")


def _pkce_pair() -> Tuple[str, str]:
    verifier = secrets.token_urlsafe(64)[:128]
    digest = hashlib.sha256(verifier.encode('ascii')).digest()
    challenge = base64.urlsafe_b64encode(digest).decode('ascii').rstrip('=')
    return verifier, challenge


def _first(query: Dict[str, List[str]], name: str) -> Optional[str]:
    values = query.get(name)
    return values[0] if values else None


class AuthorizationCoordinator:
    CANCEL_GRACE_SECONDS = 1.0

    def __init__(
        self,
        settings: Settings,
        surface: AuthorizationSurface,
        bus: CallbackMessageBus,
        platform_factory=get_platform,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.surface = surface
        self.bus = bus
        self.timeout = settings.oauth_timeout
        self._platform_factory = platform_factory
        self._clock = clock
        self._outstanding: Dict[Platform, Tuple[AuthorizationRequest, asyncio.Task]] = {}

    def outstanding(self, platform: Platform) -> Optional[AuthorizationRequest]:
        entry = self._outstanding.get(Platform(platform))
        return entry[0] if entry else None

    def create_request(self, platform: Platform) -> Tuple[AuthorizationRequest, str]:
        platform = Platform(platform)
        platform_api = self._platform_factory(platform, self.settings)
        code_verifier = code_challenge = None
        if platform_api.uses_pkce:
            code_verifier, code_challenge = _pkce_pair()

        request = AuthorizationRequest(
            platform=platform,
            nonce=secrets.token_urlsafe(32),
            redirect_uri=self.settings.redirect_uri(platform),
            scope=platform_api.scope,
            issued_at=self._clock(),
            code_verifier=code_verifier,
        )
        auth_url = platform_api.get_auth_url(request.nonce, request.redirect_uri, code_challenge)
        return request, auth_url

    async def begin_authorization(self, platform: Platform) -> AuthorizationCode:
        platform = Platform(platform)
        previous = self._outstanding.get(platform)
        if previous and not previous[1].done():
            logger.info(f"🔁 Superseding outstanding {platform.value} authorization")
            previous[0].superseded = True
            previous[1].cancel()
            # Let the old attempt release the listener and surface before reopening
            await asyncio.wait({previous[1]})

        request, auth_url = self.create_request(platform)
        task = asyncio.create_task(self._run(request, auth_url))
        self._outstanding[platform] = (request, task)
        try:
            return await task
        except asyncio.CancelledError:
            if request.superseded:
                raise AuthorizationError(
                    AuthorizationErrorKind.CANCELLED,
                    f"{platform.display_name} authorization superseded by a newer request",
                )
            raise
        finally:
            current = self._outstanding.get(platform)
            if current and current[1] is task:
                del self._outstanding[platform]

    async def _run(self, request: AuthorizationRequest, auth_url: str) -> AuthorizationCode:
        logger.info(f"🔗 Starting {request.platform.value} authorization")
        queue = self.bus.subscribe()
        surface_task = asyncio.create_task(self.surface.open(auth_url, request.redirect_uri))
        message_task = asyncio.create_task(self._wait_for_redirect(queue, request))
        try:
            redirect_url = await self._race(request, surface_task, message_task)
            code = self.parse_redirect(redirect_url, request)
            logger.info(f"✅ {request.platform.value} authorization code received")
            return code
        finally:
            self.bus.unsubscribe(queue)
            for task in (surface_task, message_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(surface_task, message_task, return_exceptions=True)
            try:
                await self.surface.close()
            except Exception:
                logger.warning("⚠️ Authorization surface did not close cleanly", exc_info=True)

    async def _race(
        self,
        request: AuthorizationRequest,
        surface_task: asyncio.Future,
        message_task: asyncio.Future,
    ) -> str:
        deadline = request.issued_at + self.timeout
        surface_closed = False
        pending = {surface_task, message_task}

        while pending:
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            done, pending = await asyncio.wait(pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
            if not done:
                break
            if message_task in done:
                return message_task.result()

            try:
                result = surface_task.result()
            except Exception as e:
                logger.error(f"❌ Could not open {request.platform.value} authorization page: {e}")
                raise AuthorizationError(
                    AuthorizationErrorKind.PROVIDER_DENIED,
                    f"Could not open the {request.platform.display_name} authorization page: {e}",
                )
            if result and result.type == 'success' and result.url and result.url.startswith(request.redirect_uri):
                return result.url

            # Closed without a URL: the callback page may still relay one
            logger.info(f"👋 {request.platform.value} authorization window closed without a redirect")
            surface_closed = True
            deadline = min(deadline, self._clock() + self.CANCEL_GRACE_SECONDS)

        if surface_closed:
            raise AuthorizationError(AuthorizationErrorKind.CANCELLED, "Authorization cancelled by the user")
        raise AuthorizationError(
            AuthorizationErrorKind.TIMEOUT,
            f"Timed out waiting for {request.platform.display_name} authorization",
        )

    async def _wait_for_redirect(self, queue: asyncio.Queue, request: AuthorizationRequest) -> str:
        while True:
            message = await queue.get()
            if message.type == 'oauth_redirect' and message.url.startswith(request.redirect_uri):
                return message.url
            logger.debug("Ignoring callback message for another redirect URI")

    def parse_redirect(self, url: str, request: AuthorizationRequest) -> AuthorizationCode:
        query = parse_qs(urlparse(url).query)

        state = _first(query, 'state')
        if not state or not hmac.compare_digest(state, request.nonce):
            logger.warning(f"❌ {request.platform.value} state parameter mismatch")
            raise AuthorizationError(AuthorizationErrorKind.STATE_MISMATCH, "The state parameter does not match")

        error = _first(query, 'error')
        if error:
            if error in USER_CANCEL_ERRORS or (error == 'access_denied' and _first(query, 'error_reason') == 'user_denied'):
                raise AuthorizationError(AuthorizationErrorKind.CANCELLED, "Authorization cancelled by the user")
            description = _first(query, 'error_description') or error
            raise AuthorizationError(AuthorizationErrorKind.PROVIDER_DENIED, description)

        code = _first(query, 'code')
        if not code:
            raise AuthorizationError(AuthorizationErrorKind.MISSING_CODE, "No authorization code was received")

        return AuthorizationCode(
            platform=request.platform,
            code=code,
            redirect_uri=request.redirect_uri,
            code_verifier=request.code_verifier,
        )
