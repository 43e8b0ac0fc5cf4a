import logging
from typing import Optional

from credential_store import CredentialStore
from errors import AuthorizationError, AuthorizationErrorKind, BrokerError, ExchangeError
from models import AuthorizationCode, Platform, PlatformCredential
from oauth_coordinator import AuthorizationCoordinator
from secret_broker_client import SecretBrokerClient

logger = logging.getLogger(__name__)


class TokenExchangeClient:
    """Hands an authorization code to the broker, which trades it for a token and keeps it."""

    def __init__(self, broker: SecretBrokerClient, credential_store: Optional[CredentialStore] = None):
        self.broker = broker
        self.credential_store = credential_store

    async def exchange(
        self,
        platform: Platform,
        code: str,
        redirect_uri: str,
        code_verifier: Optional[str] = None,
    ) -> PlatformCredential:
        platform = Platform(platform)
        logger.info(f"🔄 Exchanging {platform.value} authorization code")
        try:
            response = await self.broker.exchange_token(platform, code, redirect_uri, code_verifier)
        except BrokerError as e:
            # Codes are single-use, so a failed exchange is never retried
            logger.error(f"❌ {platform.value} token exchange failed: {e}")
            raise ExchangeError(str(e))

        returned = response.get('credentials') or {}
        external_id = returned.get('externalId') or returned.get('memberId')
        credential = PlatformCredential(
            platform=platform,
            connected=True,
            external_id=str(external_id) if external_id else None,
            profile=dict(returned.get('profile') or {}),
            redacted=True,
        )
        if self.credential_store is not None:
            await self.credential_store.record_link(platform, credential)
        logger.info(f"✅ {platform.display_name} connected")
        return credential


class AccountLinker:
    """Full linking attempt: authorize, then exchange the code."""

    def __init__(self, coordinator: AuthorizationCoordinator, exchange_client: TokenExchangeClient):
        self.coordinator = coordinator
        self.exchange_client = exchange_client

    async def link(self, platform: Platform) -> Optional[PlatformCredential]:
        """Returns ``None`` when the user cancels; other failures raise."""
        try:
            authorization: AuthorizationCode = await self.coordinator.begin_authorization(platform)
        except AuthorizationError as e:
            if e.kind == AuthorizationErrorKind.CANCELLED:
                logger.info(f"👋 {Platform(platform).value} linking cancelled: {e}")
                return None
            raise

        return await self.exchange_client.exchange(
            authorization.platform,
            authorization.code,
            authorization.redirect_uri,
            authorization.code_verifier,
        )
