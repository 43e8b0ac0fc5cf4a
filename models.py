import enum
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from errors import PublishErrorKind


class Platform(str, enum.Enum):
    LINKEDIN = 'linkedin'
    INSTAGRAM = 'instagram'
    TWITTER = 'twitter'

    @property
    def display_name(self) -> str:
        return {
            Platform.LINKEDIN: 'LinkedIn',
            Platform.INSTAGRAM: 'Instagram',
            Platform.TWITTER: 'Twitter/X',
        }[self]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace('Z', '+00:00'))
        except ValueError:
            pass
    return utcnow()


@dataclass
class PlatformCredential:
    """Stored credential for one platform.

    A credential marked ``redacted`` is the broker's answer to a token
    exchange: the account is connected but the secret stays server-side.
    """

    platform: Platform
    connected: bool = False
    access_token: Optional[str] = field(default=None, repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    external_id: Optional[str] = None
    saved_at: datetime = field(default_factory=utcnow)
    profile: Dict[str, Any] = field(default_factory=dict)
    redacted: bool = False

    def __post_init__(self):
        self.platform = Platform(self.platform)
        if self.connected and not self.access_token and not self.redacted:
            raise ValueError(f"A connected {self.platform.value} credential requires an access token")

    @classmethod
    def disconnected(cls, platform: Platform) -> 'PlatformCredential':
        return cls(platform=platform, connected=False)

    @classmethod
    def from_wire(cls, platform: Platform, data: Optional[Mapping[str, Any]]) -> 'PlatformCredential':
        if not data:
            return cls.disconnected(platform)
        access_token = data.get('accessToken') or data.get('bearerToken')
        redacted = bool(data.get('redacted'))
        connected = bool(data.get('connected')) and (bool(access_token) or redacted)
        external_id = data.get('externalId') or data.get('memberId')
        return cls(
            platform=platform,
            connected=connected,
            access_token=access_token,
            refresh_token=data.get('refreshToken'),
            external_id=str(external_id) if external_id else None,
            saved_at=_parse_timestamp(data.get('savedAt') or data.get('connectedAt')),
            profile=dict(data.get('profile') or {}),
            redacted=redacted,
        )

    def to_wire(self) -> Dict[str, Any]:
        data = {
            'connected': self.connected,
            'savedAt': self.saved_at.isoformat(),
        }
        if self.access_token:
            data['accessToken'] = self.access_token
        if self.refresh_token:
            data['refreshToken'] = self.refresh_token
        if self.external_id:
            data['externalId'] = self.external_id
        if self.profile:
            data['profile'] = self.profile
        if self.redacted:
            data['redacted'] = True
        return data

    def same_account(self, other: 'PlatformCredential') -> bool:
        """Compare everything except the raw secrets."""
        return (
            self.platform == other.platform
            and self.connected == other.connected
            and self.external_id == other.external_id
            and self.saved_at == other.saved_at
            and self.profile == other.profile
        )


@dataclass
class AuthorizationRequest:
    platform: Platform
    nonce: str = field(repr=False)
    redirect_uri: str
    scope: str
    issued_at: float
    code_verifier: Optional[str] = field(default=None, repr=False)
    superseded: bool = False


@dataclass
class AuthorizationCode:
    platform: Platform
    code: str = field(repr=False)
    redirect_uri: str
    code_verifier: Optional[str] = field(default=None, repr=False)


class PublishContentMap(dict):
    """Platform -> content to publish. A missing key means "do not publish there"."""

    @classmethod
    def build(
        cls,
        contents: Mapping[Any, Optional[str]],
        enabled_platforms: Optional[Iterable[Platform]] = None,
    ) -> 'PublishContentMap':
        enabled = set(Platform(p) for p in enabled_platforms) if enabled_platforms is not None else None
        content_map = cls()
        for key, content in contents.items():
            platform = Platform(key)
            if enabled is not None and platform not in enabled:
                continue
            if content and content.strip():
                content_map[platform] = content
        return content_map


_PUBLIC_URL = re.compile(r'^https?://', re.IGNORECASE)


@dataclass(frozen=True)
class MediaReference:
    value: str

    @property
    def is_public(self) -> bool:
        return bool(_PUBLIC_URL.match(self.value))

    @classmethod
    def coerce(cls, media: Any) -> Optional['MediaReference']:
        if media is None or media == '':
            return None
        if isinstance(media, MediaReference):
            return media
        return cls(str(media))


@dataclass
class PublishResult:
    platform: Platform
    success: bool
    message: Optional[str] = None
    error_kind: Optional[PublishErrorKind] = None
    post_id: Optional[str] = None
    post_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'platform': self.platform.value,
            'success': self.success,
            'message': self.message,
            'errorKind': self.error_kind.value if self.error_kind else None,
            'postId': self.post_id,
            'postUrl': self.post_url,
        }


@dataclass
class PublishSummary:
    results: List[PublishResult] = field(default_factory=list)
    skipped: List[Platform] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def successful(self) -> int:
        return sum(1 for result in self.results if result.success)

    @property
    def failed(self) -> int:
        return self.total - self.successful

    @property
    def success(self) -> bool:
        return self.successful > 0

    def result_for(self, platform: Platform) -> Optional[PublishResult]:
        for result in self.results:
            if result.platform == Platform(platform):
                return result
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'total': self.total,
            'successful': self.successful,
            'failed': self.failed,
            'results': [result.to_dict() for result in self.results],
            'skipped': [platform.value for platform in self.skipped],
        }


@dataclass
class AdapterResult:
    success: bool
    error: Optional[str] = None
    post_id: Optional[str] = None
    post_url: Optional[str] = None
    not_connected: bool = False
