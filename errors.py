import enum
from typing import Optional


class AuthorizationErrorKind(str, enum.Enum):
    STATE_MISMATCH = 'STATE_MISMATCH'
    TIMEOUT = 'TIMEOUT'
    CANCELLED = 'CANCELLED'
    MISSING_CODE = 'MISSING_CODE'
    PROVIDER_DENIED = 'PROVIDER_DENIED'


class ExchangeErrorKind(str, enum.Enum):
    EXCHANGE_FAILED = 'EXCHANGE_FAILED'


class CredentialErrorKind(str, enum.Enum):
    NOT_FOUND = 'NOT_FOUND'
    BROKER_UNREACHABLE = 'BROKER_UNREACHABLE'
    BROKER_ERROR = 'BROKER_ERROR'


class PublishErrorKind(str, enum.Enum):
    NOT_CONNECTED = 'NOT_CONNECTED'
    DUPLICATE_CONTENT = 'DUPLICATE_CONTENT'
    UPSTREAM_ERROR = 'UPSTREAM_ERROR'
    UPLOAD_FAILED = 'UPLOAD_FAILED'


class SocialLinkError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(SocialLinkError):
    pass


class AuthorizationError(SocialLinkError):
    def __init__(self, kind: AuthorizationErrorKind, message: Optional[str] = None):
        self.kind = AuthorizationErrorKind(kind)
        super().__init__(message or self.kind.value)


class ExchangeError(SocialLinkError):
    def __init__(self, message: str):
        self.kind = ExchangeErrorKind.EXCHANGE_FAILED
        super().__init__(message)


class CredentialError(SocialLinkError):
    def __init__(self, kind: CredentialErrorKind, message: Optional[str] = None):
        self.kind = CredentialErrorKind(kind)
        super().__init__(message or self.kind.value)


class BrokerError(SocialLinkError):
    """The secret broker answered, but with ``success: false`` or an HTTP error."""

    def __init__(self, message: str, status: Optional[int] = None, error_kind: Optional[str] = None):
        self.status = status
        self.error_kind = error_kind
        super().__init__(message)


class BrokerUnreachableError(BrokerError):
    """The secret broker could not be reached at all."""


class MediaUploadError(SocialLinkError):
    pass


class SecretNotFound(SocialLinkError):
    pass


class SecretAlreadyExists(SocialLinkError):
    pass


# Provider-specific substrings identifying a rejected duplicate post.
DUPLICATE_CONTENT_SIGNATURES = (
    'DUPLICATE_POST',
    'duplicate post',
    'duplicate content',
)


def is_duplicate_content_error(message: Optional[str]) -> bool:
    if not message:
        return False
    lowered = message.lower()
    return any(signature.lower() in lowered for signature in DUPLICATE_CONTENT_SIGNATURES)


def classify_publish_error(
    message: Optional[str],
    not_connected: bool = False,
    upload_failed: bool = False,
) -> PublishErrorKind:
    """Map a failed publish attempt to the kind reported in the summary."""
    if not_connected:
        return PublishErrorKind.NOT_CONNECTED
    if is_duplicate_content_error(message):
        return PublishErrorKind.DUPLICATE_CONTENT
    if upload_failed:
        return PublishErrorKind.UPLOAD_FAILED
    return PublishErrorKind.UPSTREAM_ERROR
