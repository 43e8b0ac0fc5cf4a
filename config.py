import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from dotenv import load_dotenv

from errors import ConfigurationError
from models import Platform

load_dotenv()

SUPPORTED_PLATFORMS = [Platform.LINKEDIN, Platform.INSTAGRAM, Platform.TWITTER]

PLATFORM_SCOPES = {
    Platform.LINKEDIN: ['openid', 'profile', 'email', 'w_member_social'],
    Platform.INSTAGRAM: ['instagram_business_basic', 'instagram_business_content_publish'],
    Platform.TWITTER: ['tweet.read', 'tweet.write', 'users.read', 'offline.access'],
}

DEFAULT_ALLOWED_ORIGINS = [
    'http://localhost:3000',
    'http://localhost:8081',
]


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}")


def _env_list(name: str, default: List[str]) -> List[str]:
    value = os.getenv(name)
    if not value:
        return list(default)
    return [item.strip() for item in value.split(',') if item.strip()]


@dataclass
class AppCredentials:
    client_id: Optional[str] = None
    client_secret: Optional[str] = field(default=None, repr=False)


@dataclass
class Settings:
    """Runtime configuration, read once from the environment and passed down."""

    use_cloud_storage: bool = False
    secret_broker_url: Optional[str] = None
    enable_real_publish: bool = False
    admin_secret: Optional[str] = field(default=None, repr=False)
    app_origin: str = 'http://localhost:8081'
    user_id: str = 'demo-user'
    database_url: str = 'sqlite:///social_link.db'
    broker_database_url: str = 'sqlite:///broker_secrets.db'
    encryption_key: Optional[str] = field(default=None, repr=False)
    credential_cache_ttl: float = 300.0
    oauth_timeout: float = 120.0
    publish_timeout: float = 30.0
    broker_timeout: float = 30.0
    allowed_origins: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_ORIGINS))
    media_upload_url: Optional[str] = None
    generation_toggles: Dict[Platform, bool] = field(
        default_factory=lambda: {platform: True for platform in SUPPORTED_PLATFORMS}
    )
    app_credentials: Dict[Platform, AppCredentials] = field(
        default_factory=lambda: {platform: AppCredentials() for platform in SUPPORTED_PLATFORMS}
    )
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls) -> 'Settings':
        app_credentials = {}
        for platform in SUPPORTED_PLATFORMS:
            prefix = platform.value.upper()
            app_credentials[platform] = AppCredentials(
                client_id=os.getenv(f'{prefix}_CLIENT_ID'),
                client_secret=os.getenv(f'{prefix}_CLIENT_SECRET'),
            )

        return cls(
            use_cloud_storage=_env_bool('USE_CLOUD_STORAGE', False),
            secret_broker_url=os.getenv('SECRET_BROKER_URL') or None,
            enable_real_publish=_env_bool('ENABLE_REAL_PUBLISH', False),
            admin_secret=os.getenv('ADMIN_SECRET') or None,
            app_origin=os.getenv('APP_ORIGIN', 'http://localhost:8081'),
            user_id=os.getenv('SOCIAL_USER_ID', 'demo-user'),
            database_url=os.getenv('DATABASE_URL', 'sqlite:///social_link.db'),
            broker_database_url=os.getenv('BROKER_DATABASE_URL', 'sqlite:///broker_secrets.db'),
            encryption_key=os.getenv('ENCRYPTION_KEY') or None,
            credential_cache_ttl=_env_float('CREDENTIAL_CACHE_TTL', 300.0),
            oauth_timeout=_env_float('OAUTH_TIMEOUT', 120.0),
            publish_timeout=_env_float('PUBLISH_TIMEOUT', 30.0),
            broker_timeout=_env_float('BROKER_TIMEOUT', 30.0),
            allowed_origins=_env_list('ALLOWED_ORIGINS', DEFAULT_ALLOWED_ORIGINS),
            media_upload_url=os.getenv('MEDIA_UPLOAD_URL') or None,
            generation_toggles={
                Platform.LINKEDIN: _env_bool('GEN_LINKEDIN', True),
                Platform.INSTAGRAM: _env_bool('GEN_INSTAGRAM', True),
                Platform.TWITTER: _env_bool('GEN_TWITTER', True),
            },
            app_credentials=app_credentials,
            log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
        )

    def validate(self) -> 'Settings':
        if self.use_cloud_storage and not self.secret_broker_url:
            raise ConfigurationError("USE_CLOUD_STORAGE is enabled but SECRET_BROKER_URL is not set")
        if not self.app_origin.startswith(('http://', 'https://')):
            raise ConfigurationError(f"APP_ORIGIN must be an http(s) origin, got {self.app_origin!r}")
        if not self.user_id:
            raise ConfigurationError("SOCIAL_USER_ID must not be empty")
        for name in ('credential_cache_ttl', 'oauth_timeout', 'publish_timeout', 'broker_timeout'):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")
        return self

    @property
    def enabled_platforms(self) -> List[Platform]:
        return [platform for platform in SUPPORTED_PLATFORMS if self.generation_toggles.get(platform)]

    def redirect_uri(self, platform: Platform) -> str:
        return f"{self.app_origin.rstrip('/')}/auth/{Platform(platform).value}/callback/"


def load_settings() -> Settings:
    return Settings.from_env().validate()
