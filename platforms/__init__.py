from config import Settings
from models import Platform

from .base import BasePlatform
from .instagram import InstagramPlatform
from .linkedin import LinkedInPlatform
from .twitter import TwitterPlatform

PLATFORMS = {
    Platform.LINKEDIN: LinkedInPlatform,
    Platform.INSTAGRAM: InstagramPlatform,
    Platform.TWITTER: TwitterPlatform,
}


def get_platform(platform_name, settings: Settings) -> BasePlatform:
    try:
        platform_class = PLATFORMS[Platform(platform_name)]
    except ValueError:
        raise ValueError(f"Unsupported platform: {platform_name}")
    return platform_class(settings)
