import asyncio
import base64
import logging
import mimetypes
import os
import re
from abc import ABC, abstractmethod
from typing import Optional, Tuple

import aiohttp

from errors import MediaUploadError
from models import MediaReference

logger = logging.getLogger(__name__)

_DATA_URI = re.compile(r'^data:(?P<mime>[\w/+.-]+)?(?P<b64>;base64)?,(?P<data>.*)$', re.DOTALL)


class MediaUploader(ABC):
    """Turns a local image handle into a publicly reachable URL."""

    @abstractmethod
    async def upload(self, media: MediaReference) -> str:
        pass


def read_media(media: MediaReference) -> Tuple[bytes, str, str]:
    """Return ``(payload, filename, content_type)`` for a file path or ``data:`` URI."""
    match = _DATA_URI.match(media.value)
    if match:
        content_type = match.group('mime') or 'application/octet-stream'
        raw = match.group('data')
        try:
            payload = base64.b64decode(raw) if match.group('b64') else raw.encode('utf-8')
        except ValueError as e:
            raise MediaUploadError(f"Invalid data URI: {e}")
        extension = mimetypes.guess_extension(content_type) or ''
        return payload, f"upload{extension}", content_type

    path = media.value[len('file://'):] if media.value.startswith('file://') else media.value
    if not os.path.isfile(path):
        raise MediaUploadError(f"Media file not found: {path}")
    with open(path, 'rb') as f:
        payload = f.read()
    content_type = mimetypes.guess_type(path)[0] or 'application/octet-stream'
    return payload, os.path.basename(path), content_type


class HttpMediaUploader(MediaUploader):
    """Multipart POST to an upload endpoint answering ``{success, url}``."""

    def __init__(self, upload_url: str, timeout: float = 30.0):
        self.upload_url = upload_url
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def upload(self, media: MediaReference) -> str:
        payload, filename, content_type = read_media(media)
        form = aiohttp.FormData()
        form.add_field('file', payload, filename=filename, content_type=content_type)

        logger.info(f"📤 Uploading {filename} ({len(payload)} bytes)")
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(self.upload_url, data=form) as resp:
                    try:
                        data = await resp.json(content_type=None)
                    except ValueError:
                        data = None
                    status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise MediaUploadError(f"Upload failed: {e or type(e).__name__}")

        if not isinstance(data, dict) or status >= 400 or not data.get('success') or not data.get('url'):
            error = data.get('error') if isinstance(data, dict) else None
            raise MediaUploadError(f"Upload failed: {error or f'HTTP {status}'}")

        logger.info(f"✅ Media uploaded: {data['url']}")
        return data['url']


async def resolve_media(media, uploader: Optional[MediaUploader]) -> Optional[str]:
    """Public URL for ``media``, uploading local handles first.

    Raises ``MediaUploadError`` when a local handle cannot be uploaded.
    """
    reference = MediaReference.coerce(media)
    if reference is None:
        return None
    if reference.is_public:
        return reference.value
    if uploader is None:
        raise MediaUploadError("No media upload endpoint configured (MEDIA_UPLOAD_URL)")
    return await uploader.upload(reference)
