"""Logging configuration and secret redaction."""

import logging
import re
import sys
from typing import Any, Mapping

REDACTED = '***'

SECRET_KEYS = {
    'accesstoken',
    'access_token',
    'refreshtoken',
    'refresh_token',
    'bearertoken',
    'clientsecret',
    'client_secret',
    'code',
    'code_verifier',
    'codeverifier',
    'adminsecret',
    'password',
}

_SECRET_PATTERNS = [
    re.compile(r'(Bearer\s+)[^\s\'",}]+', re.IGNORECASE),
    re.compile(
        r'((?:access_token|refresh_token|client_secret|code_verifier|code)=)[^&\s\'"]+',
        re.IGNORECASE,
    ),
    re.compile(
        r'([\'"](?:accessToken|refreshToken|clientSecret|access_token|refresh_token|client_secret)[\'"]\s*:\s*[\'"])[^\'"]+',
    ),
]


def redact_text(text: str) -> str:
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(lambda match: match.group(1) + REDACTED, text)
    return text


def redact(value: Any) -> Any:
    """Return a copy of ``value`` safe to log: secret-looking keys are masked."""
    if isinstance(value, Mapping):
        return {
            key: (REDACTED if str(key).lower() in SECRET_KEYS and item else redact(item))
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(redact(item) for item in value)
    if isinstance(value, str):
        return redact_text(value)
    return value


class SecretRedactionFilter(logging.Filter):
    """Mask tokens that slip into log messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        cleaned = redact_text(message)
        if cleaned != message:
            record.msg = cleaned
            record.args = None
        return True


def configure_logging(level: str = 'INFO') -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    for handler in root.handlers:
        if getattr(handler, '_social_link', False):
            return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(name)s: %(message)s'))
    handler.addFilter(SecretRedactionFilter())
    handler._social_link = True
    root.addHandler(handler)
