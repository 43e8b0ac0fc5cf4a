import json
import logging
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from database import SecretContainer, SecretVersion
from encryption import TokenCipher
from errors import SecretAlreadyExists, SecretNotFound
from models import Platform, utcnow

logger = logging.getLogger(__name__)


def credential_secret_id(user_id: str, platform: Platform) -> str:
    return f"social-{user_id}-{Platform(platform).value}"


def app_secret_id(platform: Platform, field_name: str) -> str:
    return f"app-{Platform(platform).value}-{field_name}"


def sanitize_secret_value(value: Optional[str]) -> Optional[str]:
    """Strip whitespace and one pair of surrounding quotes."""
    if not isinstance(value, str):
        return value
    cleaned = value.strip()
    if len(cleaned) >= 2 and cleaned[0] == cleaned[-1] and cleaned[0] in ('"', "'"):
        cleaned = cleaned[1:-1].strip()
    return cleaned


class SecretManager:
    """Managed secret store: named containers holding encrypted versions."""

    def __init__(self, session_factory, cipher: TokenCipher):
        self._session_factory = session_factory
        self._cipher = cipher

    def create_secret(self, secret_id: str) -> None:
        session = self._session_factory()
        try:
            session.add(SecretContainer(name=secret_id))
            session.commit()
        except IntegrityError:
            session.rollback()
            raise SecretAlreadyExists(secret_id)
        finally:
            session.close()

    def add_secret_version(self, secret_id: str, payload: str, attempts: int = 3) -> int:
        encrypted = self._cipher.encrypt(payload)
        for attempt in range(attempts):
            session = self._session_factory()
            try:
                container = session.query(SecretContainer).filter_by(name=secret_id).first()
                if not container:
                    raise SecretNotFound(secret_id)
                latest = session.query(func.max(SecretVersion.version)).filter_by(secret_id=container.id).scalar()
                version = (latest or 0) + 1
                session.add(SecretVersion(secret_id=container.id, version=version, payload=encrypted))
                session.commit()
                return version
            except IntegrityError:
                # A concurrent writer took this version number
                session.rollback()
                if attempt == attempts - 1:
                    raise
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    def access_latest(self, secret_id: str) -> str:
        session = self._session_factory()
        try:
            container = session.query(SecretContainer).filter_by(name=secret_id).first()
            if not container:
                raise SecretNotFound(secret_id)
            latest = (
                session.query(SecretVersion)
                .filter_by(secret_id=container.id)
                .order_by(SecretVersion.version.desc())
                .first()
            )
            if not latest:
                raise SecretNotFound(secret_id)
            return self._cipher.decrypt(latest.payload)
        finally:
            session.close()

    def delete_secret(self, secret_id: str) -> None:
        session = self._session_factory()
        try:
            container = session.query(SecretContainer).filter_by(name=secret_id).first()
            if not container:
                raise SecretNotFound(secret_id)
            session.delete(container)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # Idempotent helpers used by the broker endpoints

    def save_json(self, secret_id: str, data: Dict[str, Any]) -> None:
        try:
            self.create_secret(secret_id)
        except SecretAlreadyExists:
            # Another writer created it first; adding a version is still correct
            pass
        self.add_secret_version(secret_id, json.dumps(data))

    def load_json(self, secret_id: str) -> Optional[Dict[str, Any]]:
        try:
            return json.loads(self.access_latest(secret_id))
        except SecretNotFound:
            return None

    def delete_if_exists(self, secret_id: str) -> bool:
        try:
            self.delete_secret(secret_id)
            return True
        except SecretNotFound:
            return False

    def get_credentials(self, user_id: str, platform: Platform) -> Dict[str, Any]:
        data = self.load_json(credential_secret_id(user_id, platform))
        if data is None:
            return {'connected': False}
        logger.debug(f"🔎 Secret loaded for {platform.value}: connected={data.get('connected')}")
        return data

    def save_credentials(self, user_id: str, platform: Platform, credentials: Dict[str, Any]) -> None:
        record = dict(credentials)
        record.setdefault('savedAt', utcnow().isoformat())
        self.save_json(credential_secret_id(user_id, platform), record)
        logger.info(f"💾 Saved {platform.value} credentials for user {user_id}")

    def delete_credentials(self, user_id: str, platform: Platform) -> None:
        existed = self.delete_if_exists(credential_secret_id(user_id, platform))
        if existed:
            logger.info(f"🗑️ Deleted {platform.value} credentials for user {user_id}")

    def get_secret_value(self, secret_id: str) -> Optional[str]:
        try:
            return sanitize_secret_value(self.access_latest(secret_id))
        except SecretNotFound:
            return None

    def set_secret_value(self, secret_id: str, value: str) -> None:
        try:
            self.create_secret(secret_id)
        except SecretAlreadyExists:
            pass
        self.add_secret_version(secret_id, sanitize_secret_value(value))
