import base64
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


def _load_key(raw_key: Optional[str]) -> bytes:
    if not raw_key:
        key = Fernet.generate_key()
        logger.warning("❌ No ENCRYPTION_KEY configured, generated an ephemeral key")
        logger.warning("📝 Secrets written with it become unreadable after a restart; set ENCRYPTION_KEY in .env")
        return key

    # Clean the key: remove spaces, newlines, quotes
    return raw_key.strip().strip('"').strip("'").encode('utf-8')


class TokenCipher:
    """Fernet encryption for secret payloads stored by the broker."""

    def __init__(self, raw_key: Optional[str] = None):
        key = _load_key(raw_key)
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as e:
            raise ValueError(f"ENCRYPTION_KEY is not a valid Fernet key: {e}") from e

    def encrypt(self, plaintext: str) -> str:
        encrypted = self._fernet.encrypt(plaintext.encode('utf-8'))
        # URL-safe base64 for text column storage
        return base64.urlsafe_b64encode(encrypted).decode('utf-8')

    def decrypt(self, ciphertext: str) -> str:
        encrypted_bytes = base64.urlsafe_b64decode(ciphertext.encode('utf-8'))
        try:
            return self._fernet.decrypt(encrypted_bytes).decode('utf-8')
        except InvalidToken:
            logger.error("❌ Decryption failed: payload was written with a different ENCRYPTION_KEY")
            raise

    def self_test(self) -> bool:
        """Round-trip a sample value through the cipher."""
        sample = "encryption_self_test"
        try:
            return self.decrypt(self.encrypt(sample)) == sample
        except (InvalidToken, ValueError) as e:
            logger.error(f"💥 Encryption self-test error: {e}")
            return False


def generate_key() -> str:
    return Fernet.generate_key().decode('utf-8')


if __name__ == "__main__":
    print(f"ENCRYPTION_KEY={generate_key()}")
