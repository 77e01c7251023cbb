from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

from custody.core.config import Settings, get_settings
from custody.core.errors import ConfigurationError


class SecretProvider:
    """Source of wallet secrets. Implementations must never log what they return."""

    def mnemonic(self) -> str:
        raise NotImplementedError

    def passphrase(self) -> str:
        return ""

    def encryption_key(self) -> bytes | None:
        """Fernet key for private keys at rest; None means keys are not persisted."""
        return None


class SettingsSecretProvider(SecretProvider):
    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    def mnemonic(self) -> str:
        secret = self.settings.wallet_mnemonic
        value = secret.get_secret_value().strip() if secret else ""
        if not value:
            raise ConfigurationError("WALLET_MNEMONIC is not configured")
        return " ".join(value.split())

    def passphrase(self) -> str:
        secret = self.settings.wallet_passphrase
        return secret.get_secret_value() if secret else ""

    def encryption_key(self) -> bytes | None:
        secret = self.settings.key_encryption_key
        value = secret.get_secret_value().strip() if secret else ""
        return value.encode() if value else None


class KeyCipher:
    def __init__(self, key: bytes):
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as exc:
            raise ConfigurationError("KEY_ENCRYPTION_KEY is not a valid Fernet key") from exc

    def encrypt(self, private_key: str) -> str:
        return self._fernet.encrypt(private_key.encode()).decode()

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as exc:
            raise ConfigurationError("Stored key cannot be decrypted with the configured key") from exc


@lru_cache
def get_secret_provider() -> SecretProvider:
    return SettingsSecretProvider()
