"""Durable storage for the credential cache.

The OS credential store (macOS Keychain, Windows Credential Locker, Secret
Service on Linux) is preferred. When no usable keyring backend exists, the
cache is written to a Fernet-encrypted file next to a 0600 key file.
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path

import keyring
from cryptography.fernet import Fernet, InvalidToken
from keyring.errors import KeyringError
from pydantic import ValidationError

from graphgate.auth.models.accounts import TokenCache
from graphgate.errors import TokenStoreError

logger = logging.getLogger(__name__)

SERVICE_NAME = "graphgate"
CACHE_ENTRY = "token-cache"


class TokenStore(ABC):
    """Opaque persistence boundary for the credential cache.

    Implementations own their format and encryption. Failures raise
    TokenStoreError; the caller treats them as fatal at startup.
    """

    @abstractmethod
    def load(self) -> TokenCache:
        """Load the persisted cache, or an empty one if nothing was saved."""

    @abstractmethod
    def save(self, cache: TokenCache) -> None:
        """Replace the persisted cache."""


class KeyringTokenStore(TokenStore):
    """Stores the serialized cache as one secret in the OS keyring."""

    def __init__(self, service_name: str = SERVICE_NAME, entry: str = CACHE_ENTRY):
        self.service_name = service_name
        self.entry = entry

    def load(self) -> TokenCache:
        try:
            payload = keyring.get_password(self.service_name, self.entry)
        except KeyringError as e:
            raise TokenStoreError(f"Failed to read token cache from keyring: {e}") from e

        if payload is None:
            return TokenCache()

        try:
            return TokenCache.model_validate_json(payload)
        except ValidationError as e:
            raise TokenStoreError(f"Corrupt token cache in keyring: {e}") from e

    def save(self, cache: TokenCache) -> None:
        try:
            keyring.set_password(self.service_name, self.entry, cache.model_dump_json())
        except KeyringError as e:
            raise TokenStoreError(f"Failed to write token cache to keyring: {e}") from e


class EncryptedFileTokenStore(TokenStore):
    """Stores the cache in a Fernet-encrypted file."""

    def __init__(self, cache_path: Path, key_path: Path | None = None):
        self.cache_path = Path(cache_path)
        self.key_path = Path(key_path) if key_path else self.cache_path.with_suffix(".key")

    def load(self) -> TokenCache:
        if not self.cache_path.exists():
            return TokenCache()

        try:
            encrypted = self.cache_path.read_bytes()
            payload = self._fernet().decrypt(encrypted)
            return TokenCache.model_validate_json(payload)
        except OSError as e:
            raise TokenStoreError(f"Failed to read {self.cache_path}: {e}") from e
        except InvalidToken as e:
            raise TokenStoreError(
                f"Token cache {self.cache_path} cannot be decrypted with {self.key_path}"
            ) from e
        except ValidationError as e:
            raise TokenStoreError(f"Corrupt token cache {self.cache_path}: {e}") from e
        except ValueError as e:
            raise TokenStoreError(f"Invalid token cache key {self.key_path}: {e}") from e

    def save(self, cache: TokenCache) -> None:
        try:
            encrypted = self._fernet().encrypt(cache.model_dump_json().encode())
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.cache_path.with_suffix(".tmp")
            tmp_path.write_bytes(encrypted)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.cache_path)
        except OSError as e:
            raise TokenStoreError(f"Failed to write {self.cache_path}: {e}") from e

    def _fernet(self) -> Fernet:
        """Load the encryption key, creating it on first use."""
        if self.key_path.exists():
            return Fernet(self.key_path.read_bytes())

        key = Fernet.generate_key()
        self.key_path.parent.mkdir(parents=True, exist_ok=True)
        self.key_path.write_bytes(key)
        os.chmod(self.key_path, 0o600)
        logger.info(f"Created token cache key at {self.key_path}")
        return Fernet(key)


def keyring_available() -> bool:
    """True if a real OS keyring backend is installed."""
    try:
        backend = keyring.get_keyring()
    except KeyringError:
        return False
    return getattr(backend, "priority", 0) > 0


def create_token_store(kind: str, cache_dir: Path) -> TokenStore:
    """Pick the token store for this process.

    Args:
        kind: ``keyring``, ``file`` or ``auto``
        cache_dir: Directory for the encrypted file fallback

    Raises:
        ValueError: If kind is not recognised
    """
    if kind not in ("auto", "keyring", "file"):
        raise ValueError(f"Unknown token store '{kind}'")

    if kind == "keyring" or (kind == "auto" and keyring_available()):
        logger.debug("Using OS keyring token store")
        return KeyringTokenStore()

    logger.debug(f"Using encrypted file token store in {cache_dir}")
    return EncryptedFileTokenStore(Path(cache_dir) / "token-cache.bin")
