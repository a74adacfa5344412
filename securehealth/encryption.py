"""
Encryption gateway – the boundary to the encryption provider.

The engine only decides *whether* to call encrypt/decrypt. Providers must
raise KeyUnavailableError or MalformedCiphertextError so callers can tell
the two failure kinds apart.
"""

import json
from abc import ABC, abstractmethod
from typing import Any, Sequence

import structlog
from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from securehealth.errors import KeyUnavailableError, MalformedCiphertextError
from securehealth.models import FieldDescriptor

logger = structlog.get_logger()


class EncryptionGateway(ABC):

    @abstractmethod
    def encrypt(self, descriptor: FieldDescriptor, plaintext: Any) -> Any:
        ...

    @abstractmethod
    def decrypt(self, descriptor: FieldDescriptor, ciphertext: Any) -> Any:
        ...


class FernetEncryptionGateway(EncryptionGateway):
    """
    Local provider for development and single-node deployments.

    Every encryption class is produced with randomized Fernet tokens, so
    equality and range search need the external queryable-encryption
    provider. Keys are tried newest first, which allows rotation: add the
    new key at the front, re-encrypt with `rotate`, then drop the old key.
    """

    def __init__(self, keys: Sequence):
        self._fernet = None
        if keys:
            try:
                self._fernet = MultiFernet([Fernet(k) for k in keys])
            except (ValueError, TypeError) as e:
                logger.error("Invalid encryption key material", error=str(e))
                raise KeyUnavailableError("invalid encryption key material") from e

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def _require_keys(self) -> MultiFernet:
        if self._fernet is None:
            raise KeyUnavailableError("no encryption keys configured")
        return self._fernet

    def encrypt(self, descriptor: FieldDescriptor, plaintext: Any) -> Any:
        if plaintext is None:
            return None
        fernet = self._require_keys()
        payload = json.dumps(plaintext, sort_keys=True, default=str).encode("utf-8")
        return fernet.encrypt(payload).decode("ascii")

    def decrypt(self, descriptor: FieldDescriptor, ciphertext: Any) -> Any:
        if ciphertext is None:
            return None
        fernet = self._require_keys()
        if not isinstance(ciphertext, str):
            raise MalformedCiphertextError(
                f"{descriptor.record_type}.{descriptor.field_name}: ciphertext is not a token"
            )
        try:
            payload = fernet.decrypt(ciphertext.encode("ascii"))
            return json.loads(payload.decode("utf-8"))
        except (InvalidToken, UnicodeError, ValueError) as e:
            raise MalformedCiphertextError(
                f"{descriptor.record_type}.{descriptor.field_name}: ciphertext rejected"
            ) from e

    def rotate(self, ciphertext: str) -> str:
        """Re-encrypt a token under the newest key."""
        try:
            return self._require_keys().rotate(ciphertext.encode("ascii")).decode("ascii")
        except InvalidToken as e:
            raise MalformedCiphertextError("ciphertext rejected during rotation") from e
