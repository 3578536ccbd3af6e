"""
Credential Vault
AES-256-GCM encryption for provider secrets at rest
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .exceptions import ConfigurationError, DecryptionError

logger = logging.getLogger(__name__)

KEY_LENGTH = 32  # AES-256
NONCE_LENGTH = 12  # 96-bit GCM nonce
KEY_PAD_BYTE = b"0"


@dataclass(frozen=True)
class EncryptedSecret:
    ciphertext: bytes
    nonce: bytes

    def __repr__(self) -> str:
        return f"EncryptedSecret(ciphertext=<{len(self.ciphertext)} bytes>, nonce=<{len(self.nonce)} bytes>)"


def derive_key(key: str) -> bytes:
    """
    Fit configured key material to exactly 32 bytes.

    UTF-8 bytes are truncated to 32 and right-padded with ASCII "0". This is a fixed
    convention shared with existing ciphertexts, not a KDF.
    """
    return key.encode("utf-8")[:KEY_LENGTH].ljust(KEY_LENGTH, KEY_PAD_BYTE)


def encrypt(plaintext: str, key: str) -> EncryptedSecret:
    nonce = os.urandom(NONCE_LENGTH)
    ciphertext = AESGCM(derive_key(key)).encrypt(nonce, plaintext.encode("utf-8"), None)
    return EncryptedSecret(ciphertext=ciphertext, nonce=nonce)


def decrypt(ciphertext: bytes, nonce: bytes, key: str) -> str:
    """Decrypt and authenticate; raises DecryptionError on any integrity failure"""
    if not ciphertext or not nonce or len(nonce) != NONCE_LENGTH:
        raise DecryptionError("Malformed encrypted secret")

    try:
        plaintext = AESGCM(derive_key(key)).decrypt(bytes(nonce), bytes(ciphertext), None)
    except InvalidTag as e:
        raise DecryptionError("Authentication tag mismatch") from e

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionError("Decrypted secret is not valid UTF-8") from e


class Vault:
    """Binds the configured key so callers never handle it directly"""

    def __init__(self, key: Optional[str]):
        if not key:
            raise ConfigurationError("MP_TOKEN_KEY not configured")
        self._key = key

    def encrypt(self, plaintext: str) -> EncryptedSecret:
        return encrypt(plaintext, self._key)

    def decrypt(self, secret: EncryptedSecret) -> str:
        return decrypt(secret.ciphertext, secret.nonce, self._key)

    def __repr__(self) -> str:
        return "Vault(key=<redacted>)"
