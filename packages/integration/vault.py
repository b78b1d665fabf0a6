"""AES-256-GCM credential vault.

Ciphertexts are ``base64(nonce ‖ ciphertext ‖ tag)`` with a 12-byte random
nonce per call. The key never leaves this object and plaintext tokens are
never logged.
"""
import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from packages.integration.errors import DecryptionError, InvalidKeyLength, InvalidRequest

KEY_SIZE = 32
NONCE_SIZE = 12
_TAG_SIZE = 16


def load_key(raw: str) -> bytes:
    """Accept the key as 32 raw characters or as ``base64:<32 bytes b64>``."""
    if raw.startswith("base64:"):
        try:
            return base64.b64decode(raw[len("base64:"):], validate=True)
        except (binascii.Error, ValueError) as e:
            raise InvalidKeyLength(f"encryption key is not valid base64: {e}")
    return raw.encode()


class CredentialVault:
    def __init__(self, key: bytes):
        if len(key) != KEY_SIZE:
            raise InvalidKeyLength(f"encryption key must be exactly {KEY_SIZE} bytes, got {len(key)}")
        self._aead = AESGCM(key)

    @classmethod
    def from_settings(cls, settings) -> "CredentialVault":
        return cls(load_key(settings.encryption_key))

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, plaintext.encode(), None)
        return base64.b64encode(nonce + sealed).decode()

    def decrypt(self, ciphertext: str) -> str:
        try:
            raw = base64.b64decode(ciphertext, validate=True)
        except (binascii.Error, ValueError):
            raise DecryptionError("ciphertext is not valid base64")
        if len(raw) < NONCE_SIZE + _TAG_SIZE:
            raise DecryptionError("ciphertext too short")
        nonce, sealed = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
        try:
            return self._aead.decrypt(nonce, sealed, None).decode()
        except InvalidTag:
            raise DecryptionError("authentication failed")
        except UnicodeDecodeError:
            raise DecryptionError("decrypted value is not utf-8")

    @staticmethod
    def is_encrypted(text: str) -> bool:
        # Heuristic only, used to skip already-migrated rows.
        if len(text) <= 50:
            return False
        try:
            base64.b64decode(text, validate=True)
        except (binascii.Error, ValueError):
            return False
        return True

    def encrypt_access_token(self, token: str) -> str:
        if not token:
            raise InvalidRequest("access token cannot be empty")
        return self.encrypt(token)

    def decrypt_access_token(self, encrypted: str) -> str:
        if not encrypted:
            raise InvalidRequest("encrypted token cannot be empty")
        return self.decrypt(encrypted)
