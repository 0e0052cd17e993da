"""
Credential encryption — AES-256-GCM with a PBKDF2-derived key.

Token layout (base64): salt(16) | nonce(12) | ciphertext + tag(16).
Each encryption uses a fresh salt and nonce; the master secret lives in
the environment, never in the database.
"""
import base64
import binascii
import json
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

SALT_LENGTH = 16
NONCE_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32
MIN_MASTER_KEY_LENGTH = 32


class DecryptionError(Exception):
    """Token is corrupt, truncated or was encrypted with another key"""


class CredentialCipher:
    """Authenticated symmetric cipher keyed by a master secret"""

    def __init__(self, master_key: str, *, key_id: str, iterations: int = 100_000):
        if not master_key or len(master_key) < MIN_MASTER_KEY_LENGTH:
            raise ValueError(
                f"master key must be at least {MIN_MASTER_KEY_LENGTH} characters long"
            )
        self._master_key = master_key.encode("utf-8")
        self.key_id = key_id
        self._iterations = iterations

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=self._iterations,
        )
        return kdf.derive(self._master_key)

    def encrypt(self, plaintext: str) -> str:
        salt = os.urandom(SALT_LENGTH)
        nonce = os.urandom(NONCE_LENGTH)
        ciphertext = AESGCM(self._derive_key(salt)).encrypt(
            nonce, plaintext.encode("utf-8"), None
        )
        return base64.b64encode(salt + nonce + ciphertext).decode("ascii")

    def decrypt(self, token: str) -> str:
        try:
            raw = base64.b64decode(token, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecryptionError("token is not valid base64") from e

        if len(raw) < SALT_LENGTH + NONCE_LENGTH + TAG_LENGTH:
            raise DecryptionError("token is too short")

        salt = raw[:SALT_LENGTH]
        nonce = raw[SALT_LENGTH:SALT_LENGTH + NONCE_LENGTH]
        ciphertext = raw[SALT_LENGTH + NONCE_LENGTH:]
        try:
            plaintext = AESGCM(self._derive_key(salt)).decrypt(nonce, ciphertext, None)
        except InvalidTag as e:
            raise DecryptionError("authentication tag mismatch") from e
        return plaintext.decode("utf-8")

    def encrypt_json(self, data: dict[str, Any]) -> str:
        return self.encrypt(json.dumps(data, sort_keys=True))

    def decrypt_json(self, token: str) -> dict[str, Any]:
        return json.loads(self.decrypt(token))
