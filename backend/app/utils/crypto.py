from __future__ import annotations

import base64
import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from flask import current_app, has_app_context

IV_BYTES = 12
KDF_ITERATIONS = 100_000


class BankingCipherError(RuntimeError):
    pass


def _master_key() -> bytes:
    key = ""
    if has_app_context():
        key = (current_app.config.get("BANKING_ENCRYPTION_KEY") or "").strip()
    if not key:
        key = (os.getenv("BANKING_ENCRYPTION_KEY") or "").strip()
    if not key:
        raise BankingCipherError("BANKING_ENCRYPTION_KEY not configured")
    return key.encode("utf-8")


def new_salt() -> str:
    return base64.b64encode(os.urandom(16)).decode("ascii")


def derive_key(salt: str) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=base64.b64decode(salt),
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(_master_key())


def key_hash(key: bytes) -> str:
    return hashlib.sha256(key).hexdigest()


class BankingCipher:
    """AES-GCM over a per-record key; ciphertext is base64(iv + sealed)."""

    def __init__(self, salt: str, expected_key_hash: str | None = None):
        self.salt = salt
        self.key = derive_key(salt)
        if expected_key_hash and key_hash(self.key) != expected_key_hash:
            raise BankingCipherError("encryption key does not match record")
        self._aead = AESGCM(self.key)

    @classmethod
    def for_new_record(cls) -> "BankingCipher":
        return cls(new_salt())

    @property
    def key_hash(self) -> str:
        return key_hash(self.key)

    def encrypt(self, plaintext: str | None) -> str | None:
        if plaintext is None or plaintext == "":
            return None
        iv = os.urandom(IV_BYTES)
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        return base64.b64encode(iv + sealed).decode("ascii")

    def decrypt(self, token: str | None) -> str | None:
        if not token:
            return None
        try:
            raw = base64.b64decode(token)
            plain = self._aead.decrypt(raw[:IV_BYTES], raw[IV_BYTES:], None)
        except (InvalidTag, ValueError) as e:
            raise BankingCipherError("banking field could not be decrypted") from e
        return plain.decode("utf-8")
