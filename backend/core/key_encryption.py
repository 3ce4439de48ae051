"""AES-256-GCM sealing of user-supplied LLM API keys.

Two on-disk formats exist:

* embedded: ``base64(iv | ciphertext | tag)`` in one string (current);
* legacy: ``{"encrypted": base64(ciphertext | tag), "iv": base64(iv)}``.

The AES key is derived from the server secret with scrypt. Values sealed
before key derivation existed used the first 32 bytes of the secret as the
raw key; decryption tries both.
"""

from __future__ import annotations

import base64
import binascii
import os
from functools import lru_cache
from typing import Dict

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

IV_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32
MIN_SECRET_LENGTH = 32
KDF_SALT = b"novelworld-ai-key-encryption-v1"
SCRYPT_N = 16384
SCRYPT_R = 8
SCRYPT_P = 1


class KeyEncryptionError(Exception):
    """Server-side misconfiguration (missing or short secret)."""


class KeyDecryptionError(Exception):
    """Sealed value is malformed or was sealed with a different secret."""


def _check_secret(secret: str | None) -> str:
    if not secret or len(secret) < MIN_SECRET_LENGTH:
        raise KeyEncryptionError(
            f"API_KEY_ENCRYPTION_SECRET must be at least {MIN_SECRET_LENGTH} characters"
        )
    return secret


@lru_cache(maxsize=8)
def _derived_key(secret: str) -> bytes:
    kdf = Scrypt(salt=KDF_SALT, length=KEY_LENGTH, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    return kdf.derive(secret.encode("utf-8"))


def _legacy_key(secret: str) -> bytes:
    return secret[:KEY_LENGTH].encode("utf-8")[:KEY_LENGTH]


def _open(sealed: bytes, iv: bytes, secret: str) -> str:
    last_error: Exception | None = None
    for key in (_derived_key(secret), _legacy_key(secret)):
        if len(key) != KEY_LENGTH:
            continue
        try:
            return AESGCM(key).decrypt(iv, sealed, None).decode("utf-8")
        except (InvalidTag, UnicodeDecodeError) as exc:
            last_error = exc
    raise KeyDecryptionError("Failed to decrypt API key") from last_error


def _b64decode(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise KeyDecryptionError("Encrypted API key is not valid base64") from exc


def encrypt_api_key(api_key: str, secret: str | None) -> Dict[str, str]:
    """Seal into the legacy two-field format."""
    key = _derived_key(_check_secret(secret))
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(key).encrypt(iv, api_key.encode("utf-8"), None)
    return {
        "encrypted": base64.b64encode(sealed).decode("ascii"),
        "iv": base64.b64encode(iv).decode("ascii"),
    }


def decrypt_api_key(encrypted: str, iv: str, secret: str | None) -> str:
    secret = _check_secret(secret)
    sealed = _b64decode(encrypted)
    raw_iv = _b64decode(iv)
    if len(raw_iv) != IV_LENGTH or len(sealed) < TAG_LENGTH:
        raise KeyDecryptionError("Encrypted API key has an invalid layout")
    return _open(sealed, raw_iv, secret)


def encrypt_api_key_embedded(api_key: str, secret: str | None) -> str:
    """Seal into a single base64 string carrying its own IV."""
    key = _derived_key(_check_secret(secret))
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(key).encrypt(iv, api_key.encode("utf-8"), None)
    return base64.b64encode(iv + sealed).decode("ascii")


def decrypt_api_key_embedded(value: str, secret: str | None) -> str:
    secret = _check_secret(secret)
    combined = _b64decode(value)
    if len(combined) < IV_LENGTH + TAG_LENGTH:
        raise KeyDecryptionError("Encrypted API key has an invalid layout")
    return _open(combined[IV_LENGTH:], combined[:IV_LENGTH], secret)


def mask_api_key(api_key: str) -> str:
    if not api_key or len(api_key) <= 8:
        return "********"
    return f"{api_key[:4]}********{api_key[-4:]}"
