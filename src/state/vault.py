from __future__ import annotations

import hashlib
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .models import EnvelopeSecret


# Additional authenticated data binding each layer to its purpose
KEY_WRAP_AAD = b"graker-dek-wrapping"
PAYLOAD_AAD = b"graker-dek-encryption"

IV_BYTES = 16
TAG_BYTES = 16
DEK_BITS = 256


class VaultError(RuntimeError):
    """Base error for envelope decryption."""


class AuthenticationError(VaultError):
    """Tag verification failed: wrong master key, or a tampered/corrupt secret."""


def _key_bytes(key: str | bytes) -> bytes:
    return key.encode("utf-8") if isinstance(key, str) else key


def _unhex(value: str, what: str) -> bytes:
    try:
        return bytes.fromhex(value)
    except (TypeError, ValueError) as ex:
        raise AuthenticationError(f"{what} is not valid hex") from ex


def derive_wrapping_key(master_key: str | bytes) -> bytes:
    """SHA-256 of the master key; the 32-byte AES key that wraps every DEK."""
    return hashlib.sha256(_key_bytes(master_key)).digest()


def _open(key: bytes, iv: bytes, ciphertext: bytes, tag: bytes, aad: bytes, what: str) -> bytes:
    if len(tag) != TAG_BYTES:
        raise AuthenticationError(f"{what}: authentication tag must be {TAG_BYTES} bytes")
    try:
        return AESGCM(key).decrypt(iv, ciphertext + tag, aad)
    except InvalidTag as ex:
        raise AuthenticationError(f"{what}: authentication tag mismatch") from ex
    except ValueError as ex:
        # Bad key or nonce length
        raise AuthenticationError(f"{what}: {ex}") from ex


def unwrap_key(wrapped_key: str, master_key: str | bytes, wrap_iv: str, wrap_tag: str) -> bytes:
    """Recover a data-encryption key sealed under the master key.

    Raises AuthenticationError if the tag does not verify; nothing is returned
    from a partially decrypted key.
    """
    return _open(
        derive_wrapping_key(master_key),
        _unhex(wrap_iv, "wrapped IV"),
        _unhex(wrapped_key, "wrapped DEK"),
        _unhex(wrap_tag, "wrapped tag"),
        KEY_WRAP_AAD,
        "unwrap DEK",
    )


def decrypt(ciphertext: str, key: bytes, iv: str, tag: str) -> str:
    """Decrypt a hex payload under `key` and return it as UTF-8 text."""
    plaintext = _open(
        key,
        _unhex(iv, "payload IV"),
        _unhex(ciphertext, "payload"),
        _unhex(tag, "payload tag"),
        PAYLOAD_AAD,
        "decrypt payload",
    )
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as ex:
        raise VaultError("Decrypted payload is not UTF-8 text") from ex


def decrypt_envelope(secret: EnvelopeSecret, master_key: str | bytes) -> str:
    dek = unwrap_key(secret.wrapped_dek, master_key, secret.wrapped_iv, secret.wrapped_tag)
    return decrypt(secret.ciphertext, dek, secret.iv, secret.tag)


def encrypt_envelope(plaintext: str, master_key: str | bytes) -> EnvelopeSecret:
    """Seal `plaintext` under a fresh DEK and wrap the DEK under the master key."""
    dek = AESGCM.generate_key(bit_length=DEK_BITS)
    iv = os.urandom(IV_BYTES)
    sealed = AESGCM(dek).encrypt(iv, plaintext.encode("utf-8"), PAYLOAD_AAD)

    wrap_iv = os.urandom(IV_BYTES)
    wrapped = AESGCM(derive_wrapping_key(master_key)).encrypt(wrap_iv, dek, KEY_WRAP_AAD)

    # AESGCM appends the tag to the ciphertext; the stored format keeps them apart
    return EnvelopeSecret(
        ciphertext=sealed[:-TAG_BYTES].hex(),
        iv=iv.hex(),
        tag=sealed[-TAG_BYTES:].hex(),
        wrapped_dek=wrapped[:-TAG_BYTES].hex(),
        wrapped_iv=wrap_iv.hex(),
        wrapped_tag=wrapped[-TAG_BYTES:].hex(),
    )


class CredentialVault:
    """
    Holds the scheduler master key and opens envelope-encrypted secrets.

    Callers hand over an `EnvelopeSecret` and get plaintext back; the master key
    and unwrapped DEKs never leave this object.
    """

    def __init__(self, master_key: str | bytes) -> None:
        if not master_key:
            raise ValueError("master_key is required")
        self._master_key = _key_bytes(master_key)

    def decrypt_envelope(self, secret: EnvelopeSecret, master_key: Optional[str | bytes] = None) -> str:
        return decrypt_envelope(secret, master_key or self._master_key)

    def encrypt_envelope(self, plaintext: str, master_key: Optional[str | bytes] = None) -> EnvelopeSecret:
        return encrypt_envelope(plaintext, master_key or self._master_key)

    def __repr__(self) -> str:
        return "CredentialVault(master_key=***)"


__all__ = [
    "AuthenticationError",
    "CredentialVault",
    "VaultError",
    "decrypt",
    "decrypt_envelope",
    "encrypt_envelope",
    "unwrap_key",
]
