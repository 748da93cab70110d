"""Internal helpers for encrypting the stored portal password."""

from __future__ import annotations

import base64
import logging
from pathlib import Path

from Crypto.Cipher import AES
from Crypto.Random import get_random_bytes

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16

_LOGGER = logging.getLogger(__name__)


def load_or_create_key(path: Path, *, replace_invalid: bool = False) -> bytes:
    """Load the 32-byte local key, generating and saving a new one if missing.

    A key file of the wrong size raises :class:`ValueError` unless
    *replace_invalid* is set, in which case it is replaced and any stored
    password becomes unreadable.
    """
    if path.exists():
        key = path.read_bytes()
        if len(key) == KEY_SIZE:
            return key
        if not replace_invalid:
            raise ValueError(f"Key file {path} is {len(key)} bytes, expected {KEY_SIZE}.")
        _LOGGER.warning("Replacing invalid key file %s; stored passwords are lost", path)
    key = get_random_bytes(KEY_SIZE)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(key)
    path.chmod(0o600)
    return key


def aes_gcm_encrypt(plaintext: bytes, key: bytes) -> bytes:
    """AES-256-GCM encryption; returns ``nonce || ciphertext || tag``."""
    nonce = get_random_bytes(NONCE_SIZE)
    cipher = AES.new(key, AES.MODE_GCM, nonce=nonce)
    ciphertext, tag = cipher.encrypt_and_digest(plaintext)
    return nonce + ciphertext + tag


def aes_gcm_decrypt(blob: bytes, key: bytes) -> bytes:
    """Reverse :func:`aes_gcm_encrypt`.

    Raises :class:`ValueError` if *blob* is truncated or fails authentication.
    """
    if len(blob) < NONCE_SIZE + TAG_SIZE:
        raise ValueError("Ciphertext too short.")
    nonce, ciphertext, tag = blob[:NONCE_SIZE], blob[NONCE_SIZE:-TAG_SIZE], blob[-TAG_SIZE:]
    cipher = AES.new(key, AES.MODE_GCM, nonce=nonce)
    result: bytes = cipher.decrypt_and_verify(ciphertext, tag)
    return result


def encrypt_string(value: str, key: bytes) -> str:
    return base64.b64encode(aes_gcm_encrypt(value.encode("utf-8"), key)).decode("ascii")


def decrypt_string(value: str, key: bytes) -> str:
    return aes_gcm_decrypt(base64.b64decode(value), key).decode("utf-8")
