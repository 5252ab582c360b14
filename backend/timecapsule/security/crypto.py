"""AES-256-GCM encryption for tokens at rest, SHA-256 hashing, random tokens."""

import base64
import binascii
import hashlib
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import BaseModel

# GCM: 96-bit nonce, 128-bit tag appended to the ciphertext by AESGCM
_IV_BYTES = 12
_TAG_BYTES = 16
_KEY_HEX_LENGTH = 64


class DecryptionFailed(Exception):
    """Wrong key, corrupted ciphertext or tag mismatch. Never says which."""

    def __init__(self) -> None:
        super().__init__("Decryption failed: invalid key or corrupted data")


class EncryptedData(BaseModel):
    """Encrypted value as stored: all fields base64url without padding."""

    ciphertext: str
    iv: str
    tag: str


def base64url_encode(data: bytes) -> str:
    """Base64url without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def base64url_decode(value: str) -> bytes:
    """Decode base64url with or without padding."""
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def _load_key(encryption_key: str) -> bytes:
    """Parse a 64-char hex key into 32 bytes. Raises ValueError on bad config."""
    if len(encryption_key) != _KEY_HEX_LENGTH:
        raise ValueError("Encryption key must be 64 hex characters (256 bits)")
    try:
        return bytes.fromhex(encryption_key)
    except ValueError:
        raise ValueError("Encryption key must be hex encoded")


def encrypt(plaintext: str, encryption_key: str) -> EncryptedData:
    """Encrypt a UTF-8 string with a fresh random IV."""
    aes = AESGCM(_load_key(encryption_key))
    iv = secrets.token_bytes(_IV_BYTES)
    sealed = aes.encrypt(iv, plaintext.encode("utf-8"), None)
    return EncryptedData(
        ciphertext=base64url_encode(sealed[:-_TAG_BYTES]),
        iv=base64url_encode(iv),
        tag=base64url_encode(sealed[-_TAG_BYTES:]),
    )


def decrypt(encrypted: EncryptedData, encryption_key: str) -> str:
    """
    Decrypt and authenticate. Raises DecryptionFailed for a wrong key, tampered data,
    or fields that are not valid base64url.
    """
    aes = AESGCM(_load_key(encryption_key))
    try:
        iv = base64url_decode(encrypted.iv)
        sealed = base64url_decode(encrypted.ciphertext) + base64url_decode(encrypted.tag)
        return aes.decrypt(iv, sealed, None).decode("utf-8")
    except (InvalidTag, ValueError, binascii.Error):
        raise DecryptionFailed()


def sha256_hash(data: str) -> str:
    """SHA-256 hex digest (64 lowercase hex chars) of a UTF-8 string."""
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def generate_secure_token(byte_length: int = 16) -> str:
    """Random base64url token; 16 bytes gives 22 characters."""
    return base64url_encode(secrets.token_bytes(byte_length))
