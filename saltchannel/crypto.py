"""Cryptographic primitives used by the channel.

Key exchange is X25519, encryption is XSalsa20 with a Poly1305 MAC,
signatures are Ed25519 and hashing is SHA-512.
"""

from __future__ import annotations

import hashlib

import nacl.bindings
import nacl.exceptions
import nacl.utils

__all__ = [
    "BOX_PUBLICKEYBYTES",
    "BOX_SECRETKEYBYTES",
    "BOX_BEFORENMBYTES",
    "BOX_NONCEBYTES",
    "BOX_MACBYTES",
    "SIGN_PUBLICKEYBYTES",
    "SIGN_SECRETKEYBYTES",
    "SIGN_BYTES",
    "SHA512_BYTES",
    "CryptoError",
    "Sha512",
    "random_bytes",
    "box_keypair",
    "box_beforenm",
    "box_afternm",
    "box_open_afternm",
    "sign_keypair",
    "sign",
    "sign_open",
    "sign_verify_detached",
    "sha512",
]

BOX_PUBLICKEYBYTES = 32
BOX_SECRETKEYBYTES = 32
BOX_BEFORENMBYTES = 32
BOX_NONCEBYTES = 24
BOX_MACBYTES = 16

SIGN_PUBLICKEYBYTES = 32
SIGN_SECRETKEYBYTES = 64
SIGN_BYTES = 64

SHA512_BYTES = 64


class CryptoError(Exception):
    """A cryptographic operation failed (bad key, MAC or signature)."""


def _require_length(value: bytes, size: int) -> bytes:
    value = bytes(value)
    if len(value) != size:
        raise ValueError(f"expected {size} bytes, got {len(value)}")
    return value


def random_bytes(length: int) -> bytes:
    """Return ``length`` cryptographically secure random bytes."""
    if length < 0:
        raise ValueError("length must not be negative")
    return nacl.utils.random(length)


def box_keypair() -> tuple[bytes, bytes]:
    """Generate an X25519 key pair, returned as ``(public, secret)``."""
    public_key, secret_key = nacl.bindings.crypto_box_keypair()
    return public_key, secret_key


def box_beforenm(public_key: bytes, secret_key: bytes) -> bytes:
    """Compute the shared symmetric key from a peer public key and our secret key."""
    public_key = _require_length(public_key, BOX_PUBLICKEYBYTES)
    secret_key = _require_length(secret_key, BOX_SECRETKEYBYTES)
    try:
        return nacl.bindings.crypto_box_beforenm(public_key, secret_key)
    except nacl.exceptions.CryptoError as exc:
        raise CryptoError("key agreement failed") from exc


def box_afternm(message: bytes, nonce: bytes, key: bytes) -> bytes:
    """Encrypt and authenticate ``message``; returns ``mac[16] || cipher``."""
    nonce = _require_length(nonce, BOX_NONCEBYTES)
    key = _require_length(key, BOX_BEFORENMBYTES)
    try:
        return nacl.bindings.crypto_box_afternm(bytes(message), nonce, key)
    except nacl.exceptions.CryptoError as exc:
        raise CryptoError("encryption failed") from exc


def box_open_afternm(cipher: bytes, nonce: bytes, key: bytes) -> bytes:
    """Verify and decrypt ``mac[16] || cipher``; returns the clear text."""
    nonce = _require_length(nonce, BOX_NONCEBYTES)
    key = _require_length(key, BOX_BEFORENMBYTES)
    cipher = bytes(cipher)
    if len(cipher) < BOX_MACBYTES:
        raise CryptoError("cipher text shorter than the MAC")
    try:
        return nacl.bindings.crypto_box_open_afternm(cipher, nonce, key)
    except nacl.exceptions.CryptoError as exc:
        raise CryptoError("decryption or verification failed") from exc


def sign_keypair() -> tuple[bytes, bytes]:
    """Generate an Ed25519 key pair, returned as ``(public, secret)``."""
    public_key, secret_key = nacl.bindings.crypto_sign_keypair()
    return public_key, secret_key


def sign(message: bytes, secret_key: bytes) -> bytes:
    """Sign ``message``; returns ``signature[64] || message``."""
    secret_key = _require_length(secret_key, SIGN_SECRETKEYBYTES)
    try:
        return nacl.bindings.crypto_sign(bytes(message), secret_key)
    except nacl.exceptions.CryptoError as exc:
        raise CryptoError("signing failed") from exc


def sign_open(signed_message: bytes, public_key: bytes) -> bytes:
    """Verify ``signature[64] || message`` and return the message."""
    public_key = _require_length(public_key, SIGN_PUBLICKEYBYTES)
    signed_message = bytes(signed_message)
    if len(signed_message) < SIGN_BYTES:
        raise CryptoError("signed message shorter than a signature")
    try:
        return nacl.bindings.crypto_sign_open(signed_message, public_key)
    except nacl.exceptions.CryptoError as exc:
        raise CryptoError("signature verification failed") from exc


def sign_verify_detached(signature: bytes, message: bytes, public_key: bytes) -> None:
    """Verify a detached signature; raises :class:`CryptoError` if invalid."""
    signature = _require_length(signature, SIGN_BYTES)
    sign_open(signature + bytes(message), public_key)


def sha512(message: bytes) -> bytes:
    """Return the SHA-512 digest of ``message``."""
    return hashlib.sha512(bytes(message)).digest()


class Sha512:
    """Incremental SHA-512 hashing."""

    digest_size = SHA512_BYTES

    def __init__(self) -> None:
        self._state = hashlib.sha512()

    def update(self, data: bytes) -> None:
        """Feed another part of the message."""
        self._state.update(bytes(data))

    def digest(self) -> bytes:
        """Return the digest of everything fed so far."""
        return self._state.digest()