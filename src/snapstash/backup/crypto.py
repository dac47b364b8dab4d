"""
Password based encryption envelope for Snapstash artifacts.

An encrypted payload is a fixed 50 byte header followed by the ciphertext:

    magic(4) "SSBK" | version(1) | flags(1) | salt(16) | nonce(12) | tag(16)

The key is derived from the password with scrypt over the random salt, and the
payload is sealed with AES-256-GCM under a random nonce. The KDF cost
parameters are fixed by the envelope version; changing them requires a new
version.

Security Design:
    - Fresh salt and nonce for every encryption
    - Authenticated cipher: wrong passwords and tampered ciphertext fail
      loudly instead of returning garbage
    - Header problems are reported before any decryption attempt
"""

from __future__ import annotations

import os
import struct
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from snapstash.errors import CryptoError, FormatError

MAGIC = b"SSBK"
ENVELOPE_VERSION = 2
FLAG_COMPRESSED = 0x01

SALT_LENGTH = 16
NONCE_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32

# scrypt cost parameters, bound to ENVELOPE_VERSION
SCRYPT_N = 2**14
SCRYPT_R = 8
SCRYPT_P = 1

HEADER_FORMAT = ">4sBB16s12s16s"
HEADER_LENGTH = struct.calcsize(HEADER_FORMAT)


@dataclass(frozen=True)
class EnvelopeHeader:
    """Parsed fixed-size header of an encrypted payload."""

    version: int
    flags: int
    salt: bytes
    nonce: bytes
    tag: bytes

    @property
    def compressed(self) -> bool:
        return bool(self.flags & FLAG_COMPRESSED)

    def pack(self) -> bytes:
        return struct.pack(HEADER_FORMAT, MAGIC, self.version, self.flags, self.salt, self.nonce, self.tag)


def derive_key(password: str, salt: bytes) -> bytes:
    """Derive a 256-bit key from ``password`` and ``salt`` with scrypt."""
    kdf = Scrypt(salt=salt, length=KEY_LENGTH, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    return kdf.derive(password.encode("utf-8"))


def has_magic(raw: bytes) -> bool:
    """True if ``raw`` starts with the encrypted envelope magic."""
    return raw[: len(MAGIC)] == MAGIC


def parse_header(raw: bytes) -> EnvelopeHeader:
    """
    Parse and validate the header of an encrypted payload.

    Raises:
        FormatError: If the buffer is too short, the magic does not match or
            the version is unsupported.
    """
    if len(raw) < HEADER_LENGTH:
        raise FormatError(
            f"Encrypted artifact is too short: {len(raw)} bytes, header needs {HEADER_LENGTH}"
        )
    magic, version, flags, salt, nonce, tag = struct.unpack(HEADER_FORMAT, raw[:HEADER_LENGTH])
    if magic != MAGIC:
        raise FormatError(f"Encrypted artifact magic mismatch: expected {MAGIC!r}, got {magic!r}")
    if version != ENVELOPE_VERSION:
        raise FormatError(f"Unsupported encrypted artifact version: {version}")
    return EnvelopeHeader(version=version, flags=flags, salt=salt, nonce=nonce, tag=tag)


def encrypt_payload(plaintext: bytes, password: str, compressed: bool = True) -> bytes:
    """
    Encrypt ``plaintext`` and return header + ciphertext.

    Args:
        plaintext: Bytes to seal, normally the compressed envelope.
        password: Password to derive the key from.
        compressed: Whether ``plaintext`` is compressed; recorded in the flags.
    """
    if not password:
        raise CryptoError("A non-empty password is required for encryption")
    salt = os.urandom(SALT_LENGTH)
    nonce = os.urandom(NONCE_LENGTH)
    sealed = AESGCM(derive_key(password, salt)).encrypt(nonce, plaintext, None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    header = EnvelopeHeader(
        version=ENVELOPE_VERSION,
        flags=FLAG_COMPRESSED if compressed else 0,
        salt=salt,
        nonce=nonce,
        tag=tag,
    )
    return header.pack() + ciphertext


def decrypt_payload(raw: bytes, password: str) -> tuple[EnvelopeHeader, bytes]:
    """
    Decrypt header + ciphertext produced by :func:`encrypt_payload`.

    Returns:
        The parsed header and the decrypted bytes.

    Raises:
        FormatError: If the header is malformed or the ciphertext is missing.
        CryptoError: If authentication fails (wrong password or tampering).
    """
    header = parse_header(raw)
    ciphertext = raw[HEADER_LENGTH:]
    if not ciphertext:
        raise FormatError("Encrypted artifact has no ciphertext")
    try:
        plaintext = AESGCM(derive_key(password, header.salt)).decrypt(
            header.nonce, ciphertext + header.tag, None
        )
    except InvalidTag as e:
        raise CryptoError("Decryption failed: wrong password or corrupted artifact") from e
    return header, plaintext
