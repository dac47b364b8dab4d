"""
Text transport for backup artifacts.

Artifacts are text files. The format is chosen by the leading bytes after
trimming whitespace:

    "SSP1:<base64>"   plain: Brotli-compressed envelope
    "<base64>"        encrypted when the decoded bytes start with the magic,
                      otherwise plain without the tag
    "{...}"           legacy all-JSON backup
"""

from __future__ import annotations

import base64
import binascii
import dataclasses
import json
import logging
from typing import Any

from snapstash.backup.compression import (
    ENCODING_BROTLI,
    ENCODING_IDENTITY,
    ENVELOPE_QUALITY,
    compress,
    decompress,
)
from snapstash.backup.crypto import MAGIC, decrypt_payload, encrypt_payload, has_magic
from snapstash.backup.envelope import pack_backup, unpack_backup
from snapstash.backup.models import (
    LEGACY_FORMAT_VERSION,
    SUPPORTED_VERSIONS,
    Backup,
    SourceInfo,
)
from snapstash.errors import FormatError, PasswordRequiredError

logger = logging.getLogger(__name__)

PLAIN_TAG = "SSP1:"

# Base64 characters needed to cover the magic
_MAGIC_B64_CHARS = 4 * ((len(MAGIC) + 2) // 3)


def _b64decode(text: str, what: str) -> bytes:
    try:
        return base64.b64decode("".join(text.split()), validate=True)
    except (binascii.Error, ValueError) as e:
        raise FormatError(f"{what} is not valid base64: {e}") from e


def ensure_supported_version(backup: Backup) -> Backup:
    """
    Reject backups whose format version this reader does not know.

    Raises:
        FormatError: For unsupported versions.
    """
    if backup.format_version not in SUPPORTED_VERSIONS:
        raise FormatError(
            f"Unsupported backup format version: {backup.format_version} "
            f"(supported: {', '.join(str(v) for v in SUPPORTED_VERSIONS)})"
        )
    return backup


def encode_plain_text(backup: Backup) -> str:
    """Compress the envelope and emit it with the plain tag."""
    compressed = compress(pack_backup(backup), ENCODING_BROTLI, ENVELOPE_QUALITY)
    return PLAIN_TAG + base64.b64encode(compressed).decode("ascii")


def decode_plain_text(text: str) -> Backup:
    """Invert :func:`encode_plain_text`. The tag is optional."""
    value = text.strip()
    if value.startswith(PLAIN_TAG):
        value = value[len(PLAIN_TAG):]
    raw = _b64decode(value, "Plain artifact")
    return unpack_backup(decompress(raw, ENCODING_BROTLI))


def encrypt_text(backup: Backup, password: str) -> str:
    """Compress, encrypt and base64 the envelope."""
    compressed = compress(pack_backup(backup), ENCODING_BROTLI, ENVELOPE_QUALITY)
    return base64.b64encode(encrypt_payload(compressed, password, compressed=True)).decode("ascii")


def decrypt_text(text: str, password: str) -> Backup:
    """
    Invert :func:`encrypt_text`.

    Raises:
        FormatError: For malformed headers or payloads.
        CryptoError: If the password is wrong or the ciphertext was altered.
    """
    raw = _b64decode(text.strip(), "Encrypted artifact")
    header, payload = decrypt_payload(raw, password)
    if header.compressed:
        payload = decompress(payload, ENCODING_BROTLI)
    return dataclasses.replace(unpack_backup(payload), encrypted=True)


def is_encrypted_text(text: str) -> bool:
    """Check for the encryption magic without needing a password."""
    head = "".join(text.strip()[: _MAGIC_B64_CHARS * 2].split())[:_MAGIC_B64_CHARS]
    if len(head) < _MAGIC_B64_CHARS:
        return False
    try:
        return has_magic(base64.b64decode(head, validate=True))
    except (binascii.Error, ValueError):
        return False


def _legacy_source(data: dict[str, Any]) -> SourceInfo:
    source = data.get("source") or {}
    if not isinstance(source, dict):
        return SourceInfo()
    excludes = source.get("excludes") or []
    return SourceInfo(
        mode=str(source.get("mode") or ""),
        root=str(source.get("root") or ""),
        excludes=tuple(str(pattern) for pattern in excludes),
    )


def decode_legacy_json(text: str) -> Backup:
    """
    Read an all-JSON backup.

    Version 1 files hold plain item records in ``data``; they are re-encoded
    as identity blobs so the rest of the pipeline treats both versions alike.
    Version 2 JSON files hold base64 item blobs.
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise FormatError(f"Legacy JSON backup is not valid JSON: {e}") from e
    if not isinstance(data, dict) or not isinstance(data.get("data"), list):
        raise FormatError("Legacy JSON backup is missing its data list")

    version = data.get("version")
    if not isinstance(version, int):
        raise FormatError(f"Legacy JSON backup has no usable version: {version!r}")

    payload_encoding = str(data.get("payloadEncoding") or ENCODING_BROTLI)
    items = []
    for index, entry in enumerate(data["data"]):
        if isinstance(entry, dict):
            items.append(json.dumps(entry, separators=(",", ":")).encode("ascii"))
            payload_encoding = ENCODING_IDENTITY
        elif isinstance(entry, str):
            items.append(_b64decode(entry, f"Legacy item {index}"))
        else:
            raise FormatError(f"Legacy item {index} has unsupported type {type(entry).__name__}")
    if version == LEGACY_FORMAT_VERSION:
        payload_encoding = ENCODING_IDENTITY

    return Backup(
        format_version=version,
        created_at=str(data.get("createdAt") or ""),
        source_root=str(data.get("repoRoot") or data.get("sourceRoot") or ""),
        head=data.get("head") or None,
        payload_encoding=payload_encoding,
        source=_legacy_source(data),
        items=tuple(items),
    )


def parse_backup_text(text: str, password: str | None = None) -> Backup:
    """
    Decode any artifact text, detecting its format.

    Args:
        text: Artifact contents.
        password: Password for encrypted artifacts.

    Raises:
        PasswordRequiredError: If the artifact is encrypted and no password
            was given.
        CryptoError: If decryption fails.
        FormatError: If the artifact is malformed or of an unsupported version.
    """
    trimmed = text.strip()
    if not trimmed:
        raise FormatError("Artifact is empty")

    if trimmed.startswith("{"):
        logger.debug("Reading legacy JSON artifact")
        backup = decode_legacy_json(trimmed)
    elif trimmed.startswith(PLAIN_TAG):
        backup = decode_plain_text(trimmed)
    elif is_encrypted_text(trimmed):
        if not password:
            raise PasswordRequiredError("Artifact is encrypted: a password is required")
        backup = decrypt_text(trimmed, password)
    else:
        logger.debug("Artifact has no tag, reading as untagged plain text")
        backup = decode_plain_text(trimmed)

    return ensure_supported_version(backup)
