"""
Byte-stream compression used for item content, item records and envelopes.

Encodings are identified by short string tags stored next to the data so a
reader never has to guess:

    "br"  Brotli (written by the current encoder)
    "gz"  gzip (legacy, read only)
    ""    identity
"""

from __future__ import annotations

import gzip
import zlib

import brotli

from snapstash.errors import FormatError

ENCODING_BROTLI = "br"
ENCODING_GZIP = "gz"
ENCODING_IDENTITY = ""

# Outer envelope favors ratio, per-item work favors speed
ENVELOPE_QUALITY = 11
ITEM_QUALITY = 5

SUPPORTED_ENCODINGS = (ENCODING_BROTLI, ENCODING_GZIP, ENCODING_IDENTITY)


def compress(data: bytes, encoding: str = ENCODING_BROTLI, quality: int = ITEM_QUALITY) -> bytes:
    """
    Compress ``data`` with the compressor named by ``encoding``.

    Args:
        data: Raw bytes.
        encoding: One of the supported encoding tags.
        quality: Brotli quality (0-11). Ignored for other encodings.

    Returns:
        Encoded bytes.

    Raises:
        FormatError: If the encoding tag is unknown.
    """
    if encoding == ENCODING_BROTLI:
        return brotli.compress(data, quality=quality)
    if encoding == ENCODING_GZIP:
        return gzip.compress(data)
    if encoding == ENCODING_IDENTITY:
        return bytes(data)
    raise FormatError(f"Unsupported encoding: {encoding!r}")


def decompress(data: bytes, encoding: str) -> bytes:
    """
    Invert :func:`compress`.

    Raises:
        FormatError: If the encoding is unknown or the data is corrupt.
    """
    try:
        if encoding == ENCODING_BROTLI:
            return brotli.decompress(data)
        if encoding == ENCODING_GZIP:
            return gzip.decompress(data)
    except (brotli.error, OSError, EOFError, zlib.error) as e:
        raise FormatError(f"Corrupt {encoding} payload: {e}") from e
    if encoding == ENCODING_IDENTITY:
        return bytes(data)
    raise FormatError(f"Unsupported encoding: {encoding!r}")
