"""
Binary envelope codec and item record serialization.

Envelope layout (big-endian; str8/str16 are UTF-8 strings prefixed by a u8/u16
byte length, blobs are prefixed by a u32 length):

    version:u8
    created_at:str16  source_root:str16  head:str16
    payload_encoding:str8  source_mode:str8  source_root:str16
    exclude_count:u16  [exclude:str16]*
    item_count:u32  [item_len:u32 item_bytes]*

Each item blob is a compressed JSON record using short keys:

    k  kind letter        p  path             o  old path
    m  mode               t  symlink target   sm submodule flag
    c  base64 content     ce content encoding

The long names written by early releases (kind, path, oldPath, mode,
symlinkTarget, submodule, contentBase64) are accepted on read.
"""

from __future__ import annotations

import base64
import binascii
import json
import struct
from typing import Any

from snapstash.backup.compression import (
    ENCODING_IDENTITY,
    ITEM_QUALITY,
    compress,
    decompress,
)
from snapstash.backup.models import (
    SUBMODULE_MODE,
    SYMLINK_MODE,
    Backup,
    ChangeKind,
    Item,
    RegularFile,
    SourceInfo,
    Submodule,
    Symlink,
)
from snapstash.errors import FormatError

_U8 = struct.Struct(">B")
_U16 = struct.Struct(">H")
_U32 = struct.Struct(">I")


# -----------------------------------------------------------------------------
# Envelope
# -----------------------------------------------------------------------------


def _str_bytes(value: str | None, limit: int, name: str) -> bytes:
    data = (value or "").encode("utf-8", "surrogateescape")
    if len(data) > limit:
        raise FormatError(f"{name} is too long to encode ({len(data)} bytes, max {limit})")
    return data


def _pack_str8(value: str | None, name: str) -> bytes:
    data = _str_bytes(value, 0xFF, name)
    return _U8.pack(len(data)) + data


def _pack_str16(value: str | None, name: str) -> bytes:
    data = _str_bytes(value, 0xFFFF, name)
    return _U16.pack(len(data)) + data


def pack_backup(backup: Backup) -> bytes:
    """
    Serialize a backup into the binary envelope.

    Absent optional strings (``head``) encode as zero length.
    """
    excludes = backup.source.excludes
    if len(excludes) > 0xFFFF:
        raise FormatError(f"Too many exclude patterns: {len(excludes)}")

    parts = [
        _U8.pack(backup.format_version),
        _pack_str16(backup.created_at, "created_at"),
        _pack_str16(backup.source_root, "source_root"),
        _pack_str16(backup.head, "head"),
        _pack_str8(backup.payload_encoding, "payload_encoding"),
        _pack_str8(backup.source.mode, "source mode"),
        _pack_str16(backup.source.root, "source root"),
        _U16.pack(len(excludes)),
    ]
    parts.extend(_pack_str16(pattern, "exclude pattern") for pattern in excludes)
    parts.append(_U32.pack(len(backup.items)))
    for blob in backup.items:
        parts.append(_U32.pack(len(blob)))
        parts.append(bytes(blob))
    return b"".join(parts)


class _Reader:
    """Bounds-checked cursor over an envelope buffer."""

    def __init__(self, data: bytes) -> None:
        self._data = memoryview(data)
        self._offset = 0

    def take(self, size: int, what: str) -> bytes:
        end = self._offset + size
        if end > len(self._data):
            raise FormatError(
                f"Truncated envelope: {what} needs {size} bytes at offset "
                f"{self._offset}, only {len(self._data) - self._offset} left"
            )
        chunk = self._data[self._offset:end].tobytes()
        self._offset = end
        return chunk

    def u8(self, what: str) -> int:
        return _U8.unpack(self.take(1, what))[0]

    def u16(self, what: str) -> int:
        return _U16.unpack(self.take(2, what))[0]

    def u32(self, what: str) -> int:
        return _U32.unpack(self.take(4, what))[0]

    def str8(self, what: str) -> str:
        return self.take(self.u8(what), what).decode("utf-8", "surrogateescape")

    def str16(self, what: str) -> str:
        return self.take(self.u16(what), what).decode("utf-8", "surrogateescape")

    @property
    def remaining(self) -> int:
        return len(self._data) - self._offset


def unpack_backup(data: bytes) -> Backup:
    """
    Parse a binary envelope.

    Raises:
        FormatError: If the buffer is truncated or has trailing garbage.
    """
    reader = _Reader(data)
    version = reader.u8("version")
    created_at = reader.str16("created_at")
    source_root = reader.str16("source_root")
    head = reader.str16("head")
    payload_encoding = reader.str8("payload_encoding")
    source_mode = reader.str8("source mode")
    source_dir = reader.str16("source root")
    excludes = tuple(reader.str16("exclude pattern") for _ in range(reader.u16("exclude count")))

    item_count = reader.u32("item count")
    items = []
    for index in range(item_count):
        length = reader.u32(f"item {index} length")
        items.append(reader.take(length, f"item {index}"))

    if reader.remaining:
        raise FormatError(f"Unexpected {reader.remaining} trailing bytes after envelope")

    return Backup(
        format_version=version,
        created_at=created_at,
        source_root=source_root,
        head=head or None,
        payload_encoding=payload_encoding,
        source=SourceInfo(mode=source_mode, root=source_dir, excludes=excludes),
        items=tuple(items),
    )


# -----------------------------------------------------------------------------
# Item records
# -----------------------------------------------------------------------------


def item_to_record(item: Item, quality: int = ITEM_QUALITY) -> dict[str, Any]:
    """Build the JSON record for an item, compressing file content."""
    record: dict[str, Any] = {"k": item.kind.value, "p": item.path}
    if item.old_path:
        record["o"] = item.old_path

    entry = item.entry
    if isinstance(entry, Submodule):
        record["m"] = entry.mode
        record["sm"] = 1
    elif isinstance(entry, Symlink):
        record["m"] = entry.mode
        record["t"] = entry.target
    elif isinstance(entry, RegularFile):
        if entry.mode:
            record["m"] = entry.mode
        stored = compress(entry.content, entry.content_encoding, quality)
        if entry.content_encoding:
            record["ce"] = entry.content_encoding
        record["c"] = base64.b64encode(stored).decode("ascii")
    return record


def encode_item(item: Item, payload_encoding: str, quality: int = ITEM_QUALITY) -> bytes:
    """Serialize one item into an opaque blob compressed with ``payload_encoding``."""
    record = item_to_record(item, quality)
    payload = json.dumps(record, separators=(",", ":")).encode("ascii")
    return compress(payload, payload_encoding, quality)


def _field(record: dict[str, Any], short: str, long: str) -> Any:
    value = record.get(short)
    if value is None:
        value = record.get(long)
    return value


def _b64decode(value: str, path: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise FormatError(f"Invalid base64 content for {path}: {e}") from e


def record_to_item(record: Any) -> Item:
    """
    Build an item from a parsed record.

    Raises:
        FormatError: If a field required by the item's kind is missing.
    """
    if not isinstance(record, dict):
        raise FormatError(f"Item record must be an object, got {type(record).__name__}")

    status = _field(record, "k", "kind")
    path = _field(record, "p", "path")
    if not isinstance(status, str) or not status:
        raise FormatError(f"Item record is missing its kind: {path!r}")
    if not isinstance(path, str) or not path:
        raise FormatError("Item record is missing its path")

    kind = ChangeKind.from_status(status)
    if kind is ChangeKind.DELETE:
        return Item(kind=kind, path=path)

    old_path = _field(record, "o", "oldPath") if kind in (ChangeKind.RENAME, ChangeKind.COPY) else None
    mode = _field(record, "m", "mode")
    mode = str(mode) if mode is not None else None

    if _field(record, "sm", "submodule"):
        return Item(kind=kind, path=path, old_path=old_path, entry=Submodule(mode or SUBMODULE_MODE))

    if mode == SYMLINK_MODE:
        target = _field(record, "t", "symlinkTarget")
        if not isinstance(target, str):
            raise FormatError(f"Symlink is missing its target: {path}")
        return Item(kind=kind, path=path, old_path=old_path, entry=Symlink(target=target))

    if isinstance(record.get("c"), str):
        encoding = record.get("ce") or ENCODING_IDENTITY
        content = decompress(_b64decode(record["c"], path), encoding)
    elif isinstance(record.get("contentBase64"), str):
        encoding = ENCODING_IDENTITY
        content = _b64decode(record["contentBase64"], path)
    else:
        raise FormatError(f"Missing content: {path}")

    return Item(
        kind=kind,
        path=path,
        old_path=old_path,
        entry=RegularFile(content=content, mode=mode, content_encoding=encoding),
    )


def decode_item(blob: bytes, payload_encoding: str) -> Item:
    """Invert :func:`encode_item`."""
    payload = decompress(blob, payload_encoding)
    try:
        record = json.loads(payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise FormatError(f"Item record is not valid JSON: {e}") from e
    return record_to_item(record)
