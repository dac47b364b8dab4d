"""
Data model for Snapstash backups.

An :class:`Item` is one change to replay. Its kind is a tagged union over the
entry variants below: non-delete items carry exactly one of
:class:`RegularFile`, :class:`Symlink` or :class:`Submodule`, delete items
carry none. A :class:`Backup` is the immutable snapshot holding the ordered,
opaque per-item blobs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from snapstash.backup.compression import ENCODING_BROTLI
from snapstash.errors import FormatError

FORMAT_VERSION = 2
LEGACY_FORMAT_VERSION = 1
SUPPORTED_VERSIONS = (LEGACY_FORMAT_VERSION, FORMAT_VERSION)

SYMLINK_MODE = "120000"
SUBMODULE_MODE = "160000"

SOURCE_MODE_INDEX = "index"
SOURCE_MODE_FS = "fs"

_SOURCE_MODE_ALIASES = {
    "index": SOURCE_MODE_INDEX,
    "stash": SOURCE_MODE_INDEX,
    "staged": SOURCE_MODE_INDEX,
    "fs": SOURCE_MODE_FS,
    "dir": SOURCE_MODE_FS,
    "directory": SOURCE_MODE_FS,
    "filesystem": SOURCE_MODE_FS,
}


def normalize_source_mode(value: str | None) -> str | None:
    """
    Map a user supplied source mode onto "index" or "fs".

    Returns None for an empty value.

    Raises:
        ValueError: If the mode is not recognized.
    """
    if not value:
        return None
    mode = _SOURCE_MODE_ALIASES.get(value.strip().lower())
    if mode is None:
        raise ValueError(f"Unknown source mode: {value}")
    return mode


class ChangeKind(str, Enum):
    """Kind of change recorded for a path."""

    ADD = "A"
    DELETE = "D"
    RENAME = "R"
    COPY = "C"

    @classmethod
    def from_status(cls, status: str) -> ChangeKind:
        """
        Derive the kind from a git name-status letter.

        Only the first letter counts (rename scores such as "R100" are
        dropped). Modifications, type changes and anything else that writes
        content are treated as additions.
        """
        if not status:
            raise FormatError("Empty change status")
        letter = status[0].upper()
        if letter == "D":
            return cls.DELETE
        if letter == "R":
            return cls.RENAME
        if letter == "C":
            return cls.COPY
        return cls.ADD


@dataclass(frozen=True)
class RegularFile:
    """A regular file with its raw content."""

    content: bytes
    mode: str | None = None
    content_encoding: str = ENCODING_BROTLI

    @property
    def permissions(self) -> int | None:
        """POSIX permission bits parsed from ``mode``, or None."""
        if not self.mode:
            return None
        try:
            return int(self.mode, 8) & 0o777
        except ValueError:
            return None


@dataclass(frozen=True)
class Symlink:
    """A symbolic link; ``target`` is the link text, stored verbatim."""

    target: str
    mode: str = SYMLINK_MODE


@dataclass(frozen=True)
class Submodule:
    """A nested repository placeholder. Inert on restore."""

    mode: str = SUBMODULE_MODE


Entry = RegularFile | Symlink | Submodule


@dataclass(frozen=True)
class Item:
    """
    One change record.

    Attributes:
        kind: Add, Delete, Rename or Copy.
        path: Slash separated path relative to the source root.
        entry: What to write at ``path``. None exactly when kind is Delete.
        old_path: Source path of a Rename or Copy.
    """

    kind: ChangeKind
    path: str
    entry: Entry | None = None
    old_path: str | None = None

    def __post_init__(self) -> None:
        if not self.path:
            raise FormatError("Item is missing a path")
        if self.kind is ChangeKind.DELETE:
            if self.entry is not None:
                raise FormatError(f"Delete item carries an entry: {self.path}")
        elif self.entry is None:
            raise FormatError(f"Item has no content, symlink target or submodule flag: {self.path}")
        if self.kind in (ChangeKind.RENAME, ChangeKind.COPY):
            if not self.old_path:
                raise FormatError(f"{self.kind.name.title()} item is missing its old path: {self.path}")
        elif self.old_path is not None:
            raise FormatError(f"Only rename and copy items carry an old path: {self.path}")

    @property
    def is_submodule(self) -> bool:
        return isinstance(self.entry, Submodule)

    @property
    def raw_size(self) -> int:
        """Size in bytes of the payload before compression."""
        if isinstance(self.entry, RegularFile):
            return len(self.entry.content)
        if isinstance(self.entry, Symlink):
            return len(self.entry.target.encode("utf-8"))
        return 0


@dataclass(frozen=True)
class SourceInfo:
    """Provenance of a backup. Displayed, never consumed by restore."""

    mode: str = ""
    root: str = ""
    excludes: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {"mode": self.mode, "root": self.root, "excludes": list(self.excludes)}


@dataclass(frozen=True)
class Backup:
    """
    A complete snapshot.

    ``items`` holds one opaque blob per change, each compressed with
    ``payload_encoding``. Their order is the replay order.

    ``encrypted`` reports how the backup was read from an artifact; it is not
    part of the serialized form and is ignored by equality.
    """

    format_version: int
    created_at: str
    source_root: str
    head: str | None
    payload_encoding: str
    source: SourceInfo
    items: tuple[bytes, ...]
    encrypted: bool = field(default=False, compare=False)


@dataclass(frozen=True)
class BackupInfo:
    """Metadata of a backup, available without decoding any item."""

    format_version: int
    created_at: str
    source_root: str
    head: str | None
    payload_encoding: str
    source: SourceInfo
    item_count: int
    encrypted: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "format_version": self.format_version,
            "created_at": self.created_at,
            "source_root": self.source_root,
            "head": self.head,
            "payload_encoding": self.payload_encoding,
            "source": self.source.to_dict(),
            "item_count": self.item_count,
            "encrypted": self.encrypted,
        }
