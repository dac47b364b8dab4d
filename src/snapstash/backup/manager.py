"""
Backup and restore entry points for Snapstash.

This is the surface the CLI talks to. Passwords and paths are always passed in
explicitly; nothing here reads the environment.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from snapstash.backup.collector import CollectionSource, collect_backup
from snapstash.backup.models import Backup, BackupInfo
from snapstash.backup.restore import RestoreResult, RestoreSink
from snapstash.backup.restore import restore_backup as _restore_backup
from snapstash.backup.text import encode_plain_text, encrypt_text, parse_backup_text
from snapstash.errors import FormatError, SourceAccessError

logger = logging.getLogger(__name__)


@dataclass
class ArtifactResult:
    """Result of writing an artifact."""

    path: Path
    size_bytes: int
    encrypted: bool


def build_backup(source: CollectionSource) -> Backup:
    """
    Collect a backup from a git index or a directory.

    See :class:`~snapstash.backup.collector.CollectionSource` for the options.
    """
    return collect_backup(source).backup


def encode_artifact(backup: Backup, password: str | None = None) -> str:
    """Encode a backup as artifact text; encrypted when a password is given."""
    if password:
        return encrypt_text(backup, password)
    return encode_plain_text(backup)


def write_artifact(backup: Backup, output_path: Path | str, password: str | None = None) -> ArtifactResult:
    """
    Write a backup to ``output_path``.

    The file is written next to its destination and moved into place, so a
    failed run never leaves a half written artifact behind.

    Raises:
        SourceAccessError: If the file cannot be written.
    """
    path = Path(output_path)
    text = encode_artifact(backup, password)
    tmp = path.with_name(path.name + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp.write_text(text + "\n", encoding="ascii")
        os.replace(tmp, path)
        size = path.stat().st_size
    except OSError as e:
        raise SourceAccessError(f"Cannot write artifact {path}: {e}") from e

    logger.info("Artifact written: %s (%d bytes, %s)", path, size, "encrypted" if password else "plain")
    return ArtifactResult(path=path, size_bytes=size, encrypted=bool(password))


def read_artifact(input_path: Path | str) -> bytes:
    """
    Read an artifact file.

    Raises:
        SourceAccessError: If the file is missing or unreadable.
    """
    path = Path(input_path)
    try:
        return path.read_bytes()
    except FileNotFoundError as e:
        raise SourceAccessError(f"Backup file not found: {path}") from e
    except OSError as e:
        raise SourceAccessError(f"Cannot read backup file {path}: {e}") from e


def load_backup(artifact: bytes | str, password: str | None = None) -> Backup:
    """
    Decode artifact contents, detecting plain, encrypted and legacy formats.

    Raises:
        PasswordRequiredError: If the artifact is encrypted and no password
            was given.
        CryptoError: If the password is wrong or the artifact was tampered with.
        FormatError: If the artifact is malformed.
    """
    if isinstance(artifact, bytes):
        try:
            artifact = artifact.decode("utf-8")
        except UnicodeDecodeError as e:
            raise FormatError(f"Artifact is not text: {e}") from e
    return parse_backup_text(artifact, password)


def load_backup_file(input_path: Path | str, password: str | None = None) -> Backup:
    """Read and decode an artifact file."""
    return load_backup(read_artifact(input_path), password)


def restore_backup(
    backup: Backup,
    target_root: Path | str,
    progress: RestoreSink | None = None,
) -> RestoreResult:
    """Replay a backup onto ``target_root``. See :mod:`snapstash.backup.restore`."""
    return _restore_backup(backup, target_root, progress)


def get_backup_info(backup: Backup) -> BackupInfo:
    """Summarize a backup without decoding any item."""
    return BackupInfo(
        format_version=backup.format_version,
        created_at=backup.created_at,
        source_root=backup.source_root,
        head=backup.head,
        payload_encoding=backup.payload_encoding,
        source=backup.source,
        item_count=len(backup.items),
        encrypted=backup.encrypted,
    )
