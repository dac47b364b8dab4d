"""
Backup artifact engine for Snapstash.

Captures a git index diff or a directory tree into a single, optionally
encrypted text artifact, and replays it onto a directory later.

Usage:
    from pathlib import Path
    from snapstash.backup import CollectionSource, build_backup, write_artifact

    # Create a backup
    backup = build_backup(CollectionSource(mode="fs", root=Path("project")))
    write_artifact(backup, Path("backup.txt"), password="hunter2")

    # Restore it
    backup = load_backup_file(Path("backup.txt"), password="hunter2")
    result = restore_backup(backup, Path("restored"))
"""

from snapstash.backup.collector import (
    Collection,
    CollectionSource,
    CollectionStats,
    ConcurrencyOptions,
    ProgressEvent,
    ProgressPhase,
    collect_backup,
)
from snapstash.backup.manager import (
    ArtifactResult,
    build_backup,
    encode_artifact,
    get_backup_info,
    load_backup,
    load_backup_file,
    read_artifact,
    restore_backup,
    write_artifact,
)
from snapstash.backup.models import (
    Backup,
    BackupInfo,
    ChangeKind,
    Item,
    RegularFile,
    SourceInfo,
    Submodule,
    Symlink,
)
from snapstash.backup.restore import RestoreEvent, RestoreResult

__all__ = [
    # Model
    "Backup",
    "BackupInfo",
    "ChangeKind",
    "Item",
    "RegularFile",
    "SourceInfo",
    "Submodule",
    "Symlink",
    # Collection
    "Collection",
    "CollectionSource",
    "CollectionStats",
    "ConcurrencyOptions",
    "ProgressEvent",
    "ProgressPhase",
    "collect_backup",
    # Artifacts
    "ArtifactResult",
    "build_backup",
    "encode_artifact",
    "write_artifact",
    "read_artifact",
    "load_backup",
    "load_backup_file",
    "get_backup_info",
    # Restore
    "RestoreEvent",
    "RestoreResult",
    "restore_backup",
]
