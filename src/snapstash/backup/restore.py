"""
Restore pipeline: replays backup items onto a directory.

Items are decoded and applied one at a time in backup order. The run is not
transactional; an error stops it with earlier items already applied.
"""

from __future__ import annotations

import logging
import os
import posixpath
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path, PurePosixPath, PureWindowsPath

from snapstash.backup.envelope import decode_item
from snapstash.backup.models import Backup, ChangeKind, Item, RegularFile, Submodule, Symlink
from snapstash.backup.text import ensure_supported_version
from snapstash.errors import PathSafetyError, SourceAccessError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RestoreEvent:
    """Progress notification for one restored item (1-based ``index``)."""

    phase: str
    kind: ChangeKind
    path: str
    index: int
    total: int
    raw_bytes: int = 0
    duration_ms: float = 0.0


RestoreSink = Callable[[RestoreEvent], None]


@dataclass
class RestoreResult:
    """Outcome of a restore run."""

    restored: int = 0
    removed: int = 0
    skipped: int = 0
    total: int = 0
    target_root: Path | None = None
    duration_ms: float = 0.0


def safe_relative_path(path: str) -> str:
    """
    Validate an item path and return its normalized form.

    Raises:
        PathSafetyError: If the path is empty, absolute, or escapes the root
            through "..".
    """
    if not path:
        raise PathSafetyError(path, "empty path")
    if "\x00" in path:
        raise PathSafetyError(path, "path contains a NUL byte")
    candidate = path.replace("\\", "/")
    if PurePosixPath(candidate).is_absolute() or PureWindowsPath(path).is_absolute():
        raise PathSafetyError(path, "absolute paths are not allowed")
    normalized = posixpath.normpath(candidate)
    if normalized == ".." or normalized.startswith("../"):
        raise PathSafetyError(path, "path escapes the restore root")
    if normalized == ".":
        raise PathSafetyError(path, "path resolves to the restore root")
    return normalized


def contained_path(root: Path, rel_path: str) -> Path:
    """
    Join ``rel_path`` onto ``root``, refusing parents that resolve outside it.

    The final component is not resolved, so a symlink at the target itself is
    replaced rather than followed. Symlinked parent directories written by
    earlier items are followed and must stay under ``root``.

    Raises:
        PathSafetyError: If a parent directory resolves outside ``root``.
    """
    abs_path = root / rel_path
    parent = abs_path.parent.resolve()
    if not parent.is_relative_to(root):
        raise PathSafetyError(rel_path, f"parent resolves outside the restore root: {parent}")
    return parent / abs_path.name


def _remove(abs_path: Path) -> bool:
    """Remove a file or symlink. Returns False if nothing was there."""
    try:
        abs_path.unlink()
    except (FileNotFoundError, NotADirectoryError):
        return False
    except OSError as e:
        raise SourceAccessError(f"Cannot remove {abs_path}: {e}") from e
    return True


def _ensure_parent(abs_path: Path) -> None:
    try:
        abs_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise SourceAccessError(f"Cannot create directory {abs_path.parent}: {e}") from e


def _write_symlink(abs_path: Path, target: str) -> None:
    _remove(abs_path)
    _ensure_parent(abs_path)
    try:
        os.symlink(target, abs_path)
    except OSError as e:
        raise SourceAccessError(f"Cannot create symlink {abs_path}: {e}") from e


def _write_file(abs_path: Path, entry: RegularFile) -> None:
    _ensure_parent(abs_path)
    if abs_path.is_symlink():
        abs_path.unlink()
    try:
        abs_path.write_bytes(entry.content)
    except OSError as e:
        raise SourceAccessError(f"Cannot write {abs_path}: {e}") from e

    permissions = entry.permissions
    if permissions is None:
        return
    try:
        os.chmod(abs_path, permissions)
    except (OSError, NotImplementedError) as e:
        logger.debug("Could not restore mode %s on %s: %s", entry.mode, abs_path, e)


def _notify(sink: RestoreSink | None, event: RestoreEvent) -> None:
    if sink is None:
        return
    try:
        sink(event)
    except Exception as e:
        logger.warning("Progress callback failed for %s: %s", event.path, e)


def iter_items(backup: Backup):
    """Decode the backup's items lazily, in replay order."""
    for blob in backup.items:
        yield decode_item(blob, backup.payload_encoding)


def restore_backup(
    backup: Backup,
    target_root: Path | str,
    progress: RestoreSink | None = None,
) -> RestoreResult:
    """
    Replay ``backup`` onto ``target_root``.

    Args:
        backup: Decoded backup.
        target_root: Directory to restore into; created if missing.
        progress: Optional observer called before and after each item.

    Returns:
        Counts of restored, removed and skipped entries.

    Raises:
        FormatError: For unsupported versions or malformed items.
        PathSafetyError: For absolute or escaping item paths, including paths
            written through a symlinked directory that leaves the root.
        SourceAccessError: If a filesystem call fails.
    """
    ensure_supported_version(backup)
    started = time.perf_counter()
    root = Path(target_root).resolve()
    total = len(backup.items)
    result = RestoreResult(total=total, target_root=root)

    for index, item in enumerate(iter_items(backup), start=1):
        item_started = time.perf_counter()
        rel_path = safe_relative_path(item.path)
        old_rel_path = safe_relative_path(item.old_path) if item.old_path else None
        abs_path = contained_path(root, rel_path)
        old_abs_path = contained_path(root, old_rel_path) if old_rel_path else None
        _notify(progress, RestoreEvent("processing", item.kind, rel_path, index, total, item.raw_size))

        _apply(item, abs_path, rel_path, old_abs_path, result)

        _notify(
            progress,
            RestoreEvent(
                "done",
                item.kind,
                rel_path,
                index,
                total,
                raw_bytes=item.raw_size,
                duration_ms=(time.perf_counter() - item_started) * 1000,
            ),
        )

    result.duration_ms = (time.perf_counter() - started) * 1000
    logger.info(
        "Restore completed: %d restored, %d removed, %d skipped of %d (%s)",
        result.restored,
        result.removed,
        result.skipped,
        total,
        root,
    )
    return result


def _apply(
    item: Item,
    abs_path: Path,
    rel_path: str,
    old_abs_path: Path | None,
    result: RestoreResult,
) -> None:
    if item.kind is ChangeKind.DELETE:
        if not _remove(abs_path):
            logger.debug("Already absent: %s", rel_path)
        result.removed += 1
        return

    if item.kind is ChangeKind.RENAME and old_abs_path is not None:
        # Best effort: anything left at the old path does not block the new one
        try:
            _remove(old_abs_path)
        except SourceAccessError as e:
            logger.debug("Could not remove renamed path %s: %s", item.old_path, e)
        else:
            result.removed += 1

    entry = item.entry
    if isinstance(entry, Submodule):
        logger.warning("Skipping submodule: %s", rel_path)
        result.skipped += 1
    elif isinstance(entry, Symlink):
        _write_symlink(abs_path, entry.target)
        result.restored += 1
    elif isinstance(entry, RegularFile):
        _write_file(abs_path, entry)
        result.restored += 1
