"""
Collection pipeline: turns a source tree into backup items.

Two sources are supported:

    index  changes staged in a git index relative to HEAD
    fs     every file and symlink below a directory

Content is fetched on the calling thread, one path at a time. Encoding items
(content compression plus record packing) runs inline until a concurrency
threshold trips, after which regular files are handed to a bounded thread pool
for the rest of the run. Results are reattached by task id, so the item order
in the backup always equals enumeration order.
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable, Iterator
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from snapstash.backup import git
from snapstash.backup.compression import ENCODING_BROTLI, ITEM_QUALITY
from snapstash.backup.envelope import encode_item
from snapstash.backup.excludes import ExcludeMatcher, build_exclude_matcher, normalize_excludes
from snapstash.backup.models import (
    FORMAT_VERSION,
    SOURCE_MODE_FS,
    SOURCE_MODE_INDEX,
    SUBMODULE_MODE,
    SYMLINK_MODE,
    Backup,
    ChangeKind,
    Item,
    RegularFile,
    SourceInfo,
    Submodule,
    Symlink,
    normalize_source_mode,
)
from snapstash.errors import SourceAccessError

logger = logging.getLogger(__name__)

VCS_DIR_NAMES = frozenset({".git"})

MIN_DEFAULT_THREADS = 2
MAX_DEFAULT_THREADS = 4
MIB = 1024 * 1024


def default_thread_count() -> int:
    """Worker count derived from available CPUs, clamped to [2, 4]."""
    return max(MIN_DEFAULT_THREADS, min(MAX_DEFAULT_THREADS, os.cpu_count() or MIN_DEFAULT_THREADS))


@dataclass(frozen=True)
class ConcurrencyOptions:
    """
    When to move item encoding onto the worker pool.

    The pool is used once any threshold is crossed: the total item count, the
    size of a single file, or the cumulative raw size seen so far. Activation
    is sticky for the remainder of the run.

    Attributes:
        enabled: Set False to always encode inline.
        threads: Pool size. None derives it from the CPU count.
        big_file_bytes: Per-file raw size threshold.
        total_size_bytes: Cumulative raw size threshold.
        file_count_threshold: Item count threshold.
    """

    enabled: bool = True
    threads: int | None = None
    big_file_bytes: int = 1 * MIB
    total_size_bytes: int = 16 * MIB
    file_count_threshold: int = 80

    @property
    def worker_count(self) -> int:
        return self.threads if self.threads else default_thread_count()


class ProgressPhase(str, Enum):
    """Lifecycle point reported to a progress sink."""

    START = "start"
    DONE = "done"


@dataclass(frozen=True)
class ProgressEvent:
    """
    One progress notification.

    ``index`` is 1-based in enumeration order. ``stored_bytes`` is the size of
    the encoded item blob and is only set on DONE events.
    """

    phase: ProgressPhase
    kind: ChangeKind
    path: str
    index: int
    total: int
    raw_bytes: int = 0
    stored_bytes: int = 0
    duration_ms: float = 0.0
    pooled: bool = False


ProgressSink = Callable[[ProgressEvent], None]


@dataclass(frozen=True)
class CollectionSource:
    """
    Describes what to back up.

    Attributes:
        mode: "index" or "fs" (aliases accepted).
        root: Directory to walk, or any directory inside the repository.
        excludes: Exclude patterns, see :mod:`snapstash.backup.excludes`.
        concurrency: Worker pool tuning.
        progress: Optional observer, called on START and DONE of every item.
        output_path: Artifact path, skipped when it lives under an fs root.
    """

    mode: str
    root: Path
    excludes: tuple[str, ...] = ()
    concurrency: ConcurrencyOptions = field(default_factory=ConcurrencyOptions)
    progress: ProgressSink | None = None
    output_path: Path | None = None


@dataclass
class CollectionStats:
    """Totals gathered while collecting."""

    item_count: int = 0
    raw_bytes: int = 0
    stored_bytes: int = 0
    pooled_items: int = 0
    duration_ms: float = 0.0

    @property
    def ratio(self) -> float:
        """Stored size as a fraction of raw size (0 when nothing was read)."""
        return self.stored_bytes / self.raw_bytes if self.raw_bytes else 0.0


@dataclass(frozen=True)
class Collection:
    """A freshly built backup and its statistics."""

    backup: Backup
    stats: CollectionStats


@dataclass(frozen=True)
class EncodedItem:
    """Result of one encoding task."""

    task_id: int
    blob: bytes
    duration_ms: float


def encode_task(task_id: int, item: Item, payload_encoding: str, quality: int) -> EncodedItem:
    """Encode one item. Stateless; safe to run on any worker."""
    started = time.perf_counter()
    blob = encode_item(item, payload_encoding, quality)
    return EncodedItem(task_id=task_id, blob=blob, duration_ms=(time.perf_counter() - started) * 1000)


class CompressionPool:
    """
    Bounded worker pool for item encoding.

    The executor is created on the first submission and always torn down by
    :meth:`shutdown`, whether or not it was ever started. Only the collecting
    thread submits work and reads results; workers share no state.
    """

    def __init__(self, max_workers: int) -> None:
        self.max_workers = max(1, max_workers)
        self._executor: ThreadPoolExecutor | None = None
        self.submitted = 0

    @property
    def started(self) -> bool:
        return self._executor is not None

    def submit(self, task_id: int, item: Item, payload_encoding: str, quality: int) -> Future[EncodedItem]:
        if self._executor is None:
            logger.debug("Starting compression pool with %d workers", self.max_workers)
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers,
                thread_name_prefix="snapstash-compress",
            )
        self.submitted += 1
        return self._executor.submit(encode_task, task_id, item, payload_encoding, quality)

    def shutdown(self, cancel: bool = False) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True, cancel_futures=cancel)
            self._executor = None

    def __enter__(self) -> CompressionPool:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown(cancel=exc_type is not None)


class _Dispatcher:
    """Decides, item by item, whether encoding goes to the pool."""

    def __init__(self, options: ConcurrencyOptions, total: int) -> None:
        self._options = options
        self._total = total
        self._raw_seen = 0
        self.active = False

    def use_pool(self, raw_size: int) -> bool:
        if not self._options.enabled:
            return False
        self._raw_seen += raw_size
        if not self.active:
            reason = None
            if self._total >= self._options.file_count_threshold:
                reason = f"item count {self._total}"
            elif raw_size >= self._options.big_file_bytes:
                reason = f"file size {raw_size}"
            elif self._raw_seen >= self._options.total_size_bytes:
                reason = f"total size {self._raw_seen}"
            if reason:
                logger.debug("Concurrency threshold crossed (%s), using worker pool", reason)
                self.active = True
        return self.active


@dataclass(frozen=True)
class _PendingItem:
    """An enumerated path whose item is built on demand."""

    kind: ChangeKind
    path: str
    load: Callable[[], Item]


# -----------------------------------------------------------------------------
# Sources
# -----------------------------------------------------------------------------


def _load_index_item(repo_root: Path, change: git.NameStatusEntry) -> Item:
    kind = ChangeKind.from_status(change.status)
    if kind is ChangeKind.DELETE:
        return Item(kind=kind, path=change.path)

    old_path = change.old_path if kind in (ChangeKind.RENAME, ChangeKind.COPY) else None
    meta = git.index_entry(repo_root, change.path)
    mode = meta.mode if meta else None

    if mode == SUBMODULE_MODE:
        return Item(kind=kind, path=change.path, old_path=old_path, entry=Submodule())

    content = git.show_index_blob(repo_root, change.path)
    if mode == SYMLINK_MODE:
        target = content.decode("utf-8", "surrogateescape")
        return Item(kind=kind, path=change.path, old_path=old_path, entry=Symlink(target=target))
    return Item(
        kind=kind,
        path=change.path,
        old_path=old_path,
        entry=RegularFile(content=content, mode=mode, content_encoding=ENCODING_BROTLI),
    )


def enumerate_index(repo_root: Path, is_excluded: ExcludeMatcher | None) -> list[_PendingItem]:
    """List staged changes, dropping those whose new or old path is excluded."""
    pending = []
    for change in git.staged_changes(repo_root):
        if is_excluded and (is_excluded(change.path) or (change.old_path and is_excluded(change.old_path))):
            logger.debug("Excluded %s", change.path)
            continue
        pending.append(
            _PendingItem(
                kind=ChangeKind.from_status(change.status),
                path=change.path,
                load=lambda change=change: _load_index_item(repo_root, change),
            )
        )
    return pending


def _load_fs_item(abs_path: Path, rel_path: str, is_symlink: bool) -> Item:
    try:
        if is_symlink:
            return Item(kind=ChangeKind.ADD, path=rel_path, entry=Symlink(target=os.readlink(abs_path)))
        mode = format(abs_path.stat().st_mode, "o")
        content = abs_path.read_bytes()
    except OSError as e:
        raise SourceAccessError(f"Cannot read {abs_path}: {e}") from e
    return Item(
        kind=ChangeKind.ADD,
        path=rel_path,
        entry=RegularFile(content=content, mode=mode, content_encoding=ENCODING_BROTLI),
    )


def _walk(root: Path, rel_dir: str, skip: Path | None, is_excluded: ExcludeMatcher | None) -> Iterator[tuple[Path, str, bool]]:
    abs_dir = root / rel_dir if rel_dir else root
    try:
        with os.scandir(abs_dir) as it:
            entries = sorted(it, key=lambda e: e.name)
    except OSError as e:
        raise SourceAccessError(f"Cannot list {abs_dir}: {e}") from e

    for entry in entries:
        if entry.name in VCS_DIR_NAMES:
            continue
        abs_path = Path(entry.path)
        if skip is not None and abs_path == skip:
            continue
        rel_path = f"{rel_dir}/{entry.name}" if rel_dir else entry.name
        if is_excluded and is_excluded(rel_path):
            logger.debug("Excluded %s", rel_path)
            continue
        if entry.is_symlink():
            yield abs_path, rel_path, True
        elif entry.is_dir():
            yield from _walk(root, rel_path, skip, is_excluded)
        elif entry.is_file():
            yield abs_path, rel_path, False


def enumerate_fs(root: Path, output_path: Path | None, is_excluded: ExcludeMatcher | None) -> list[_PendingItem]:
    """List every file and symlink under ``root``; directories are not recorded."""
    if not root.is_dir():
        raise SourceAccessError(f"Source directory not found: {root}")
    # Only the parent is resolved, so a symlink pointing at the artifact is still backed up
    skip = Path(output_path).parent.resolve() / Path(output_path).name if output_path else None
    return [
        _PendingItem(
            kind=ChangeKind.ADD,
            path=rel_path,
            load=lambda a=abs_path, r=rel_path, s=is_symlink: _load_fs_item(a, r, s),
        )
        for abs_path, rel_path, is_symlink in _walk(root, "", skip, is_excluded)
    ]


# -----------------------------------------------------------------------------
# Pipeline
# -----------------------------------------------------------------------------


def _notify(sink: ProgressSink | None, event: ProgressEvent) -> None:
    if sink is None:
        return
    try:
        sink(event)
    except Exception as e:
        logger.warning("Progress callback failed for %s: %s", event.path, e)


def encode_pending(
    pending: list[_PendingItem],
    concurrency: ConcurrencyOptions,
    progress: ProgressSink | None = None,
    payload_encoding: str = ENCODING_BROTLI,
    quality: int = ITEM_QUALITY,
) -> tuple[list[bytes], CollectionStats]:
    """
    Build and encode every pending item, in order.

    Returns:
        The encoded blobs in enumeration order, and statistics.
    """
    total = len(pending)
    stats = CollectionStats(item_count=total)
    blobs: list[bytes | None] = [None] * total
    in_flight: dict[Future[EncodedItem], Item] = {}
    dispatcher = _Dispatcher(concurrency, total)

    with CompressionPool(concurrency.worker_count) as pool:
        for task_id, entry in enumerate(pending):
            started = time.perf_counter()
            _notify(progress, ProgressEvent(ProgressPhase.START, entry.kind, entry.path, task_id + 1, total))
            item = entry.load()
            stats.raw_bytes += item.raw_size

            # Only file content is worth shipping to a worker
            if dispatcher.use_pool(item.raw_size) and isinstance(item.entry, RegularFile):
                in_flight[pool.submit(task_id, item, payload_encoding, quality)] = item
                continue

            blob = encode_item(item, payload_encoding, quality)
            blobs[task_id] = blob
            stats.stored_bytes += len(blob)
            _notify(
                progress,
                ProgressEvent(
                    ProgressPhase.DONE,
                    item.kind,
                    item.path,
                    task_id + 1,
                    total,
                    raw_bytes=item.raw_size,
                    stored_bytes=len(blob),
                    duration_ms=(time.perf_counter() - started) * 1000,
                ),
            )

        # All results are gathered before the pool is torn down
        for future in as_completed(in_flight):
            result = future.result()
            item = in_flight[future]
            blobs[result.task_id] = result.blob
            stats.stored_bytes += len(result.blob)
            stats.pooled_items += 1
            _notify(
                progress,
                ProgressEvent(
                    ProgressPhase.DONE,
                    item.kind,
                    item.path,
                    result.task_id + 1,
                    total,
                    raw_bytes=item.raw_size,
                    stored_bytes=len(result.blob),
                    duration_ms=result.duration_ms,
                    pooled=True,
                ),
            )

    return [blob for blob in blobs if blob is not None], stats


def _now() -> str:
    return datetime.now(UTC).isoformat()


def collect_backup(source: CollectionSource) -> Collection:
    """
    Build a backup from ``source``.

    Raises:
        SourceAccessError: If git or the filesystem fails.
        ValueError: If the source mode is unknown.
    """
    started = time.perf_counter()
    mode = normalize_source_mode(source.mode) or SOURCE_MODE_INDEX
    excludes = tuple(normalize_excludes(source.excludes))
    is_excluded = build_exclude_matcher(excludes)

    if mode == SOURCE_MODE_FS:
        root = Path(source.root).resolve()
        pending = enumerate_fs(root, source.output_path, is_excluded)
        head = None
    else:
        root = git.resolve_repo_root(source.root)
        pending = enumerate_index(root, is_excluded)
        head = git.resolve_head(root)

    logger.info("Collecting %d items from %s (%s mode)", len(pending), root, mode)
    blobs, stats = encode_pending(pending, source.concurrency, source.progress)
    stats.duration_ms = (time.perf_counter() - started) * 1000

    backup = Backup(
        format_version=FORMAT_VERSION,
        created_at=_now(),
        source_root=str(root),
        head=head,
        payload_encoding=ENCODING_BROTLI,
        source=SourceInfo(mode=mode, root=str(root), excludes=excludes),
        items=tuple(blobs),
    )
    logger.info(
        "Collected %d items: %d raw bytes, %d stored bytes, %d encoded on the pool",
        stats.item_count,
        stats.raw_bytes,
        stats.stored_bytes,
        stats.pooled_items,
    )
    return Collection(backup=backup, stats=stats)
