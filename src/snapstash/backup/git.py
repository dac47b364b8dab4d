"""
Git command helpers for index mode collection.

All commands are synchronous and run one at a time against a repository.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from snapstash.errors import FormatError, SourceAccessError

logger = logging.getLogger(__name__)

GIT_EXECUTABLE = "git"


@dataclass(frozen=True)
class NameStatusEntry:
    """One line of ``git diff --name-status -z`` output."""

    status: str
    path: str
    old_path: str | None = None

    @property
    def letter(self) -> str:
        return self.status[:1].upper()


@dataclass(frozen=True)
class IndexEntry:
    """Mode and blob id of a path staged in the index."""

    mode: str
    blob: str


def run_git(cwd: Path | str, args: list[str]) -> bytes:
    """
    Run a git command and return its raw stdout.

    Raises:
        SourceAccessError: If git cannot be started or exits nonzero. The
            message is git's own stderr when it printed one.
    """
    command = [GIT_EXECUTABLE, *args]
    logger.debug("Running %s in %s", " ".join(command), cwd)
    try:
        result = subprocess.run(
            command,
            cwd=str(cwd),
            stdin=subprocess.DEVNULL,
            capture_output=True,
        )
    except OSError as e:
        raise SourceAccessError(f"Cannot run git: {e}", command=command) from e

    if result.returncode != 0:
        stderr = result.stderr.decode("utf-8", "replace").strip()
        raise SourceAccessError(
            stderr or f"{' '.join(command)} failed with exit code {result.returncode}",
            command=command,
            stderr=stderr,
        )
    return result.stdout


def try_git_text(cwd: Path | str, args: list[str]) -> str | None:
    """Run a git command, returning stripped stdout or None on failure."""
    try:
        return run_git(cwd, args).decode("utf-8", "surrogateescape").strip()
    except SourceAccessError:
        return None


def resolve_repo_root(cwd: Path | str) -> Path:
    """Return the top level directory of the repository containing ``cwd``."""
    out = run_git(cwd, ["rev-parse", "--show-toplevel"])
    return Path(out.decode("utf-8", "surrogateescape").strip())


def resolve_head(repo_root: Path | str) -> str | None:
    """Return the HEAD commit id, or None for an unborn branch."""
    return try_git_text(repo_root, ["rev-parse", "--verify", "HEAD"]) or None


def parse_name_status_z(raw: bytes) -> list[NameStatusEntry]:
    """
    Parse NUL separated ``--name-status -z`` output.

    Records are ``STATUS\\0path\\0`` and, for renames and copies,
    ``STATUS\\0old\\0new\\0``.

    Raises:
        FormatError: If a record is missing its paths.
    """
    tokens = [t for t in raw.decode("utf-8", "surrogateescape").split("\0") if t]
    entries: list[NameStatusEntry] = []
    index = 0
    while index < len(tokens):
        status = tokens[index]
        if "\t" in status:
            # Without -z git separates status and path with a tab
            status, _, first = status.partition("\t")
            tokens[index:index + 1] = [status, first]

        letter = status[:1].upper()
        if letter in ("R", "C"):
            if index + 2 >= len(tokens):
                raise FormatError(f"Rename/copy record {status!r} is missing a path")
            entries.append(NameStatusEntry(status, tokens[index + 2], tokens[index + 1]))
            index += 3
        else:
            if index + 1 >= len(tokens):
                raise FormatError(f"Record {status!r} is missing its path")
            entries.append(NameStatusEntry(status, tokens[index + 1]))
            index += 2
    return entries


def staged_changes(repo_root: Path | str) -> list[NameStatusEntry]:
    """List changes staged in the index relative to HEAD, with rename and copy detection."""
    raw = run_git(repo_root, ["diff", "--cached", "--name-status", "-z", "-M", "-C"])
    return parse_name_status_z(raw)


def index_entry(repo_root: Path | str, path: str) -> IndexEntry | None:
    """Look up the staged mode and blob of ``path``."""
    out = try_git_text(repo_root, ["--literal-pathspecs", "ls-files", "-s", "--", path])
    if not out:
        return None
    left = out.splitlines()[0].split("\t", 1)[0]
    parts = left.split()
    if len(parts) < 2:
        return None
    return IndexEntry(mode=parts[0], blob=parts[1])


def show_index_blob(repo_root: Path | str, path: str) -> bytes:
    """Return the staged content of ``path``."""
    return run_git(repo_root, ["show", f":{path}"])
