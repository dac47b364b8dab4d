"""
Command-line interface for Snapstash.

Provides the backup, restore, info and init commands. All configuration and
environment lookups happen here; the backup engine only receives explicit
parameters.

Uses Python's argparse module (no external CLI libraries).
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import NoReturn

from snapstash import __version__
from snapstash.backup import (
    ChangeKind,
    CollectionSource,
    ProgressEvent,
    ProgressPhase,
    RestoreEvent,
    collect_backup,
    get_backup_info,
    load_backup_file,
    restore_backup,
    write_artifact,
)
from snapstash.backup.git import resolve_repo_root
from snapstash.backup.models import SOURCE_MODE_FS, SOURCE_MODE_INDEX, normalize_source_mode
from snapstash.config.settings import (
    CONFIG_DIR_NAME,
    Settings,
    default_settings_template,
    get_config_path,
    get_default_backup_path,
    load_config,
    resolve_password,
    save_config,
)
from snapstash.errors import (
    ConfigurationError,
    CryptoError,
    PasswordRequiredError,
    SnapstashError,
    SourceAccessError,
)

# Set up logging
logger = logging.getLogger(__name__)

# Global verbosity settings (set during main() based on args)
_quiet_mode = False
_verbose_level = 0


def set_output_mode(quiet: bool = False, verbose: int = 0) -> None:
    """
    Set the output mode for the CLI.

    Args:
        quiet: If True, suppress non-essential output.
        verbose: Verbosity level (0=normal, 1+=verbose).
    """
    global _quiet_mode, _verbose_level
    _quiet_mode = quiet
    _verbose_level = verbose


def output(message: str = "", force: bool = False) -> None:
    """
    Print a message to stdout, respecting quiet mode.

    Args:
        message: The message to print.
        force: If True, print even in quiet mode.
    """
    if force or not _quiet_mode:
        print(message)


def output_error(message: str) -> None:
    """Print an error message (always shown, even in quiet mode)."""
    print(message, file=sys.stderr)


def format_size(num_bytes: int) -> str:
    """Format a byte count as kilobytes."""
    return f"{num_bytes / 1024:.2f} KB"


def format_duration(ms: float) -> str:
    """Format milliseconds as "123ms" or "1.23s"."""
    if ms < 1000:
        return f"{ms:.0f}ms"
    return f"{ms / 1000:.2f}s"


def mask_secret(value: str | None) -> str:
    """Mask a secret, keeping only its first and last character."""
    if not value:
        return ""
    if len(value) == 1:
        return f"{value}***{value}"
    return f"{value[0]}***{value[-1]}"


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for Snapstash CLI."""
    parser = argparse.ArgumentParser(
        prog="snapstash",
        description="Snapshot a git index or a directory into a portable, optionally encrypted artifact",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"snapstash {__version__}",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase output verbosity (can be repeated)",
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress non-essential output",
    )

    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        metavar="<command>",
    )

    # backup command
    backup_parser = subparsers.add_parser(
        "backup",
        aliases=["b", "save"],
        help="Create a backup artifact",
        description="Back up staged changes (index mode) or a whole directory (fs mode).",
    )
    backup_parser.add_argument(
        "-o", "--output",
        metavar="PATH",
        help=f"Artifact path (default: <root>/{CONFIG_DIR_NAME}/backup.txt)",
    )
    backup_parser.add_argument(
        "--root", "--dir",
        dest="root",
        metavar="DIR",
        help="Source directory; implies fs mode unless --from is given",
    )
    backup_parser.add_argument(
        "--from",
        dest="source_mode",
        metavar="MODE",
        help="Source mode: index (staged changes) or fs (directory tree)",
    )
    _add_password_arguments(backup_parser)
    backup_parser.add_argument(
        "--no-encrypt", "--plain",
        dest="no_encrypt",
        action="store_true",
        help="Write a plain artifact even if a password is configured",
    )
    backup_parser.add_argument(
        "--config",
        metavar="PATH",
        help="Override config file location",
    )
    backup_parser.add_argument(
        "--no-progress",
        action="store_true",
        help="Do not print per-item progress",
    )
    backup_parser.set_defaults(func=cmd_backup)

    # restore command
    restore_parser = subparsers.add_parser(
        "restore",
        aliases=["r", "apply"],
        help="Restore a backup artifact",
        description="Replay a backup artifact onto a directory.",
    )
    restore_parser.add_argument(
        "-i", "--input",
        metavar="PATH",
        help=f"Artifact path (default: <root>/{CONFIG_DIR_NAME}/backup.txt)",
    )
    restore_parser.add_argument(
        "--root", "--dir",
        dest="root",
        metavar="DIR",
        help="Directory to restore into (default: current directory)",
    )
    _add_password_arguments(restore_parser)
    restore_parser.add_argument(
        "--config",
        metavar="PATH",
        help="Override config file location",
    )
    restore_parser.add_argument(
        "--no-progress",
        action="store_true",
        help="Do not print per-item progress",
    )
    restore_parser.set_defaults(func=cmd_restore)

    # info command
    info_parser = subparsers.add_parser(
        "info",
        aliases=["i"],
        help="Show backup metadata",
        description="Display the metadata of a backup artifact without restoring it.",
    )
    info_parser.add_argument(
        "-i", "--input",
        metavar="PATH",
        help=f"Artifact path (default: <root>/{CONFIG_DIR_NAME}/backup.txt)",
    )
    info_parser.add_argument(
        "--root", "--dir",
        dest="root",
        metavar="DIR",
        help="Project root used to find the default artifact",
    )
    _add_password_arguments(info_parser)
    info_parser.add_argument(
        "--config",
        metavar="PATH",
        help="Override config file location",
    )
    info_parser.set_defaults(func=cmd_info)

    # init command
    init_parser = subparsers.add_parser(
        "init",
        help="Create a default configuration",
        description=f"Write {CONFIG_DIR_NAME}/config.yaml and ignore {CONFIG_DIR_NAME}/ in git.",
    )
    init_parser.add_argument(
        "--root", "--dir",
        dest="root",
        metavar="DIR",
        help="Project root (default: git top level or current directory)",
    )
    init_parser.add_argument(
        "--pw",
        metavar="PASSWORD",
        help="Password to store in the new config file",
    )
    init_parser.set_defaults(func=cmd_init)

    return parser


def _add_password_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--pw",
        metavar="PASSWORD",
        help="Encryption password",
    )
    parser.add_argument(
        "--pw-env",
        metavar="NAME",
        help="Environment variable holding the password",
    )


def setup_logging(verbose: int, quiet: bool) -> None:
    """Configure logging based on verbosity level."""
    if quiet:
        level = logging.WARNING
    elif verbose == 0:
        level = logging.WARNING
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _load_settings(args: argparse.Namespace, root: Path) -> Settings:
    config_path = Path(args.config) if getattr(args, "config", None) else None
    settings = load_config(config_path, root=root)
    # Command line verbosity flags take precedence over the configured level
    if not args.verbose and not args.quiet:
        logging.getLogger("snapstash").setLevel(settings.log_level)
    return settings


def _print_backup_progress(event: ProgressEvent) -> None:
    if event.phase is not ProgressPhase.DONE:
        return
    label = "delete" if event.kind is ChangeKind.DELETE else "backup"
    output(
        f"{label:<7}[{event.index}/{event.total}] {event.path:<64} "
        f"size: {format_size(event.raw_bytes):>10}   stored: {format_size(event.stored_bytes):>10}   "
        f"time: {format_duration(event.duration_ms):>7}"
    )


def _print_restore_progress(event: RestoreEvent) -> None:
    if event.phase != "done":
        return
    output(
        f"{'done':<10}[{event.index}/{event.total}] {event.path:<64} "
        f"size: {format_size(event.raw_bytes):>10}   time: {format_duration(event.duration_ms):>7}"
    )


def cmd_backup(args: argparse.Namespace) -> int:
    """Create a backup artifact."""
    try:
        mode = normalize_source_mode(args.source_mode) or (SOURCE_MODE_FS if args.root else SOURCE_MODE_INDEX)
    except ValueError as e:
        output_error(f"Error: {e}")
        return 1

    start_dir = Path(args.root).resolve() if args.root else Path.cwd()
    root = resolve_repo_root(start_dir) if mode == SOURCE_MODE_INDEX else start_dir
    settings = _load_settings(args, root)

    output_path = Path(args.output).resolve() if args.output else get_default_backup_path(root)
    password, password_source = resolve_password(args.pw, settings, os.environ, args.pw_env)
    if args.no_encrypt:
        password = None

    source = CollectionSource(
        mode=mode,
        root=root,
        excludes=tuple(settings.excludes),
        concurrency=settings.concurrency.to_options(),
        progress=None if args.no_progress else _print_backup_progress,
        output_path=output_path if mode == SOURCE_MODE_FS else None,
    )

    collection = collect_backup(source)
    result = write_artifact(collection.backup, output_path, password)
    stats = collection.stats

    output()
    output(f"File: {result.path}")
    if stats.raw_bytes:
        output(
            f"Raw: {format_size(stats.raw_bytes)}, stored: {format_size(stats.stored_bytes)} "
            f"({stats.ratio * 100:.2f}%)"
        )
    output(
        f"Backup created: {len(collection.backup.items)} entries, "
        f"{format_size(result.size_bytes)}, encrypted: {'yes' if result.encrypted else 'no'} "
        f"(time: {format_duration(stats.duration_ms)})"
    )
    if password and password_source in ("arg", "config"):
        output(f"Encryption key: {mask_secret(password)} (from {password_source})")
    return 0


def cmd_restore(args: argparse.Namespace) -> int:
    """Restore a backup artifact onto a directory."""
    root = Path(args.root).resolve() if args.root else Path.cwd()
    settings = _load_settings(args, root)
    input_path = Path(args.input).resolve() if args.input else get_default_backup_path(root)
    password, _ = resolve_password(args.pw, settings, os.environ, args.pw_env)

    backup = _load_backup(input_path, password, args.pw_env or settings.password_env)
    if backup is None:
        return 1

    result = restore_backup(
        backup,
        root,
        progress=None if args.no_progress else _print_restore_progress,
    )

    output()
    output(
        f"Done: restored {result.restored}, removed {result.removed}, "
        f"skipped {result.skipped}, total {result.total} (path: {result.target_root})"
    )
    output(f"Time: {format_duration(result.duration_ms)}")
    return 0


def cmd_info(args: argparse.Namespace) -> int:
    """Show the metadata of a backup artifact."""
    root = Path(args.root).resolve() if args.root else Path.cwd()
    settings = _load_settings(args, root)
    input_path = Path(args.input).resolve() if args.input else get_default_backup_path(root)
    password, _ = resolve_password(args.pw, settings, os.environ, args.pw_env)

    backup = _load_backup(input_path, password, args.pw_env or settings.password_env)
    if backup is None:
        return 1

    info = get_backup_info(backup)
    source = info.source.mode + (f" ({info.source.root})" if info.source.root else "")
    rows = [
        ("Version", info.format_version),
        ("Created at", info.created_at),
        ("Source root", info.source_root),
        ("Head", info.head or ""),
        ("Payload encoding", info.payload_encoding),
        ("Encrypted", "true" if info.encrypted else "false"),
        ("Source", source),
        ("Excludes", ", ".join(info.source.excludes)),
        ("Items", info.item_count),
    ]
    for label, value in rows:
        output(f"{label:<18}: {value}", force=True)
    return 0


def _load_backup(input_path: Path, password: str | None, password_env: str):
    try:
        return load_backup_file(input_path, password)
    except PasswordRequiredError:
        output_error(
            f"Backup is encrypted: pass --pw or set the {password_env} environment variable"
        )
    except CryptoError as e:
        output_error(f"Error: {e}")
    return None


def cmd_init(args: argparse.Namespace) -> int:
    """Write a default configuration and ignore the config directory in git."""
    if args.root:
        root = Path(args.root).resolve()
        git_root = None
    else:
        try:
            git_root = resolve_repo_root(Path.cwd())
        except SourceAccessError:
            git_root = None
        root = git_root or Path.cwd()

    config_path = get_config_path(root)
    if config_path.parent.exists() and not config_path.parent.is_dir():
        output_error(f"{config_path.parent} exists but is not a directory")
        return 1

    if config_path.exists():
        output(f"Config already exists: {config_path}")
    else:
        save_config(default_settings_template(args.pw), config_path)
        output(f"Config created: {config_path}")

    if git_root is not None or (root / ".git").exists():
        if ensure_gitignore(root):
            output(f"Added {CONFIG_DIR_NAME}/ to .gitignore")
        else:
            output(f"{CONFIG_DIR_NAME}/ already in .gitignore")
    return 0


def ensure_gitignore(root: Path) -> bool:
    """
    Make sure the config directory is ignored by git.

    Returns:
        True if .gitignore was changed.
    """
    gitignore = root / ".gitignore"
    entry = f"{CONFIG_DIR_NAME}/"
    if gitignore.exists():
        content = gitignore.read_text()
        if entry in (line.strip() for line in content.splitlines()):
            return False
        prefix = "\n" if content and not content.endswith("\n") else ""
        with open(gitignore, "a") as f:
            f.write(f"{prefix}{entry}\n")
        return True
    gitignore.write_text(f"{entry}\n")
    return True


def main(argv: list[str] | None = None) -> NoReturn:
    """Main entry point for Snapstash CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    # Set up logging and output mode
    setup_logging(args.verbose, args.quiet)
    set_output_mode(args.quiet, args.verbose)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    try:
        exit_code = args.func(args)
        sys.exit(exit_code)
    except KeyboardInterrupt:
        output("\nOperation cancelled.")
        sys.exit(130)
    except ConfigurationError as e:
        output_error(f"Configuration error: {e}")
        sys.exit(2)
    except SnapstashError as e:
        if args.verbose > 1:
            raise
        output_error(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
