"""
Exception taxonomy for Snapstash.

Every failure raised by the backup engine derives from SnapstashError so the
CLI can report any of them as a single line. None of these are retried.
"""

from __future__ import annotations


class SnapstashError(Exception):
    """Base exception for all Snapstash errors."""

    pass


class FormatError(SnapstashError):
    """
    Raised when an artifact or item record is malformed.

    Covers bad magic, truncated buffers, unsupported versions and item
    records missing a field required by their kind.
    """

    pass


class CryptoError(SnapstashError):
    """Raised when an encrypted artifact fails authentication."""

    pass


class PasswordRequiredError(CryptoError):
    """Raised when an encrypted artifact is read without a password."""

    pass


class PathSafetyError(SnapstashError):
    """Raised when an item path is absolute or escapes the restore root."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Unsafe path {path!r}: {reason}")


class SourceAccessError(SnapstashError):
    """
    Raised when a git command or filesystem call fails.

    The failing tool's own error text is kept in ``stderr`` when available.
    """

    def __init__(
        self,
        message: str,
        command: list[str] | None = None,
        stderr: str | None = None,
    ) -> None:
        self.command = command
        self.stderr = stderr
        super().__init__(message)


class ConfigurationError(SnapstashError):
    """Raised when configuration is invalid or cannot be loaded."""

    pass
