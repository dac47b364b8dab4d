"""
Snapstash - point-in-time snapshots of a git index or a directory tree.

Snapstash captures staged changes or a whole directory into a single portable
text artifact, optionally encrypted, and replays it onto a tree later.

Key Features:
    - Index mode: staged additions, modifications, deletions, renames and
      copies, including symlinks and submodule placeholders
    - Filesystem mode: every file and symlink under a directory
    - Brotli compression with a bounded worker pool for large backups
    - Password based AES-256-GCM encryption with scrypt key derivation
    - Path-safe, strictly ordered restore
"""

__version__ = "0.1.0"

from snapstash.config.settings import Settings, load_config

__all__ = [
    "__version__",
    "Settings",
    "load_config",
]
