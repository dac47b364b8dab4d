"""
Entry point for running Snapstash as a module.

Usage:
    python -m snapstash [command] [options]

This allows Snapstash to be executed directly as a Python module,
which is useful for development and testing without installing
the package.
"""

from snapstash.cli import main

if __name__ == "__main__":
    main()
