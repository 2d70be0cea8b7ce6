"""Filesystem tree diffing, change application, copying and pattern matching."""

__version__ = "0.1.0"

__all__ = [
    "benchdata",
    "changes",
    "chtimes",
    "copier",
    "diskwriter",
    "mkdir",
    "paths",
    "patterns",
]