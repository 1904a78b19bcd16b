"""Utility modules for Shiplog."""

from shiplog.utils.fs import (
    FileSystemError,
    archive_file,
    ensure_dir,
    file_exists,
    read_file,
    safe_write,
)

__all__ = [
    "FileSystemError",
    "archive_file",
    "ensure_dir",
    "file_exists",
    "read_file",
    "safe_write",
]
