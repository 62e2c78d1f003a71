"""Utility helpers for metagent."""

from metagent.utils.fs import (
    FileSystemError,
    atomic_write,
    ensure_dir,
    list_dirs,
    read_file,
    remove_dir,
    remove_file,
)
from metagent.utils.process import descendant_pids, pid_alive

__all__ = [
    "descendant_pids",
    "pid_alive",
    "FileSystemError",
    "atomic_write",
    "ensure_dir",
    "list_dirs",
    "read_file",
    "remove_dir",
    "remove_file",
]
