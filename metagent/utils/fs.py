"""
File system utilities for metagent.

This module provides:
- Atomic writes through a `<name>.tmp` sibling and rename
- Directory creation and listing
- File reading with encoding handling
- Removal of files and task directories
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path


class FileSystemError(Exception):
    """Raised when a file system operation fails."""
    pass


def ensure_dir(path: str | Path) -> Path:
    """
    Create a directory if it does not exist.

    Creates parent directories as needed (like mkdir -p).

    Args:
        path: Path to the directory to create.

    Returns:
        Path: The path object for the created/existing directory.

    Raises:
        FileSystemError: If directory creation fails.
    """
    path = Path(path)
    try:
        path.mkdir(parents=True, exist_ok=True)
        return path
    except OSError as e:
        raise FileSystemError(f"Failed to create directory {path}: {e}")


def tmp_path_for(path: str | Path) -> Path:
    """Return the staging sibling used while writing `path`."""
    path = Path(path)
    return path.with_name(f"{path.name}.tmp")


def atomic_write(path: str | Path, content: str, encoding: str = "utf-8") -> None:
    """
    Write content to a file atomically.

    The content is written and fsynced to `<name>.tmp` in the same
    directory, then renamed over the target. Readers see either the old
    file or the new one, never a partial write.

    Args:
        path: Path to the file to write.
        content: Content to write to the file.
        encoding: Character encoding to use. Defaults to utf-8.

    Raises:
        FileSystemError: If write operation fails.
    """
    path = Path(path)
    ensure_dir(path.parent)
    temp_path = tmp_path_for(path)

    try:
        with open(temp_path, "w", encoding=encoding) as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except OSError as e:
        try:
            temp_path.unlink()
        except OSError:
            pass
        raise FileSystemError(f"Failed to write file {path}: {e}")


def read_file(path: str | Path, encoding: str = "utf-8") -> str:
    """
    Read a file's contents with encoding handling.

    Args:
        path: Path to the file to read.
        encoding: Character encoding. Defaults to utf-8.

    Returns:
        str: Contents of the file.

    Raises:
        FileSystemError: If file cannot be read.
    """
    path = Path(path)

    if not path.exists():
        raise FileSystemError(f"File not found: {path}")

    if not path.is_file():
        raise FileSystemError(f"Not a file: {path}")

    try:
        return path.read_text(encoding=encoding)
    except UnicodeDecodeError as e:
        raise FileSystemError(f"Failed to decode file {path} with encoding {encoding}: {e}")
    except OSError as e:
        raise FileSystemError(f"Failed to read file {path}: {e}")


def list_dirs(directory: str | Path, pattern: str = "*") -> list[Path]:
    """
    List directories matching a glob pattern in a directory.

    A missing directory yields an empty list: an agent root without any
    tasks or sessions yet is a normal state.

    Args:
        directory: Directory to search in.
        pattern: Glob pattern to match. Defaults to "*" (all).

    Returns:
        list[Path]: Matching directory paths, sorted alphabetically.
    """
    directory = Path(directory)
    if not directory.is_dir():
        return []
    return sorted(p for p in directory.glob(pattern) if p.is_dir())


def remove_file(path: str | Path) -> bool:
    """
    Remove a file if it exists.

    Args:
        path: Path to the file to remove.

    Returns:
        bool: True if file was removed, False if it didn't exist.

    Raises:
        FileSystemError: If removal fails.
    """
    path = Path(path)
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        raise FileSystemError(f"Failed to remove file {path}: {e}")


def remove_dir(path: str | Path) -> bool:
    """
    Remove a directory and everything below it.

    Args:
        path: Path to the directory to remove.

    Returns:
        bool: True if directory was removed, False if it didn't exist.

    Raises:
        FileSystemError: If removal fails.
    """
    path = Path(path)

    if not path.exists():
        return False

    if not path.is_dir():
        raise FileSystemError(f"Not a directory: {path}")

    try:
        shutil.rmtree(path)
        return True
    except OSError as e:
        raise FileSystemError(f"Failed to remove directory {path}: {e}")
