"""
Process inspection helpers built on psutil.
"""

from __future__ import annotations

from typing import Iterable

import psutil


def pid_alive(pid: int) -> bool:
    """True if `pid` is a live, non-zombie process."""
    if pid <= 0 or not psutil.pid_exists(pid):
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # Exists but belongs to someone else
        return True


def descendant_pids(roots: Iterable[int]) -> set[int]:
    """
    All current descendants of the given pids.

    Roots that have already exited are skipped; their orphaned children are
    only found if they were passed in as roots themselves.
    """
    found: set[int] = set()
    for pid in roots:
        try:
            children = psutil.Process(pid).children(recursive=True)
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
        found.update(child.pid for child in children)
    return found
