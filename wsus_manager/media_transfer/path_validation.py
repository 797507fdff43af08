"""
Pre-flight checks for transfer paths: shell metacharacters, allow-listed
roots, traversal segments and free space.
"""

import logging
import ntpath
import posixpath
from pathlib import Path
from typing import Optional, Sequence

import psutil

from wsus_manager.exceptions import UnsafePathError

logger = logging.getLogger('wsus_manager.path_validation')

UNSAFE_CHARACTERS = frozenset(';&|<>`$(){}')
DEFAULT_ALLOWED_ROOTS = ('C:\\', 'D:\\')

BYTES_PER_GB = 1024 ** 3


def _normalize(path: str) -> str:
    """Case-folded form with forward slashes and one trailing slash."""
    return path.replace('\\', '/').rstrip('/').lower() + '/'


def path_problem(path: str, allowed_roots: Optional[Sequence[str]] = None) -> Optional[str]:
    """Return why `path` is unsafe, or None when it passes every check."""
    if not path or not path.strip():
        return "path is empty"

    bad = sorted(set(path) & UNSAFE_CHARACTERS)
    if bad:
        return f"contains shell metacharacters {''.join(bad)}"

    if not (ntpath.isabs(path) and ntpath.splitdrive(path)[0]) and not posixpath.isabs(path):
        return "path is not absolute"

    if '..' in path.replace('\\', '/').split('/'):
        return "path contains parent directory segments"

    roots = DEFAULT_ALLOWED_ROOTS if allowed_roots is None else allowed_roots
    normalized = _normalize(path)
    if not any(normalized.startswith(_normalize(root)) for root in roots):
        return f"path is outside the allowed roots ({', '.join(roots)})"

    return None


def is_safe_path(path: str, allowed_roots: Optional[Sequence[str]] = None) -> bool:
    return path_problem(path, allowed_roots) is None


def validate_path(path: str, allowed_roots: Optional[Sequence[str]] = None) -> str:
    """Return `path` unchanged or raise UnsafePathError."""
    problem = path_problem(path, allowed_roots)
    if problem:
        raise UnsafePathError(path, problem)
    return path


def available_space_gb(path: str) -> Optional[float]:
    """Free space on the volume holding `path` (or its nearest existing parent)."""
    candidate = Path(path)
    try:
        while not candidate.exists():
            if candidate.parent == candidate:
                return None
            candidate = candidate.parent

        return psutil.disk_usage(str(candidate)).free / BYTES_PER_GB
    except OSError as e:
        logger.warning(f"Could not read disk usage for {candidate}: {e}")
        return None


def format_size(size_bytes: int) -> str:
    if size_bytes >= BYTES_PER_GB:
        return f"{size_bytes / BYTES_PER_GB:.2f} GB"
    if size_bytes >= 1024 * 1024:
        return f"{size_bytes / (1024 * 1024):.2f} MB"
    if size_bytes > 0:
        return f"{size_bytes / 1024:.2f} KB"
    return "Unknown"
