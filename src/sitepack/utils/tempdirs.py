"""Temporary working directories removed when the process exits"""

import atexit
import logging
import os
import shutil
import stat
import tempfile
from pathlib import Path

logger = logging.getLogger("TempDirs")

_registered: list[Path] = []


def make_temp_dir(prefix: str, base: Path | None = None) -> Path:
    """Create a temporary directory that is removed at process exit

    Args:
        prefix: Directory name prefix (e.g. 'archives', 'uncompressed')
        base: Parent directory (defaults to the system temp directory)

    Returns:
        Path of the new, empty directory
    """
    if base is not None:
        base.mkdir(parents=True, exist_ok=True)
    path = Path(tempfile.mkdtemp(prefix=f"sitepack-{prefix}-", dir=str(base) if base else None))
    _registered.append(path)
    logger.debug(f"Created temporary directory {path}")
    return path


def _make_writable(path: Path) -> None:
    """Give the owner write access to every directory so the tree can be deleted"""
    for dirpath, _dirnames, _filenames in os.walk(path):
        mode = os.lstat(dirpath).st_mode
        if not mode & stat.S_IWUSR:
            os.chmod(dirpath, stat.S_IMODE(mode) | stat.S_IRWXU)


def remove_temp_dir(path: Path) -> None:
    """Remove a registered temporary directory now"""
    if path.exists():
        # Staged and extracted trees keep read-only directory modes from their sources
        _make_writable(path)
        shutil.rmtree(path, ignore_errors=True)
    if path in _registered:
        _registered.remove(path)


def registered_temp_dirs() -> list[Path]:
    return list(_registered)


def cleanup_temp_dirs() -> None:
    """Remove every temporary directory created by this process"""
    for path in list(_registered):
        remove_temp_dir(path)


atexit.register(cleanup_temp_dirs)
