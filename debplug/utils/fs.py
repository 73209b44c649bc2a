"""Filesystem helpers shared by the installer and fetcher."""

import logging
import os
import shutil
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)


def remove_tree(path: Path | None) -> bool:
    """
    Remove a file or directory tree if it exists.

    Errors are logged, never raised: callers use this on cleanup paths where
    the error being handled must not be masked.

    Returns:
        True if the path no longer exists
    """
    if path is None:
        return True
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        elif path.exists() or path.is_symlink():
            path.unlink()
    except OSError as e:
        logger.warning("failed to remove %s: %s", path, e)
        return False
    return True


def is_empty_dir(path: Path) -> bool:
    """True if path is an existing directory with no entries."""
    try:
        return path.is_dir() and not any(path.iterdir())
    except OSError:
        return False


def copy_tree(src: Path, dest: Path) -> None:
    """Replace dest with a copy of the src directory."""
    remove_tree(dest)
    shutil.copytree(src, dest)


def atomic_write_text(path: Path, content: str) -> None:
    """Write a file via a temp file in the same directory and os.replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
