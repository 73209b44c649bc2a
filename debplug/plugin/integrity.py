"""
Package integrity checks against published checksum side-files.
"""

import hashlib
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

SUPPORTED_ALGORITHMS = ("md5", "sha256")
_CHUNK_SIZE = 64 * 1024


def file_digest(path: Path, algorithm: str = "md5") -> str:
    """Hex digest of a file, read in chunks."""
    if algorithm not in SUPPORTED_ALGORITHMS:
        raise ValueError(f"Unsupported checksum algorithm: {algorithm}")

    digest = hashlib.new(algorithm)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def expected_digest(checksum_path: Path) -> str | None:
    """
    First whitespace-delimited token of a checksum file, lowercased.

    Handles both `<hash>` and `<hash>  <filename>` layouts.
    """
    try:
        content = checksum_path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None
    tokens = content.split()
    return tokens[0].lower() if tokens else None


def verify(package_path: Path, checksum_path: Path | None, algorithm: str = "md5") -> bool:
    """
    Check a package against its checksum file.

    Args:
        package_path: Downloaded package
        checksum_path: Downloaded checksum file, or None when the release has none
        algorithm: Digest algorithm

    Returns:
        True if the digests match or there is nothing to check, False otherwise
    """
    if checksum_path is None:
        logger.info("no checksum for %s, verification skipped", package_path.name)
        return True

    expected = expected_digest(checksum_path)
    if expected is None:
        logger.warning("checksum file %s is empty or unreadable", checksum_path)
        return False

    try:
        actual = file_digest(package_path, algorithm)
    except OSError as e:
        logger.warning("could not hash %s: %s", package_path, e)
        return False

    if actual.lower() != expected:
        logger.warning(
            "checksum mismatch for %s: expected %s, got %s",
            package_path.name,
            expected,
            actual,
        )
        return False
    return True
