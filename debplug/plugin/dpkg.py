"""
Debian Package Manager Driver.

This module drives dpkg for one plugin package at a time.

Key features:
- Package name lookup from a local .deb (dpkg-deb -f)
- Forced install that tolerates downgrades and same-version reinstalls
- Purge by package name
- One process-wide lock around every dpkg invocation
"""

import logging
import re
import threading
from pathlib import Path

from debplug.plugin.errors import InvalidRequest, PackageManagerFailure
from debplug.plugin.process import CommandRunner, ProcessError

logger = logging.getLogger(__name__)

# dpkg holds a system-wide lock; concurrent calls would fail rather than queue
_DPKG_LOCK = threading.Lock()

_PACKAGE_NAME = re.compile(r"^[a-z0-9][a-z0-9.+-]+$")


def validate_package_name(name: str) -> str:
    """
    Check a Debian package name before it reaches dpkg.

    Raises:
        InvalidRequest: If the name does not follow Debian policy
    """
    if not isinstance(name, str) or not _PACKAGE_NAME.match(name):
        raise InvalidRequest(f"Invalid package name: {name!r}")
    return name


class PackageManager:
    """
    dpkg wrapper.

    Example:
        pm = PackageManager(CommandRunner())
        name = pm.package_name(deb)
        pm.install(deb)
        pm.purge(name)
    """

    def __init__(self, runner: CommandRunner, timeout: float = 120.0):
        """
        Initialize PackageManager.

        Args:
            runner: Process runner
            timeout: Per-invocation timeout in seconds
        """
        self.runner = runner
        self.timeout = timeout

    def _run(self, argv: list[str]) -> str:
        with _DPKG_LOCK:
            try:
                result = self.runner.run(argv, timeout=self.timeout)
            except ProcessError as e:
                raise PackageManagerFailure(str(e)) from e

        if result.timed_out:
            raise PackageManagerFailure(
                f"{' '.join(argv[:2])} timed out after {self.timeout:g} seconds"
            )
        if result.returncode != 0:
            raise PackageManagerFailure(result.error_text())
        return result.stdout

    def package_name(self, deb_path: Path) -> str | None:
        """
        Package name embedded in a .deb file.

        Falls back to the file name up to the first underscore when dpkg-deb
        cannot read the archive.

        Returns:
            Package name, or None if neither source yields a valid name
        """
        try:
            name = self._run(["dpkg-deb", "-f", str(deb_path), "Package"]).strip()
        except PackageManagerFailure as e:
            logger.debug("dpkg-deb could not read %s: %s", deb_path.name, e)
            name = deb_path.name.split("_", 1)[0]

        try:
            return validate_package_name(name)
        except InvalidRequest:
            return None

    def install(self, deb_path: Path) -> None:
        """
        Install a local .deb, allowing downgrades and reinstalls.

        Raises:
            PackageManagerFailure: If dpkg fails or times out
        """
        logger.info("dpkg install %s", deb_path.name)
        self._run(["dpkg", "-i", "--force-downgrade", str(deb_path)])

    def purge(self, package: str) -> None:
        """
        Purge an installed package, including its configuration files.

        Raises:
            InvalidRequest: If the name is not a valid package name
            PackageManagerFailure: If dpkg fails or times out
        """
        validate_package_name(package)
        logger.info("dpkg purge %s", package)
        self._run(["dpkg", "--purge", package])
