"""
Artifact Fetching.

This module downloads everything one install needs into a staging area.

Key features:
- Architecture-aware package selection (exact arch, then "all")
- Streaming downloads with a size ceiling
- Best-effort checksum side-file download
- Source tarball extraction with a timeout
- Staging directories removed on every exit path
"""

import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from debplug.plugin.errors import (
    AmbiguousArtifact,
    NoCompatibleArtifact,
    PayloadTooLarge,
    UpstreamError,
)
from debplug.plugin.github import BINARY_ACCEPT, GitHubClient
from debplug.plugin.process import CommandRunner, ProcessError
from debplug.plugin.releases import Asset, Release
from debplug.utils.fs import remove_tree

logger = logging.getLogger(__name__)

MAX_SOURCE_SIZE = 10 * 1024 * 1024
SOURCE_ARCHIVE = "source.tar.gz"


def select_package_asset(assets: list[Asset], arch: str) -> Asset:
    """
    Pick the one package for this architecture.

    Exact architecture matches win; otherwise an architecture-independent
    ("all") package is used.

    Args:
        assets: Release assets
        arch: Debian architecture of the host

    Returns:
        The selected asset

    Raises:
        NoCompatibleArtifact: If nothing matches
        AmbiguousArtifact: If more than one package matches
    """
    packages = [a for a in assets if a.is_package]

    candidates = [a for a in packages if a.arch == arch]
    if not candidates:
        candidates = [a for a in packages if a.arch == "all"]

    if not candidates:
        raise NoCompatibleArtifact(f"No .deb file found for architecture: {arch}")
    if len(candidates) > 1:
        names = ", ".join(a.name for a in candidates)
        raise AmbiguousArtifact(
            f"Multiple .deb files found for architecture {arch} - "
            f"only one per architecture supported ({names})"
        )
    return candidates[0]


def find_checksum_asset(assets: list[Asset], package: Asset, algorithm: str = "md5") -> Asset | None:
    """The `<package>.<algorithm>` side-file, if the release has one."""
    wanted = f"{package.name}.{algorithm}"
    for asset in assets:
        if asset.name == wanted:
            return asset
    return None


@dataclass
class FetchedArtifact:
    """
    Everything downloaded for one operation.

    Attributes:
        package_path: Downloaded .deb
        checksum_path: Downloaded checksum file, or None
        source_path: Root of the extracted source tree
        package_asset: Asset the package came from
        checksum_asset: Asset the checksum came from, or None
    """

    package_path: Path
    checksum_path: Path | None
    source_path: Path
    package_asset: Asset
    checksum_asset: Asset | None = None


class StagingArea:
    """
    Per-operation download and extraction directories.

    Example:
        with StagingArea(cache_root / name / tag, Path("/tmp")) as staging:
            artifact = fetcher.fetch(staging, owner, repo, release, arch)
        # both directories are gone here, whatever happened inside
    """

    def __init__(self, cache_dir: Path, temp_root: Path, prefix: str = "plugin-install-"):
        """
        Initialize StagingArea.

        Args:
            cache_dir: Directory for the package and checksum
            temp_root: Parent of the extraction directory
            prefix: Name prefix of the extraction directory
        """
        self.cache_dir = cache_dir
        self.temp_root = temp_root
        self.prefix = prefix
        self.temp_dir: Path | None = None

    def __enter__(self) -> "StagingArea":
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            self.temp_root.mkdir(parents=True, exist_ok=True)
            self.temp_dir = Path(tempfile.mkdtemp(prefix=self.prefix, dir=self.temp_root))
        except OSError:
            self.cleanup()
            raise
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.cleanup()

    def cleanup(self) -> None:
        """Remove both directories; failures are logged only."""
        remove_tree(self.temp_dir)
        remove_tree(self.cache_dir)


class ArtifactFetcher:
    """Downloads a release's package, checksum and source into a StagingArea."""

    def __init__(
        self,
        client: GitHubClient,
        runner: CommandRunner,
        max_source_size: int = MAX_SOURCE_SIZE,
        extract_timeout: float = 60.0,
        algorithm: str = "md5",
    ):
        self.client = client
        self.runner = runner
        self.max_source_size = max_source_size
        self.extract_timeout = extract_timeout
        self.algorithm = algorithm

    def fetch(
        self,
        staging: StagingArea,
        owner: str,
        repo: str,
        release: Release,
        arch: str,
    ) -> FetchedArtifact:
        """
        Download and unpack everything for one release.

        Args:
            staging: Entered StagingArea
            owner: Repository owner
            repo: Repository name
            release: Release to fetch
            arch: Host architecture

        Returns:
            FetchedArtifact

        Raises:
            NoCompatibleArtifact, AmbiguousArtifact: From asset selection
            PayloadTooLarge: If the source tarball exceeds the ceiling
            UpstreamError: On download or extraction failure
        """
        package_asset = select_package_asset(release.assets, arch)
        checksum_asset = find_checksum_asset(release.assets, package_asset, self.algorithm)

        package_path = staging.cache_dir / package_asset.name
        self.download(package_asset.api_url or package_asset.download_url, package_path)
        logger.info("downloaded %s", package_asset.name)

        checksum_path = None
        if checksum_asset is not None:
            checksum_path = self._download_checksum(checksum_asset, staging.cache_dir)

        source_path = self.fetch_source(staging, owner, repo, release.tag)

        return FetchedArtifact(
            package_path=package_path,
            checksum_path=checksum_path,
            source_path=source_path,
            package_asset=package_asset,
            checksum_asset=checksum_asset if checksum_path else None,
        )

    def _download_checksum(self, asset: Asset, cache_dir: Path) -> Path | None:
        path = cache_dir / asset.name
        try:
            self.download(asset.api_url or asset.download_url, path)
        except UpstreamError as e:
            logger.warning("checksum %s not downloaded: %s", asset.name, e)
            return None
        return path

    def fetch_source(self, staging: StagingArea, owner: str, repo: str, tag: str) -> Path:
        """
        Download and extract the source tarball.

        Returns:
            Path of the single top-level directory of the archive
        """
        if staging.temp_dir is None:
            raise RuntimeError("StagingArea must be entered before fetching")

        tarball = staging.temp_dir / SOURCE_ARCHIVE
        self.download(
            self.client.tarball_url(owner, repo, tag),
            tarball,
            limit=self.max_source_size,
            accept="application/vnd.github.v3+json",
        )

        try:
            result = self.runner.run(
                ["tar", "-xzf", str(tarball), "-C", str(staging.temp_dir)],
                timeout=self.extract_timeout,
            )
        except ProcessError as e:
            raise UpstreamError(f"Failed to extract source: {e}") from e
        if not result.ok:
            raise UpstreamError(f"Failed to extract source: {result.error_text()}")

        dirs = [p for p in staging.temp_dir.iterdir() if p.is_dir()]
        if len(dirs) != 1:
            raise UpstreamError("Failed to extract source")
        return dirs[0]

    def download(
        self,
        url: str,
        dest: Path,
        limit: int | None = None,
        accept: str = BINARY_ACCEPT,
    ) -> int:
        """
        Stream a URL to a file.

        Args:
            url: Source URL
            dest: Destination file
            limit: Optional size ceiling in bytes
            accept: Accept header

        Returns:
            Bytes written

        Raises:
            PayloadTooLarge: If declared or observed size exceeds limit
            UpstreamError: On HTTP failure
        """
        with self.client.stream(url, accept=accept) as response:
            if not response.is_success:
                raise UpstreamError(f"Failed to download {dest.name}: {response.status_code}")

            declared = response.headers.get("content-length", "")
            if limit is not None and declared.isdigit() and int(declared) > limit:
                raise PayloadTooLarge(_too_large(dest.name, int(declared), limit))

            written = 0
            try:
                with open(dest, "wb") as f:
                    for chunk in response.iter_bytes():
                        written += len(chunk)
                        if limit is not None and written > limit:
                            raise PayloadTooLarge(_too_large(dest.name, written, limit))
                        f.write(chunk)
            except BaseException:
                dest.unlink(missing_ok=True)
                raise

        return written


def _too_large(name: str, size: int, limit: int) -> str:
    mib = 1024 * 1024
    return f"{name} exceeds {limit // mib}MB limit ({round(size / mib)}MB)"
