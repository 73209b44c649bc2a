"""
Release Resolution.

This module turns a repository URL into an index of available releases.

Key features:
- Repository URL parsing
- Architecture detection from .deb asset names
- TTL cache with an injected clock and pluggable storage
- Forced refresh
"""

import json
import logging
import platform
import re
import threading
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Protocol

from debplug.plugin.errors import InvalidReference
from debplug.plugin.github import GitHubClient

logger = logging.getLogger(__name__)

DEFAULT_TTL = 300.0

KNOWN_ARCHITECTURES = ("amd64", "arm64", "armhf", "all")
_ARCH_ALIASES = {"x86_64": "amd64", "aarch64": "arm64"}
_MACHINE_TO_DEB = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "armhf",
    "armv6l": "armhf",
}

_REPO_URL = re.compile(r"github\.com/([^/]+)/([^/]+?)(\.git)?/?$")
_DEB_ARCH = re.compile(r"_([a-z0-9]+(?:_64)?)\.deb$", re.IGNORECASE)


@dataclass
class Asset:
    """
    A downloadable file attached to a release.

    Attributes:
        name: File name
        size: Size in bytes as reported by the API
        download_url: Public browser download URL
        api_url: API URL used for authenticated downloads
    """

    name: str
    size: int
    download_url: str
    api_url: str

    @property
    def is_package(self) -> bool:
        return self.name.endswith(".deb")

    @property
    def arch(self) -> str | None:
        return extract_arch(self.name)


@dataclass
class Release:
    """
    A single tagged release.

    Attributes:
        tag: Tag name (unique within a repository)
        name: Display name (falls back to the tag)
        published_at: ISO timestamp from the API
        prerelease: Prerelease flag
        latest: True for the most recently published release only
        architectures: Architectures found in .deb asset names, or None
        assets: Attached files
    """

    tag: str
    name: str
    published_at: str | None = None
    prerelease: bool = False
    latest: bool = False
    architectures: list[str] | None = None
    assets: list[Asset] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: dict[str, Any], latest: bool = False) -> "Release":
        """Build a Release from a GitHub API release object."""
        assets = [
            Asset(
                name=a.get("name", ""),
                size=int(a.get("size") or 0),
                download_url=a.get("browser_download_url", ""),
                api_url=a.get("url", ""),
            )
            for a in data.get("assets") or []
        ]
        tag = data.get("tag_name", "")
        return cls(
            tag=tag,
            name=data.get("name") or tag,
            published_at=data.get("published_at"),
            prerelease=bool(data.get("prerelease", False)),
            latest=latest,
            architectures=architectures_of(assets),
            assets=assets,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Release":
        """Rebuild a Release from its cached form."""
        return cls(
            tag=data["tag"],
            name=data.get("name") or data["tag"],
            published_at=data.get("published_at"),
            prerelease=bool(data.get("prerelease", False)),
            latest=bool(data.get("latest", False)),
            architectures=data.get("architectures"),
            assets=[Asset(**a) for a in data.get("assets", [])],
        )


@dataclass
class ReleaseIndex:
    """
    All known releases of one repository.

    Attributes:
        repository: Repository URL as given by the caller
        owner: Repository owner
        repo: Repository name
        timestamp: Fetch time (epoch seconds)
        releases: Releases, newest first
    """

    repository: str
    owner: str
    repo: str
    timestamp: float
    releases: list[Release] = field(default_factory=list)

    @property
    def latest(self) -> Release | None:
        for release in self.releases:
            if release.latest:
                return release
        return None

    def find(self, tag: str) -> Release | None:
        """Return the release with this tag, or None."""
        for release in self.releases:
            if release.tag == tag:
                return release
        return None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReleaseIndex":
        return cls(
            repository=data["repository"],
            owner=data["owner"],
            repo=data["repo"],
            timestamp=float(data["timestamp"]),
            releases=[Release.from_dict(r) for r in data.get("releases", [])],
        )


def parse_repository_url(url: str) -> tuple[str, str]:
    """
    Split a GitHub repository URL into owner and repo.

    Args:
        url: e.g. https://github.com/owner/mos-plugin.git

    Returns:
        (owner, repo)

    Raises:
        InvalidReference: If the URL does not match github.com/<owner>/<repo>
    """
    if not url or not isinstance(url, str):
        raise InvalidReference("Repository URL is required")

    match = _REPO_URL.search(url.strip())
    if not match:
        raise InvalidReference(f"Invalid GitHub repository URL: {url}")
    return match.group(1), match.group(2)


def plugin_name_for_repo(repo: str) -> str:
    """Plugin name derived from a repository name (drops a `mos-` prefix)."""
    return re.sub(r"^mos-", "", repo)


def extract_arch(filename: str) -> str | None:
    """
    Read the architecture out of a `name_version_arch.deb` file name.

    Args:
        filename: Asset file name

    Returns:
        Debian architecture name, or None if unrecognised
    """
    match = _DEB_ARCH.search(filename)
    if not match:
        return None
    arch = match.group(1).lower()
    arch = _ARCH_ALIASES.get(arch, arch)
    return arch if arch in KNOWN_ARCHITECTURES else None


def architectures_of(assets: list[Asset]) -> list[str] | None:
    """Sorted distinct architectures of the .deb assets, or None."""
    archs = {a.arch for a in assets if a.is_package}
    archs.discard(None)
    return sorted(archs) if archs else None


def system_arch() -> str:
    """Debian architecture name of the running host."""
    machine = platform.machine().lower()
    return _MACHINE_TO_DEB.get(machine, machine)


class CacheStorage(Protocol):
    """Where ReleaseCache keeps serialized indexes."""

    def load(self, key: str) -> dict[str, Any] | None: ...

    def save(self, key: str, data: dict[str, Any]) -> None: ...


class FileCacheStorage:
    """Stores each index as `<root>/<key>/releases.json`."""

    def __init__(self, root: Path):
        self.root = root

    def path_for(self, key: str) -> Path:
        return self.root / key / "releases.json"

    def load(self, key: str) -> dict[str, Any] | None:
        try:
            data = json.loads(self.path_for(key).read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        return data if isinstance(data, dict) else None

    def save(self, key: str, data: dict[str, Any]) -> None:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, indent=2), encoding="utf-8")


class MemoryCacheStorage:
    """In-process storage."""

    def __init__(self):
        self._data: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def load(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            return self._data.get(key)

    def save(self, key: str, data: dict[str, Any]) -> None:
        with self._lock:
            self._data[key] = data


class ReleaseCache:
    """TTL cache of ReleaseIndex objects."""

    def __init__(
        self,
        storage: CacheStorage,
        clock: Callable[[], float] = time.time,
        ttl: float = DEFAULT_TTL,
    ):
        """
        Initialize ReleaseCache.

        Args:
            storage: Backend for serialized indexes
            clock: Returns the current time in epoch seconds
            ttl: Seconds an entry stays fresh
        """
        self.storage = storage
        self.clock = clock
        self.ttl = ttl

    def get(self, key: str) -> ReleaseIndex | None:
        """Return a fresh cached index, or None if missing, stale or corrupt."""
        data = self.storage.load(key)
        if data is None:
            return None
        try:
            index = ReleaseIndex.from_dict(data)
        except (KeyError, TypeError, ValueError):
            logger.debug("discarding corrupt release cache for %s", key)
            return None
        if self.clock() - index.timestamp >= self.ttl:
            return None
        return index

    def put(self, key: str, index: ReleaseIndex) -> None:
        """Store an index. Failures are logged, not raised."""
        try:
            self.storage.save(key, index.to_dict())
        except OSError as e:
            logger.warning("could not write release cache for %s: %s", key, e)


class ReleaseResolver:
    """
    Resolves a repository URL to its ReleaseIndex.

    Example:
        resolver = ReleaseResolver(client, ReleaseCache(FileCacheStorage(root)))
        index = resolver.resolve("https://github.com/owner/mos-foo")
    """

    def __init__(
        self,
        client: GitHubClient,
        cache: ReleaseCache,
        per_page: int = 50,
        max_pages: int = 5,
    ):
        self.client = client
        self.cache = cache
        self.per_page = per_page
        self.max_pages = max_pages

    def resolve(self, repository: str, force_refresh: bool = False) -> ReleaseIndex:
        """
        Return the release index for a repository.

        Args:
            repository: GitHub repository URL
            force_refresh: Skip the cache

        Returns:
            ReleaseIndex (first release marked latest)

        Raises:
            InvalidReference: If the URL is malformed
            NotFound, RateLimited, UpstreamError: From the API
        """
        owner, repo = parse_repository_url(repository)
        key = plugin_name_for_repo(repo)

        if not force_refresh:
            cached = self.cache.get(key)
            if cached is not None and _same_repository(cached, owner, repo):
                logger.debug("release cache hit for %s", key)
                return cached

        raw = self.client.list_releases(
            owner, repo, per_page=self.per_page, max_pages=self.max_pages
        )
        index = ReleaseIndex(
            repository=repository,
            owner=owner,
            repo=repo,
            timestamp=self.cache.clock(),
            releases=[Release.from_api(r, latest=(i == 0)) for i, r in enumerate(raw)],
        )
        self.cache.put(key, index)
        return index

    def fetch_release(self, repository: str, tag: str) -> Release:
        """
        Fetch one release by tag, bypassing the paginated listing.

        Used for tags older than the listed pages reach.

        Raises:
            InvalidReference: If the URL is malformed
            ReleaseNotFound: If the tag has no release
            RateLimited, UpstreamError: From the API
        """
        owner, repo = parse_repository_url(repository)
        return Release.from_api(self.client.get_release(owner, repo, tag))


def _same_repository(index: ReleaseIndex, owner: str, repo: str) -> bool:
    # the cache is keyed by plugin name, which several repositories can map to
    return index.owner.lower() == owner.lower() and index.repo.lower() == repo.lower()


def latest_tag(index: ReleaseIndex) -> str | None:
    """Tag of the release marked latest, or None."""
    latest = index.latest
    return latest.tag if latest else None
