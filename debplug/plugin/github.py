"""
GitHub Release API Client.

This module wraps the parts of the GitHub REST API the engine uses.

Key features:
- Paginated release listing
- Single release lookup by tag
- Streaming downloads (release assets, source tarballs)
- Optional token authentication
"""

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import httpx

from debplug.plugin.errors import (
    NotFound,
    RateLimited,
    ReleaseNotFound,
    UpstreamError,
)

logger = logging.getLogger(__name__)

API_BASE = "https://api.github.com"
USER_AGENT = "debplug"
API_VERSION = "2022-11-28"
JSON_ACCEPT = "application/vnd.github.v3+json"
BINARY_ACCEPT = "application/octet-stream"


def load_token(token_file: Path) -> str | None:
    """
    Read the optional github token from a JSON secrets file.

    The file is expected to hold an object with a "github" key. Any problem
    reading it means "no token".

    Args:
        token_file: Path to the secrets file

    Returns:
        Token string, or None
    """
    try:
        data = json.loads(token_file.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    token = data.get("github") if isinstance(data, dict) else None
    return token if isinstance(token, str) and token else None


class GitHubClient:
    """
    Synchronous GitHub API client.

    Example:
        client = GitHubClient(token=load_token(path))
        releases = client.list_releases("owner", "repo")
    """

    def __init__(
        self,
        token: str | None = None,
        timeout: float = 30.0,
        api_base: str = API_BASE,
        transport: httpx.BaseTransport | None = None,
    ):
        """
        Initialize GitHubClient.

        Args:
            token: Optional API token
            timeout: Per-request timeout in seconds
            api_base: API root URL
            transport: Custom httpx transport (tests use httpx.MockTransport)
        """
        self.api_base = api_base.rstrip("/")
        headers = {"User-Agent": USER_AGENT, "Accept": JSON_ACCEPT}
        if token:
            headers["Authorization"] = f"token {token}"
        self.client = httpx.Client(
            headers=headers,
            timeout=timeout,
            follow_redirects=True,
            transport=transport,
        )

    def close(self) -> None:
        """Close the underlying connection pool."""
        self.client.close()

    def __enter__(self) -> "GitHubClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _get_json(self, url: str, params: dict[str, Any] | None = None) -> Any:
        try:
            response = self.client.get(url, params=params)
        except httpx.HTTPError as e:
            raise UpstreamError(f"GitHub API request failed: {e}") from e

        if response.status_code == 404:
            raise NotFound("Repository not found")
        if response.status_code == 403:
            raise RateLimited("Rate limit exceeded or authentication required")
        if not response.is_success:
            raise UpstreamError(f"GitHub API error: {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError(f"GitHub API returned invalid JSON: {e}") from e

    def list_releases(
        self, owner: str, repo: str, per_page: int = 50, max_pages: int = 5
    ) -> list[dict[str, Any]]:
        """
        List releases, newest first.

        Args:
            owner: Repository owner
            repo: Repository name
            per_page: Page size
            max_pages: Stop after this many pages

        Returns:
            Raw release objects

        Raises:
            NotFound: On HTTP 404
            RateLimited: On HTTP 403
            UpstreamError: On any other failure
        """
        url = f"{self.api_base}/repos/{owner}/{repo}/releases"
        releases: list[dict[str, Any]] = []

        for page in range(1, max_pages + 1):
            batch = self._get_json(url, params={"per_page": per_page, "page": page})
            if not isinstance(batch, list):
                raise UpstreamError("GitHub API returned an unexpected release list")
            releases.extend(batch)
            if len(batch) < per_page:
                break

        logger.debug("listed %d releases for %s/%s", len(releases), owner, repo)
        return releases

    def get_release(self, owner: str, repo: str, tag: str) -> dict[str, Any]:
        """
        Fetch a single release by tag.

        Raises:
            ReleaseNotFound: If the tag has no release
            RateLimited: On HTTP 403
            UpstreamError: On any other failure
        """
        url = f"{self.api_base}/repos/{owner}/{repo}/releases/tags/{tag}"
        try:
            release = self._get_json(url)
        except NotFound as e:
            raise ReleaseNotFound(f"Release {tag} not found") from e
        if not isinstance(release, dict):
            raise UpstreamError("GitHub API returned an unexpected release object")
        return release

    def tarball_url(self, owner: str, repo: str, tag: str) -> str:
        """URL of the source tarball for a tag."""
        return f"{self.api_base}/repos/{owner}/{repo}/tarball/{tag}"

    @contextmanager
    def stream(self, url: str, accept: str = BINARY_ACCEPT) -> Iterator[httpx.Response]:
        """
        Open a streaming GET.

        Args:
            url: Download URL
            accept: Accept header value

        Yields:
            The streaming response (status not yet checked)

        Raises:
            UpstreamError: On transport failures
        """
        headers = {"Accept": accept, "X-GitHub-Api-Version": API_VERSION}
        try:
            with self.client.stream("GET", url, headers=headers) as response:
                yield response
        except httpx.HTTPError as e:
            raise UpstreamError(f"Download failed: {e}") from e
