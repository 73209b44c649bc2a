"""
Shared fixtures for the plugin engine tests.

- FakeGitHub: in-memory release API served through httpx.MockTransport
- FakeRunner: records dpkg calls without touching the system; tar and bash
  run for real
"""

import hashlib
import io
import json
import tarfile
from pathlib import Path

import httpx
import pytest

from debplug.config import Settings
from debplug.plugin.github import GitHubClient
from debplug.plugin.manager import PluginManager
from debplug.plugin.process import CommandResult, CommandRunner
from debplug.system.notify import RecordingNotifier

OWNER = "acme"
REPO = "mos-demo"
REPOSITORY = f"https://github.com/{OWNER}/{REPO}"
API = "https://api.github.com"


def plugin_config_js(name="demo", version=None, display_name="Demo Plugin", driver=None):
    lines = [f"  name: '{name}',"]
    if version:
        lines.append(f"  version: '{version}',")
    if display_name:
        lines.append(f"  displayName: \"{display_name}\",")
    if driver is not None:
        lines.append(f"  driver: {'true' if driver else 'false'},")
    lines.append("  settings: true,")
    return "export default {\n" + "\n".join(lines) + "\n};\n"


def make_tarball(files: dict[str, str], top: str = f"{OWNER}-{REPO}-1a2b3c4") -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for rel, content in files.items():
            data = content.encode("utf-8")
            info = tarfile.TarInfo(f"{top}/{rel}")
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


class FakeGitHub:
    """Release API for acme/mos-demo, newest release first."""

    def __init__(self):
        self.releases: list[dict] = []
        self.unlisted: list[dict] = []
        self.files: dict[str, bytes] = {}
        self.overrides: dict[str, int] = {}
        self.requests: list[httpx.Request] = []

    @staticmethod
    def source(version=None, functions="", settings=None, **config):
        files = {"page/plugin.config.js": plugin_config_js(version=version, **config)}
        if functions is not None:
            files["functions"] = functions
        if settings is not None:
            files["settings.json"] = json.dumps(settings)
        return files

    def add_release(
        self,
        tag: str,
        packages: dict[str, bytes] | None = None,
        checksum: bool = True,
        bad_checksum: bool = False,
        source: dict[str, str] | None = None,
        prerelease: bool = False,
        listed: bool = True,
    ) -> dict:
        version = tag.lstrip("v")
        if packages is None:
            packages = {f"demo_{version}_amd64.deb": f"debian package {tag}".encode()}
        if source is None:
            source = self.source(version=version)

        assets = []
        for name, data in packages.items():
            assets.append(self._asset(name, data))
            if checksum:
                digest = "0" * 32 if bad_checksum else hashlib.md5(data).hexdigest()
                assets.append(self._asset(f"{name}.md5", f"{digest}  {name}\n".encode()))

        self.files[f"/repos/{OWNER}/{REPO}/tarball/{tag}"] = make_tarball(source)
        release = {
            "tag_name": tag,
            "name": f"Release {tag}",
            "published_at": f"2026-0{len(self.releases) + 1}-01T00:00:00Z",
            "prerelease": prerelease,
            "assets": assets,
        }
        if listed:
            self.releases.insert(0, release)
        else:
            # reachable only through /releases/tags/{tag}
            self.unlisted.append(release)
        return release

    def _asset(self, name: str, data: bytes) -> dict:
        path = f"/repos/{OWNER}/{REPO}/releases/assets/{len(self.files) + 1}"
        self.files[path] = data
        return {
            "name": name,
            "size": len(data),
            "url": API + path,
            "browser_download_url": f"https://github.com/{OWNER}/{REPO}/releases/download/x/{name}",
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path in self.overrides:
            return httpx.Response(self.overrides[path], json={"message": "override"})
        if path == f"/repos/{OWNER}/{REPO}/releases":
            page = int(request.url.params.get("page", "1"))
            per_page = int(request.url.params.get("per_page", "30"))
            start = (page - 1) * per_page
            return httpx.Response(200, json=self.releases[start : start + per_page])
        tags_prefix = f"/repos/{OWNER}/{REPO}/releases/tags/"
        if path.startswith(tags_prefix):
            tag = path[len(tags_prefix) :]
            for release in self.releases + self.unlisted:
                if release["tag_name"] == tag:
                    return httpx.Response(200, json=release)
        if path in self.files:
            return httpx.Response(200, content=self.files[path])
        return httpx.Response(404, json={"message": "Not Found"})

    def client(self) -> GitHubClient:
        return GitHubClient(transport=httpx.MockTransport(self.handler))


class FakeRunner:
    """
    CommandRunner double.

    dpkg-deb reports the file name prefix as the package name. dpkg calls
    succeed unless scripted to fail with fail_on(). Everything else (tar,
    bash) is executed for real.
    """

    def __init__(self):
        self.calls: list[list[str]] = []
        self.installed: dict[str, str] = {}
        self._failures: list[tuple[list[str], CommandResult]] = []
        self._real = CommandRunner()

    def fail_on(self, *prefix: str, stderr: str = "dpkg: error processing archive", timed_out=False):
        """Make the next call starting with prefix fail once."""
        result = CommandResult(list(prefix), -1 if timed_out else 1, "", stderr, timed_out)
        self._failures.append((list(prefix), result))

    def dpkg_calls(self) -> list[list[str]]:
        return [c for c in self.calls if c[0] == "dpkg"]

    def run(self, argv, timeout, cwd=None, env=None) -> CommandResult:
        argv = [str(a) for a in argv]
        self.calls.append(argv)

        for i, (prefix, result) in enumerate(self._failures):
            if argv[: len(prefix)] == prefix:
                del self._failures[i]
                return CommandResult(argv, result.returncode, "", result.stderr, result.timed_out)

        if argv[0] == "dpkg-deb":
            return CommandResult(argv, 0, Path(argv[2]).name.split("_")[0] + "\n")
        if argv[:2] == ["dpkg", "-i"]:
            deb = Path(argv[-1])
            self.installed[deb.name.split("_")[0]] = deb.name
            return CommandResult(argv, 0, f"Setting up {deb.name}\n")
        if argv[:2] == ["dpkg", "--purge"]:
            self.installed.pop(argv[2], None)
            return CommandResult(argv, 0)
        return self._real.run(argv, timeout, cwd=cwd, env=env)


@pytest.fixture
def settings(tmp_path):
    return Settings.from_dict({}).with_root(tmp_path)


@pytest.fixture
def github():
    return FakeGitHub()


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def manager(settings, github, runner, notifier):
    manager = PluginManager(
        settings,
        client=github.client(),
        runner=runner,
        notifier=notifier,
        arch="amd64",
        kernel="6.1.0-test",
    )
    yield manager
    manager.shutdown()


@pytest.fixture
def hub_template(settings):
    """Factory writing a hub template and returning its path."""

    def write(repository=REPOSITORY, name="Demo", filename="demo.json", **extra):
        path = settings.hub_root / OWNER / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps({"name": name, "repository": repository, **extra}))
        return path

    return write
