"""
Tests for the Install Coordinator.

This test suite covers:
1. Fresh install layout, dpkg calls and notifications
2. AlreadyInstalled guard without network access
3. Update promotion and rollback on dpkg failure
4. Cleanup after every failure point
5. Degraded success on hook failure
6. Uninstall (plain, driver, web-only, missing)
7. Serialization of concurrent operations on one plugin
"""

import json
import threading

import pytest

from debplug.plugin.errors import (
    AlreadyInstalled,
    IntegrityFailure,
    InvalidRequest,
    MalformedDescriptor,
    NoCompatibleArtifact,
    PackageManagerFailure,
    PluginNotFound,
    ReleaseNotFound,
    UpstreamError,
)
from debplug.plugin.installer import InstallState
from debplug.system.notify import PRIORITY_ALERT

OWNER = "acme"
REPO = "mos-demo"


def staging_leftovers(settings, name="demo"):
    leftovers = list(settings.temp_root.glob("plugin-*")) if settings.temp_root.exists() else []
    cache = settings.cache_root / name
    if cache.exists():
        leftovers += [p for p in cache.iterdir() if p.is_dir()]
    return leftovers


class TestFreshInstall:
    """Test installing a plugin that is not present."""

    def test_install_layout(self, manager, github, hub_template, settings):
        """Should place descriptor, settings and version files."""
        github.add_release("v1.0.0", source=github.source(version="1.0.0", settings={"port": 8080}))

        result = manager.installer.install(hub_template(), "v1.0.0")

        base = settings.config_root / "demo"
        assert result.plugin == "demo"
        assert result.tag == "v1.0.0"
        assert result.previous_tag is None
        assert result.installed_to == base / "v1.0.0"
        assert result.files == {
            "deb": "demo_1.0.0_amd64.deb",
            "checksum": "demo_1.0.0_amd64.deb.md5",
            "config": "plugin.config.js",
        }
        assert not result.degraded

        for name in ("demo_1.0.0_amd64.deb", "demo_1.0.0_amd64.deb.md5", "functions", "plugin.config.js"):
            assert (base / "v1.0.0" / name).is_file()
        assert json.loads((base / "settings.json").read_text()) == {"port": 8080}

        descriptor = json.loads((base / "template.json").read_text())
        assert descriptor["name"] == "demo"
        assert descriptor["tag"] == "v1.0.0"
        assert descriptor["version"] == "1.0.0"
        assert descriptor["displayName"] == "Demo Plugin"
        assert descriptor["repository"] == f"https://github.com/{OWNER}/{REPO}"
        assert descriptor["settings"] is False
        assert "installed_at" in descriptor
        assert "updated_at" not in descriptor

    def test_install_dpkg_and_notifications(self, manager, github, hub_template, runner, notifier):
        """Should force-install without purging and notify start and success."""
        github.add_release("v1.0.0")

        manager.installer.install(hub_template(), "v1.0.0")

        assert [c[:3] for c in runner.dpkg_calls()] == [["dpkg", "-i", "--force-downgrade"]]
        assert notifier.messages() == [
            "Installing Demo Plugin Version: v1.0.0",
            "Demo Plugin Version: v1.0.0 installed successfully",
        ]
        assert manager.installer.state_of("demo") is InstallState.COMMITTED

    def test_install_cleans_staging(self, manager, github, hub_template, settings):
        """Should leave no download or extraction directories behind."""
        github.add_release("v1.0.0")

        manager.installer.install(hub_template(), "v1.0.0")

        assert staging_leftovers(settings) == []

    def test_install_picks_arch_independent_package(self, manager, github, hub_template):
        """Should fall back to an _all.deb when no exact arch matches."""
        github.add_release(
            "v1.0.0",
            packages={"demo_1.0.0_arm64.deb": b"arm", "demo_1.0.0_all.deb": b"all"},
        )

        result = manager.installer.install(hub_template(), "v1.0.0")

        assert result.files["deb"] == "demo_1.0.0_all.deb"

    def test_install_without_checksum(self, manager, github, hub_template):
        """Should install when no checksum side-file is published."""
        github.add_release("v1.0.0", checksum=False)

        result = manager.installer.install(hub_template(), "v1.0.0")

        assert result.files["checksum"] is None

    def test_tag_beyond_listed_pages(self, manager, github, hub_template, settings):
        """Should fetch a tag missing from the release listing directly."""
        github.add_release("v2.0.0")
        github.add_release("v1.0.0", listed=False)

        result = manager.installer.install(hub_template(), "v1.0.0")

        assert result.tag == "v1.0.0"
        assert (settings.config_root / "demo" / "v1.0.0" / "demo_1.0.0_amd64.deb").is_file()
        paths = [r.url.path for r in github.requests]
        assert f"/repos/{OWNER}/{REPO}/releases/tags/v1.0.0" in paths

    def test_invalid_tag_is_rejected_before_io(self, manager, github, hub_template):
        """Should raise InvalidRequest without contacting the release source."""
        with pytest.raises(InvalidRequest):
            manager.installer.install(hub_template(), "../v1")
        assert github.requests == []


class TestAlreadyInstalled:
    """Test the installed-tag guard."""

    def test_same_tag_makes_no_network_calls(self, manager, github, hub_template):
        """Should raise AlreadyInstalled before any request."""
        github.add_release("v1.0.0")
        template = hub_template()
        manager.installer.install(template, "v1.0.0")
        requests_before = len(github.requests)

        with pytest.raises(AlreadyInstalled, match="v1.0.0"):
            manager.installer.install(template, "v1.0.0")

        assert len(github.requests) == requests_before

    def test_same_tag_skips_package_inspection(self, manager, github, hub_template, runner):
        """Should raise AlreadyInstalled without running dpkg-deb."""
        github.add_release("v1.0.0")
        template = hub_template()
        manager.installer.install(template, "v1.0.0")
        calls_before = len(runner.calls)

        with pytest.raises(AlreadyInstalled):
            manager.installer.install(template, "v1.0.0")

        assert runner.calls[calls_before:] == []

    def test_concurrent_installs_of_same_tag(self, manager, github, hub_template):
        """Should let exactly one of two concurrent installs succeed."""
        github.add_release("v1.0.0")
        template = hub_template()

        handles = [manager.install(template, "v1.0.0") for _ in range(2)]
        errors = [h.error(timeout=30) for h in handles]

        assert sum(e is None for e in errors) == 1
        assert any(isinstance(e, AlreadyInstalled) for e in errors)


class TestUpdate:
    """Test moving an installed plugin to another tag."""

    def install_v1(self, manager, github, hub_template):
        github.add_release("v1.0.0", source=github.source(version="1.0.0", settings={"a": 1}))
        github.add_release(
            "v2.0.0",
            source=github.source(version="2.0.0", display_name="Demo Two", settings={"b": 2}),
        )
        manager.installer.install(hub_template(), "v1.0.0")

    def test_update_promotes_new_version(self, manager, github, hub_template, settings, runner):
        """Should purge the old package, install the new one and drop the old directory."""
        self.install_v1(manager, github, hub_template)
        base = settings.config_root / "demo"
        installed_at = json.loads((base / "template.json").read_text())["installed_at"]

        result = manager.installer.update("demo", "v2.0.0")

        assert result.previous_tag == "v1.0.0"
        assert not (base / "v1.0.0").exists()
        assert (base / "v2.0.0" / "demo_2.0.0_amd64.deb").is_file()

        descriptor = json.loads((base / "template.json").read_text())
        assert descriptor["tag"] == "v2.0.0"
        assert descriptor["version"] == "2.0.0"
        assert descriptor["displayName"] == "Demo Two"
        assert descriptor["installed_at"] == installed_at
        assert "updated_at" in descriptor

        calls = [c[:2] for c in runner.dpkg_calls()]
        assert calls[-2:] == [["dpkg", "--purge"], ["dpkg", "-i"]]
        assert runner.dpkg_calls()[-2][2] == "demo"

    def test_update_keeps_user_settings(self, manager, github, hub_template, settings):
        """Should not touch settings.json on update."""
        self.install_v1(manager, github, hub_template)

        manager.installer.update("demo", "v2.0.0")

        assert json.loads((settings.config_root / "demo" / "settings.json").read_text()) == {"a": 1}

    def test_update_defaults_to_latest(self, manager, github, hub_template):
        """Should pick the latest release when no tag is given."""
        self.install_v1(manager, github, hub_template)

        result = manager.installer.update("demo")

        assert result.tag == "v2.0.0"

    def test_update_rolls_back_on_dpkg_failure(
        self, manager, github, hub_template, settings, runner, notifier
    ):
        """Should keep the old version installed when the new package fails."""
        self.install_v1(manager, github, hub_template)
        base = settings.config_root / "demo"
        runner.fail_on("dpkg", "-i", stderr="dpkg: dependency problems")

        with pytest.raises(PackageManagerFailure, match="dependency problems"):
            manager.installer.update("demo", "v2.0.0")

        assert (base / "v1.0.0" / "demo_1.0.0_amd64.deb").is_file()
        assert not (base / "v2.0.0").exists()
        assert json.loads((base / "template.json").read_text())["tag"] == "v1.0.0"
        assert runner.installed == {"demo": "demo_1.0.0_amd64.deb"}
        assert staging_leftovers(settings) == []
        assert any("Update failed" in m for m in notifier.messages(PRIORITY_ALERT))
        assert manager.installer.state_of("demo") is InstallState.IDLE

    def test_update_unknown_plugin(self, manager):
        """Should raise PluginNotFound without a descriptor."""
        with pytest.raises(PluginNotFound):
            manager.installer.update("ghost", "v1.0.0")


class TestFailureCleanup:
    """Test that failed installs leave nothing behind."""

    def assert_clean(self, settings):
        assert not (settings.config_root / "demo").exists()
        assert staging_leftovers(settings) == []

    def test_missing_release(self, manager, github, hub_template, settings, notifier):
        """Should raise ReleaseNotFound and alert."""
        github.add_release("v1.0.0")

        with pytest.raises(ReleaseNotFound):
            manager.installer.install(hub_template(), "v9.9.9")

        self.assert_clean(settings)
        assert notifier.messages(PRIORITY_ALERT) == ["Installation failed: Release v9.9.9 not found"]

    def test_checksum_mismatch(self, manager, github, hub_template, settings, runner):
        """Should raise IntegrityFailure before dpkg runs."""
        github.add_release("v1.0.0", bad_checksum=True)

        with pytest.raises(IntegrityFailure, match="MD5"):
            manager.installer.install(hub_template(), "v1.0.0")

        self.assert_clean(settings)
        assert runner.dpkg_calls() == []

    def test_no_compatible_package(self, manager, github, hub_template, settings):
        """Should raise NoCompatibleArtifact when only foreign arches exist."""
        github.add_release("v1.0.0", packages={"demo_1.0.0_arm64.deb": b"arm"})

        with pytest.raises(NoCompatibleArtifact, match="amd64"):
            manager.installer.install(hub_template(), "v1.0.0")

        self.assert_clean(settings)

    def test_source_download_failure(self, manager, github, hub_template, settings):
        """Should raise UpstreamError when the tarball cannot be fetched."""
        github.add_release("v1.0.0")
        github.overrides[f"/repos/{OWNER}/{REPO}/tarball/v1.0.0"] = 500

        with pytest.raises(UpstreamError):
            manager.installer.install(hub_template(), "v1.0.0")

        self.assert_clean(settings)

    def test_missing_plugin_config(self, manager, github, hub_template, settings):
        """Should raise MalformedDescriptor when plugin.config.js is absent."""
        github.add_release("v1.0.0", source={"functions": ""})

        with pytest.raises(MalformedDescriptor):
            manager.installer.install(hub_template(), "v1.0.0")

        self.assert_clean(settings)

    def test_config_name_mismatch(self, manager, github, hub_template, settings):
        """Should refuse a release whose plugin.config.js names another plugin."""
        github.add_release("v1.0.0", source=github.source(name="other"))

        with pytest.raises(MalformedDescriptor, match="other"):
            manager.installer.install(hub_template(), "v1.0.0")

        self.assert_clean(settings)

    def test_fresh_install_dpkg_failure(self, manager, github, hub_template, settings, runner):
        """Should remove the base directory it created and purge the half-installed package."""
        github.add_release("v1.0.0", source=github.source(settings={"a": 1}))
        runner.fail_on("dpkg", "-i")

        with pytest.raises(PackageManagerFailure):
            manager.installer.install(hub_template(), "v1.0.0")

        self.assert_clean(settings)
        assert runner.dpkg_calls()[-1] == ["dpkg", "--purge", "demo"]

    def test_fresh_install_dpkg_timeout(self, manager, github, hub_template, settings, runner):
        """Should purge the package when dpkg -i is killed on timeout."""
        github.add_release("v1.0.0")
        runner.fail_on("dpkg", "-i", timed_out=True)

        with pytest.raises(PackageManagerFailure, match="timed out"):
            manager.installer.install(hub_template(), "v1.0.0")

        self.assert_clean(settings)
        assert runner.dpkg_calls()[-1] == ["dpkg", "--purge", "demo"]
        assert "demo" not in runner.installed


class TestHooks:
    """Test lifecycle hook handling during install."""

    def test_install_hook_runs(self, manager, github, hub_template, settings):
        """Should run the install function inside the version directory."""
        functions = 'install() {\n  echo "$PLUGIN_HOOK" > installed.marker\n}\n'
        github.add_release("v1.0.0", source=github.source(functions=functions))

        result = manager.installer.install(hub_template(), "v1.0.0")

        marker = settings.config_root / "demo" / "v1.0.0" / "installed.marker"
        assert marker.read_text().strip() == "install"
        assert result.hook_error is None

    def test_hook_failure_is_degraded_success(self, manager, github, hub_template, settings, notifier):
        """Should keep the install and report the hook error."""
        functions = "install() {\n  echo broken >&2\n  return 4\n}\n"
        github.add_release("v1.0.0", source=github.source(functions=functions))

        result = manager.installer.install(hub_template(), "v1.0.0")

        assert result.degraded
        assert "exit code 4" in result.hook_error
        assert (settings.config_root / "demo" / "template.json").is_file()
        assert "Install function for Demo Plugin reported an error" in notifier.messages(PRIORITY_ALERT)
        assert manager.installer.state_of("demo") is InstallState.COMMITTED


class TestUninstall:
    """Test plugin removal."""

    def test_uninstall(self, manager, github, hub_template, settings, runner):
        """Should run the hook, purge the package and remove all directories."""
        marker = settings.temp_root / "uninstalled"
        settings.temp_root.mkdir(parents=True, exist_ok=True)
        functions = f'uninstall() {{\n  touch "{marker}"\n}}\n'
        github.add_release("v1.0.0", source=github.source(functions=functions))
        manager.installer.install(hub_template(), "v1.0.0")
        web = settings.web_root / "demo"
        web.mkdir(parents=True)

        result = manager.installer.uninstall("demo")

        assert marker.exists()
        assert runner.dpkg_calls()[-1] == ["dpkg", "--purge", "demo"]
        assert result.removed["config"] == settings.config_root / "demo"
        assert result.removed["web"] == web
        assert result.removed["driver"] is None
        assert not result.reboot_required
        assert not (settings.config_root / "demo").exists()
        assert not web.exists()

    def test_uninstall_driver_plugin(self, manager, github, hub_template, settings):
        """Should remove the driver directory and ask for a reboot."""
        github.add_release("v1.0.0")
        manager.installer.install(hub_template(driver=True), "v1.0.0")
        driver_dir = settings.drivers_root / "demo" / "6.1.0"
        driver_dir.mkdir(parents=True)

        result = manager.installer.uninstall("demo")

        assert result.reboot_required
        assert result.removed["driver"] == settings.drivers_root / "demo"
        assert not (settings.drivers_root / "demo").exists()

    def test_uninstall_web_only(self, manager, settings):
        """Should succeed when only the web directory is left."""
        web = settings.web_root / "demo"
        web.mkdir(parents=True)

        result = manager.installer.uninstall("demo")

        assert result.removed == {"config": None, "web": web, "driver": None}

    def test_uninstall_without_descriptor(self, manager, settings, runner):
        """Should still purge and remove a half-installed plugin."""
        version_dir = settings.config_root / "demo" / "v1.0.0"
        version_dir.mkdir(parents=True)
        (version_dir / "demo_1.0.0_amd64.deb").write_bytes(b"deb")

        manager.installer.uninstall("demo")

        assert ["dpkg", "--purge", "demo"] in runner.dpkg_calls()
        assert not (settings.config_root / "demo").exists()

    def test_uninstall_hook_failure_does_not_stop_removal(self, manager, github, hub_template, settings, notifier):
        """Should alert and continue when the uninstall hook fails."""
        github.add_release("v1.0.0", source=github.source(functions="uninstall() {\n  return 1\n}\n"))
        manager.installer.install(hub_template(), "v1.0.0")

        manager.installer.uninstall("demo")

        assert not (settings.config_root / "demo").exists()
        assert "Uninstall function for Demo Plugin reported an error" in notifier.messages(PRIORITY_ALERT)

    def test_uninstall_missing(self, manager):
        """Should raise PluginNotFound when nothing exists."""
        with pytest.raises(PluginNotFound):
            manager.installer.uninstall("ghost")

    def test_uninstall_waits_for_running_operation(self, manager, settings):
        """Should block on the plugin lock held by another operation."""
        (settings.web_root / "demo").mkdir(parents=True)
        finished = threading.Event()

        with manager.locks.hold("demo"):
            worker = threading.Thread(target=lambda: (manager.installer.uninstall("demo"), finished.set()))
            worker.start()
            assert not finished.wait(0.2)

        worker.join(timeout=5)
        assert finished.is_set()
