"""
Plugin Manager.

This module is the public surface of the lifecycle engine.

Key features:
- Builds every engine component from Settings (each one injectable)
- Synchronous request validation, background install/update/uninstall
- Update checks persisted to versions.json
- Ad-hoc plugin functions, settings, driver packages and query commands
"""

import json
import logging
import platform
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from debplug.config import Settings
from debplug.plugin.dpkg import PackageManager
from debplug.plugin.errors import (
    HookFailure,
    InvalidRequest,
    NotFound,
    PluginError,
    PluginNotFound,
)
from debplug.plugin.fetcher import ArtifactFetcher
from debplug.plugin.github import GitHubClient, load_token
from debplug.plugin.hooks import BLOCKED_FUNCTIONS, HookRunner, validate_function_name
from debplug.plugin.installer import (
    InstallResult,
    PluginInstaller,
    PluginPaths,
    SETTINGS_FILE,
)
from debplug.plugin.manifest import (
    read_descriptor,
    read_hub_template,
    validate_plugin_name,
    validate_tag,
)
from debplug.plugin.process import CommandResult, CommandRunner
from debplug.plugin.query import DEFAULT_TIMEOUT, QueryResult, execute_query
from debplug.plugin.releases import (
    FileCacheStorage,
    ReleaseCache,
    ReleaseIndex,
    ReleaseResolver,
    latest_tag,
    parse_repository_url,
    plugin_name_for_repo,
)
from debplug.plugin.tasks import NamedLocks, TaskHandle, TaskRunner
from debplug.system.notify import (
    PRIORITY_ALERT,
    PRIORITY_NORMAL,
    PRIORITY_WARNING,
    SocketNotifier,
)
from debplug.utils.fs import atomic_write_text

logger = logging.getLogger(__name__)

VERSIONS_FILE = "versions.json"
MANIFEST_FILE = "manifest.json"


@dataclass
class UpdateStatus:
    """
    One row of versions.json.

    Attributes:
        plugin: Plugin name
        installed: Installed tag
        available: Latest published tag, or None if it could not be fetched
        repository: Repository URL
        update_available: True if available differs from installed
    """

    plugin: str
    installed: str
    available: str | None
    repository: str
    update_available: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UpdateStatus":
        return cls(
            plugin=data["plugin"],
            installed=data.get("installed") or "unknown",
            available=data.get("available"),
            repository=data.get("repository") or "",
            update_available=data.get("update_available") is True,
        )


@dataclass
class UpdateOutcome:
    """Result of updating one plugin inside a batch update."""

    plugin: str
    success: bool
    from_tag: str | None = None
    to_tag: str | None = None
    error: str | None = None
    hook_error: str | None = None


@dataclass
class DriverPackage:
    """A driver package built for the running kernel."""

    plugin: str
    kernel: str
    package: str
    path: Path
    directory: Path


class PluginManager:
    """
    Entry point for every plugin lifecycle operation.

    Example:
        manager = PluginManager(load_settings())
        handle = manager.install("/var/mos/hub/repositories/x/foo.json", "v1.2.0")
        result = handle.result()
        manager.shutdown()
    """

    def __init__(
        self,
        settings: Settings,
        client: GitHubClient | None = None,
        runner: CommandRunner | None = None,
        notifier=None,
        tasks: TaskRunner | None = None,
        clock: Callable[[], float] = time.time,
        arch: str | None = None,
        kernel: str | None = None,
    ):
        """
        Initialize PluginManager.

        Args:
            settings: Engine settings
            client: Release API client (built from settings when None)
            runner: Process runner shared by dpkg, hooks, tar and queries
            notifier: Notification sink (the notify socket when None)
            tasks: Background task runner
            clock: Time source of the release cache
            arch: Host architecture override
            kernel: Kernel release override for driver lookup
        """
        self.settings = settings
        self.paths = PluginPaths(
            config_root=settings.config_root,
            web_root=settings.web_root,
            cache_root=settings.cache_root,
            drivers_root=settings.drivers_root,
            hub_root=settings.hub_root,
            temp_root=settings.temp_root,
        )
        self.client = client or GitHubClient(
            token=load_token(settings.token_file), timeout=settings.http_timeout
        )
        self.runner = runner or CommandRunner()
        self.notifier = notifier or SocketNotifier(settings.notify_socket)
        self.tasks = tasks or TaskRunner(max_workers=settings.max_workers)
        self.locks = NamedLocks()
        self.kernel = kernel

        self.resolver = ReleaseResolver(
            self.client,
            ReleaseCache(FileCacheStorage(settings.cache_root), clock=clock, ttl=settings.release_cache_ttl),
            per_page=settings.release_page_size,
            max_pages=settings.release_max_pages,
        )
        self.fetcher = ArtifactFetcher(
            self.client,
            self.runner,
            max_source_size=settings.max_source_size,
            extract_timeout=settings.extract_timeout,
            algorithm=settings.checksum_algorithm,
        )
        self.package_manager = PackageManager(self.runner, timeout=settings.package_manager_timeout)
        self.hooks = HookRunner(self.runner, timeout=settings.hook_timeout)
        self.installer = PluginInstaller(
            self.paths,
            self.resolver,
            self.fetcher,
            self.package_manager,
            self.hooks,
            self.notifier,
            locks=self.locks,
            arch=arch,
            require_checksum=settings.require_checksum,
            algorithm=settings.checksum_algorithm,
        )

    @property
    def versions_path(self) -> Path:
        return self.settings.cache_root / VERSIONS_FILE

    # -- read-only views ---------------------------------------------------

    def list_plugins(self) -> list[dict[str, Any]]:
        """
        Manifests of the installed plugins' web bundles.

        Each manifest gets an `update_available` flag from versions.json
        (False when no check has been run or the plugin is not listed).
        Directories without a readable manifest are skipped.
        """
        web_root = self.settings.web_root
        if not web_root.is_dir():
            return []

        updates = {s.plugin: s.update_available for s in self._read_versions() or []}

        plugins = []
        for entry in sorted(web_root.iterdir()):
            if not entry.is_dir():
                continue
            try:
                manifest = json.loads((entry / MANIFEST_FILE).read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                logger.warning("skipping plugin %s: %s", entry.name, e)
                continue
            if not isinstance(manifest, dict):
                logger.warning("skipping plugin %s: manifest is not an object", entry.name)
                continue
            manifest["update_available"] = updates.get(manifest.get("name") or entry.name, False)
            plugins.append(manifest)
        return plugins

    def get_releases(self, repository: str, force_refresh: bool = False) -> ReleaseIndex:
        """
        Release index of a repository (cached unless force_refresh).

        Raises:
            InvalidReference, NotFound, RateLimited, UpstreamError
        """
        return self.resolver.resolve(repository, force_refresh=force_refresh)

    # -- lifecycle operations ----------------------------------------------

    def install(self, template_ref: str | Path, tag: str) -> TaskHandle:
        """
        Validate an install request and run it in the background.

        Args:
            template_ref: Hub template path
            tag: Release tag

        Returns:
            TaskHandle whose result is an InstallResult

        Raises:
            InvalidRequest: Missing or malformed tag, template or repository
            TemplateNotFound: If the template cannot be read
        """
        validate_tag(tag)
        template = read_hub_template(template_ref, self.paths.hub_root)
        _, repo = parse_repository_url(template.repository)
        name = validate_plugin_name(plugin_name_for_repo(repo))

        logger.info("install of %s@%s requested", name, tag)
        return self.tasks.submit("install", name, self.installer.install, template_ref, tag)

    def update(self, plugin_name: str | None = None) -> TaskHandle:
        """
        Update one plugin, or every plugin with an update available.

        Works from the last check_updates() result and refreshes it when done.

        Args:
            plugin_name: Plugin to update; None for all

        Returns:
            TaskHandle whose result is a list of UpdateOutcome

        Raises:
            InvalidRequest: If no update check has run, or the named plugin
                has no update available
            PluginNotFound: If the named plugin is not in versions.json
        """
        statuses = self._read_versions()
        if statuses is None:
            raise InvalidRequest("No update check performed yet. Run check_updates first.")

        pending = [s for s in statuses if s.update_available]
        if plugin_name is not None:
            validate_plugin_name(plugin_name)
            pending = [s for s in pending if s.plugin == plugin_name]
            if not pending:
                if not any(s.plugin == plugin_name for s in statuses):
                    raise PluginNotFound(f"Plugin not found: {plugin_name}")
                raise InvalidRequest(f"No update available for: {plugin_name}")

        return self.tasks.submit("update", plugin_name, self._update_batch, pending)

    def _update_batch(self, pending: list[UpdateStatus]) -> list[UpdateOutcome]:
        outcomes = []
        for status in pending:
            try:
                result: InstallResult = self.installer.update(status.plugin, status.available)
            except Exception as e:
                logger.error("update of %s failed: %s", status.plugin, e)
                outcomes.append(UpdateOutcome(plugin=status.plugin, success=False, error=str(e)))
                continue
            outcomes.append(
                UpdateOutcome(
                    plugin=status.plugin,
                    success=True,
                    from_tag=result.previous_tag,
                    to_tag=result.tag,
                    hook_error=result.hook_error,
                )
            )

        if pending:
            self.check_updates()
        return outcomes

    def uninstall(self, plugin_name: str) -> TaskHandle:
        """
        Validate an uninstall request and run it in the background.

        Returns:
            TaskHandle whose result is an UninstallResult

        Raises:
            InvalidRequest: Malformed name
            PluginNotFound: Neither the config nor the web directory exists
        """
        validate_plugin_name(plugin_name)
        if not self.paths.base_dir(plugin_name).is_dir() and not self.paths.web_dir(plugin_name).is_dir():
            raise PluginNotFound(f"Plugin not found: {plugin_name}")

        logger.info("uninstall of %s requested", plugin_name)
        return self.tasks.submit("uninstall", plugin_name, self.installer.uninstall, plugin_name)

    def check_updates(self) -> list[UpdateStatus]:
        """
        Compare each installed plugin with its latest release.

        Release indexes are force-refreshed. Plugins whose releases cannot
        be fetched are listed with available=None. The result is written to
        versions.json.
        """
        statuses = []
        config_root = self.settings.config_root
        entries = sorted(config_root.iterdir()) if config_root.is_dir() else []

        for entry in entries:
            if not entry.is_dir():
                continue
            descriptor = read_descriptor(self.paths.descriptor_path(entry.name))
            if descriptor is None or not descriptor.repository:
                continue

            available = None
            try:
                available = latest_tag(self.resolver.resolve(descriptor.repository, force_refresh=True))
            except PluginError as e:
                logger.warning("could not check releases of %s: %s", entry.name, e)

            statuses.append(
                UpdateStatus(
                    plugin=entry.name,
                    installed=descriptor.tag,
                    available=available,
                    repository=descriptor.repository,
                    update_available=bool(available) and available != descriptor.tag,
                )
            )

        atomic_write_text(self.versions_path, json.dumps([s.to_dict() for s in statuses], indent=2))
        return statuses

    def _read_versions(self) -> list[UpdateStatus] | None:
        try:
            data = json.loads(self.versions_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning("ignoring unreadable %s: %s", VERSIONS_FILE, e)
            return None
        if not isinstance(data, list):
            return None
        return [UpdateStatus.from_dict(row) for row in data if isinstance(row, dict) and row.get("plugin")]

    # -- plugin utilities --------------------------------------------------

    def execute_function(
        self,
        plugin_name: str,
        function_name: str,
        display_name: str | None = None,
        restart: bool = False,
    ) -> CommandResult:
        """
        Run a function from an installed plugin's functions file.

        Args:
            plugin_name: Installed plugin
            function_name: Shell function to call
            display_name: Label used in notifications (function name if None)
            restart: Ask the user to reboot afterwards

        Returns:
            CommandResult of the function

        Raises:
            InvalidRequest: Invalid or reserved function name
            PluginNotFound: If the plugin is not installed
            HookFailure: If the function is missing, fails or times out
        """
        validate_plugin_name(plugin_name)
        validate_function_name(function_name)
        if function_name in BLOCKED_FUNCTIONS:
            raise InvalidRequest(f"Function '{function_name}' is not allowed to be executed")

        descriptor = read_descriptor(self.paths.descriptor_path(plugin_name))
        if descriptor is None:
            raise PluginNotFound(f"Plugin not found: {plugin_name}")
        version_dir = self.paths.version_dir(plugin_name, descriptor.tag)

        label = display_name or function_name
        with self.locks.hold(plugin_name):
            self.notifier.send("Plugin", f"Executing {label}", PRIORITY_NORMAL)
            try:
                result = self.hooks.execute_function(version_dir, function_name)
            except HookFailure as e:
                self.notifier.send("Plugin", f"{label} failed: {e}", PRIORITY_ALERT)
                raise

        if restart:
            self.notifier.send(
                "Plugin", f"{label} completed successfully, please reboot your server", PRIORITY_WARNING
            )
        else:
            self.notifier.send("Plugin", f"{label} completed successfully", PRIORITY_NORMAL)
        return result

    def get_settings(self, plugin_name: str) -> Any:
        """
        Read a plugin's settings.json.

        Raises:
            PluginNotFound: If the file does not exist
            PluginError: If it cannot be read or parsed
        """
        validate_plugin_name(plugin_name)
        path = self.paths.base_dir(plugin_name) / SETTINGS_FILE
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as e:
            raise PluginNotFound(f"Settings not found for plugin: {plugin_name}") from e
        except (OSError, ValueError) as e:
            raise PluginError(f"Error reading settings: {e}") from e

    def set_settings(self, plugin_name: str, settings: dict[str, Any]) -> dict[str, Any]:
        """
        Replace a plugin's settings.json.

        Raises:
            InvalidRequest: If settings is not a non-empty object
            PluginNotFound: If the plugin directory does not exist
        """
        validate_plugin_name(plugin_name)
        if not settings or not isinstance(settings, dict):
            raise InvalidRequest("Settings object is required")

        base_dir = self.paths.base_dir(plugin_name)
        if not base_dir.is_dir():
            raise PluginNotFound(f"Plugin not found: {plugin_name}")

        with self.locks.hold(plugin_name):
            atomic_write_text(base_dir / SETTINGS_FILE, json.dumps(settings, indent=2))
        return settings

    def get_driver_package(self, plugin_name: str) -> DriverPackage:
        """
        Locate the driver package built for the running kernel.

        Raises:
            PluginNotFound: If the plugin is not installed
            InvalidRequest: If the plugin is not a driver plugin
            NotFound: If no package exists for the kernel
        """
        validate_plugin_name(plugin_name)
        descriptor = read_descriptor(self.paths.descriptor_path(plugin_name))
        if descriptor is None:
            raise PluginNotFound(f"Plugin not found: {plugin_name}")
        if not descriptor.driver:
            raise InvalidRequest(f"Plugin '{plugin_name}' is not a driver plugin")

        kernel = self.kernel or platform.release()
        directory = self.paths.driver_dir(plugin_name) / kernel
        if not directory.is_dir():
            raise NotFound(f"No driver directory found for kernel {kernel}")

        packages = sorted(p for p in directory.iterdir() if p.is_file() and p.name.endswith(".deb"))
        if not packages:
            raise NotFound(f"No driver package found for kernel {kernel}")

        return DriverPackage(
            plugin=plugin_name,
            kernel=kernel,
            package=packages[0].name,
            path=packages[0],
            directory=directory,
        )

    def run_query(
        self,
        command: str,
        args: list[Any] | None = None,
        timeout: float | None = DEFAULT_TIMEOUT,
        parse_json: bool = False,
    ) -> QueryResult:
        """Run a plugin query command from the plugins bin directory."""
        return execute_query(
            command,
            args,
            self.settings.bin_dir,
            self.runner,
            timeout=timeout,
            parse_json=parse_json,
        )

    def shutdown(self, wait: bool = True) -> None:
        """Wait for background operations and release the HTTP client."""
        self.tasks.shutdown(wait=wait)
        self.client.close()
