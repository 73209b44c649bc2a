"""
Install Coordinator.

This module drives one plugin through install, update or uninstall and keeps
the filesystem and dpkg consistent when any step fails.

State machine:
    IDLE -> RESOLVING -> FETCHING -> VERIFYING -> STAGED
         -> PACKAGE_INSTALLING -> HOOKS_RUNNING -> COMMITTED
    ROLLING_BACK is entered from any failing state after RESOLVING.

Guarantees:
- A request for the tag that is already installed fails before any network I/O
- The previous version directory is removed only after dpkg accepted the new one
- template.json is written only after dpkg accepted the new package
- Staging directories are gone after every operation
- A hook failure never rolls back an installed package
"""

import logging
import shutil
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from debplug.plugin.dpkg import PackageManager
from debplug.plugin.errors import (
    AlreadyInstalled,
    HookFailure,
    IntegrityFailure,
    MalformedDescriptor,
    PackageManagerFailure,
    PluginNotFound,
    ReleaseNotFound,
)
from debplug.plugin.fetcher import ArtifactFetcher, FetchedArtifact, StagingArea
from debplug.plugin.hooks import HookRunner, HookType
from debplug.plugin.integrity import verify
from debplug.plugin.manifest import (
    CONFIG_RELATIVE_PATH,
    DESCRIPTOR_FILE,
    Descriptor,
    HubTemplate,
    PluginConfig,
    extract_descriptor,
    now_iso,
    read_descriptor,
    read_hub_template,
    validate_plugin_name,
    validate_tag,
    write_descriptor,
)
from debplug.plugin.releases import (
    Release,
    ReleaseResolver,
    latest_tag,
    parse_repository_url,
    plugin_name_for_repo,
    system_arch,
)
from debplug.plugin.tasks import NamedLocks
from debplug.system.notify import PRIORITY_ALERT, PRIORITY_NORMAL
from debplug.utils.fs import copy_tree, is_empty_dir, remove_tree

logger = logging.getLogger(__name__)

NOTIFY_TITLE = "Plugin"
STATIC_DIR = "staticfiles"
SETTINGS_FILE = "settings.json"


class InstallState(Enum):
    """Install coordinator state enumeration."""

    IDLE = "idle"
    RESOLVING = "resolving"
    FETCHING = "fetching"
    VERIFYING = "verifying"
    STAGED = "staged"
    PACKAGE_INSTALLING = "package_installing"
    HOOKS_RUNNING = "hooks_running"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"


@dataclass
class PluginPaths:
    """
    Filesystem layout of installed plugins.

    Attributes:
        config_root: One directory per plugin (descriptor, settings, version dir)
        web_root: Web-facing plugin assets
        cache_root: Release caches and download staging
        drivers_root: Driver packages of driver plugins
        hub_root: Hub template repositories
        temp_root: Parent of per-operation extraction directories
    """

    config_root: Path
    web_root: Path
    cache_root: Path
    drivers_root: Path
    hub_root: Path
    temp_root: Path

    def base_dir(self, name: str) -> Path:
        return self.config_root / name

    def version_dir(self, name: str, tag: str) -> Path:
        return self.config_root / name / tag

    def descriptor_path(self, name: str) -> Path:
        return self.config_root / name / DESCRIPTOR_FILE

    def web_dir(self, name: str) -> Path:
        return self.web_root / name

    def cache_dir(self, name: str, tag: str | None = None) -> Path:
        return self.cache_root / name / tag if tag else self.cache_root / name

    def driver_dir(self, name: str) -> Path:
        return self.drivers_root / name


@dataclass
class InstallResult:
    """
    Outcome of a successful install or update.

    Attributes:
        plugin: Plugin name
        tag: Installed tag
        previous_tag: Tag that was replaced, if any
        installed_to: Version directory
        files: File names placed in the version directory
        hook_error: Message of a failed lifecycle hook (degraded success)
    """

    plugin: str
    tag: str
    previous_tag: str | None
    installed_to: Path
    files: dict[str, str | None]
    hook_error: str | None = None

    @property
    def degraded(self) -> bool:
        return self.hook_error is not None


@dataclass
class UninstallResult:
    """
    Outcome of an uninstall.

    Attributes:
        plugin: Plugin name
        reboot_required: True for driver plugins
        removed: Paths actually removed ("config", "web", "driver"), None if absent
    """

    plugin: str
    reboot_required: bool
    removed: dict[str, Path | None]


@dataclass
class _Existing:
    descriptor: Descriptor | None = None
    version_dir: Path | None = None
    package: str | None = None

    @property
    def tag(self) -> str | None:
        return self.descriptor.tag if self.descriptor else None


@dataclass
class _Transaction:
    name: str
    tag: str
    base_dir: Path
    version_dir: Path
    previous: _Existing = field(default_factory=_Existing)
    created_base: bool = False
    created_version: bool = False
    purged_previous: bool = False
    installed_package: str | None = None


def find_package_file(directory: Path) -> Path | None:
    """The .deb file inside a version directory, if any."""
    try:
        for entry in sorted(directory.iterdir()):
            if entry.is_file() and entry.name.endswith(".deb"):
                return entry
    except OSError:
        return None
    return None


def _version_dirs(base_dir: Path) -> list[Path]:
    try:
        return sorted(
            p for p in base_dir.iterdir() if p.is_dir() and p.name != STATIC_DIR
        )
    except OSError:
        return []


class PluginInstaller:
    """
    Orchestrates install, update and uninstall of single plugins.

    Every operation holds the plugin's named lock for its whole duration.
    """

    def __init__(
        self,
        paths: PluginPaths,
        resolver: ReleaseResolver,
        fetcher: ArtifactFetcher,
        package_manager: PackageManager,
        hooks: HookRunner,
        notifier,
        locks: NamedLocks | None = None,
        arch: str | None = None,
        require_checksum: bool = False,
        algorithm: str = "md5",
    ):
        """
        Initialize PluginInstaller.

        Args:
            paths: Filesystem layout
            resolver: Release index resolver
            fetcher: Artifact fetcher
            package_manager: dpkg driver
            hooks: Lifecycle hook runner
            notifier: Object with send(title, message, priority)
            locks: Per-plugin locks (shared with other installers if given)
            arch: Host architecture (detected when None)
            require_checksum: Refuse releases without a checksum side-file
            algorithm: Checksum digest algorithm
        """
        self.paths = paths
        self.resolver = resolver
        self.fetcher = fetcher
        self.package_manager = package_manager
        self.hooks = hooks
        self.notifier = notifier
        self.locks = locks or NamedLocks()
        self.arch = arch or system_arch()
        self.require_checksum = require_checksum
        self.algorithm = algorithm
        self._states: dict[str, InstallState] = {}
        self._state_lock = threading.Lock()

    def state_of(self, name: str) -> InstallState:
        """Last state reached by an operation on `name`."""
        with self._state_lock:
            return self._states.get(name, InstallState.IDLE)

    def _set_state(self, name: str, state: InstallState) -> None:
        with self._state_lock:
            self._states[name] = state
        logger.debug("%s -> %s", name, state.value)

    def _notify(self, message: str, priority: str = PRIORITY_NORMAL) -> None:
        self.notifier.send(NOTIFY_TITLE, message, priority)

    # -- public operations -------------------------------------------------

    def install(self, template_ref: str | Path, tag: str) -> InstallResult:
        """
        Install (or re-target) a plugin from a hub template.

        Args:
            template_ref: Path of the hub template JSON
            tag: Release tag to install

        Returns:
            InstallResult

        Raises:
            InvalidRequest: Malformed tag, template path or repository URL
            AlreadyInstalled: The tag is already installed
            PluginError: Any failure after staging began (rolled back)
        """
        validate_tag(tag)
        template = read_hub_template(template_ref, self.paths.hub_root)
        owner, repo = parse_repository_url(template.repository)
        name = validate_plugin_name(plugin_name_for_repo(repo))

        return self._apply(
            name, tag, template.repository, owner, repo, HookType.INSTALL, template
        )

    def update(self, name: str, tag: str | None = None) -> InstallResult:
        """
        Move an installed plugin to another tag.

        Args:
            name: Installed plugin name
            tag: Target tag; the latest release when None

        Raises:
            PluginNotFound: If the plugin has no descriptor
            AlreadyInstalled: If the target tag is already installed
            PluginError: Any failure after staging began (rolled back)
        """
        validate_plugin_name(name)
        descriptor = read_descriptor(self.paths.descriptor_path(name))
        if descriptor is None:
            raise PluginNotFound(f"Plugin not found: {name}")
        owner, repo = parse_repository_url(descriptor.repository)

        if tag is None:
            tag = latest_tag(self.resolver.resolve(descriptor.repository, force_refresh=True))
            if tag is None:
                raise ReleaseNotFound(f"No releases found for {name}")
        validate_tag(tag)

        return self._apply(
            name, tag, descriptor.repository, owner, repo, HookType.PLUGIN_UPDATE, None
        )

    def uninstall(self, name: str) -> UninstallResult:
        """
        Remove a plugin.

        Hook and dpkg failures are reported but do not stop the removal.

        Raises:
            InvalidRequest: Malformed name
            PluginNotFound: Neither the config nor the web directory exists
        """
        validate_plugin_name(name)
        with self.locks.hold(name):
            return self._uninstall(name)

    # -- install / update --------------------------------------------------

    def _apply(
        self,
        name: str,
        tag: str,
        repository: str,
        owner: str,
        repo: str,
        hook_type: HookType,
        template: HubTemplate | None,
    ) -> InstallResult:
        with self.locks.hold(name):
            self._set_state(name, InstallState.IDLE)
            descriptor = read_descriptor(self.paths.descriptor_path(name))
            if descriptor is not None and descriptor.tag == tag:
                raise AlreadyInstalled(f"Plugin '{name}' is already installed at version {tag}")
            existing = self._existing(name, descriptor)

            label = existing.descriptor.notify_name if existing.descriptor else name
            if hook_type is HookType.PLUGIN_UPDATE:
                self._notify(f"Updating {label} to Version: {tag}")

            self._set_state(name, InstallState.RESOLVING)
            try:
                release = self._resolve_release(repository, tag)
            except Exception as e:
                self._set_state(name, InstallState.IDLE)
                self._notify(self._failure_message(hook_type, label, e), PRIORITY_ALERT)
                raise

            txn = _Transaction(
                name=name,
                tag=tag,
                base_dir=self.paths.base_dir(name),
                version_dir=self.paths.version_dir(name, tag),
                previous=existing,
            )
            prefix = "plugin-install-" if hook_type is HookType.INSTALL else "plugin-update-"

            try:
                with StagingArea(self.paths.cache_dir(name, tag), self.paths.temp_root, prefix) as staging:
                    self._set_state(name, InstallState.FETCHING)
                    artifact = self.fetcher.fetch(staging, owner, repo, release, self.arch)

                    self._set_state(name, InstallState.VERIFYING)
                    self._verify(artifact)
                    config = extract_descriptor(artifact.source_path, tag)
                    if config.name != name:
                        raise MalformedDescriptor(
                            f"plugin.config.js declares '{config.name}' but the repository provides '{name}'"
                        )

                    label = config.displayName or (template.name if template else None) or label
                    if hook_type is HookType.INSTALL:
                        self._notify(f"Installing {label} Version: {tag}")

                    self._stage(txn, artifact, template is not None)
                    self._set_state(name, InstallState.STAGED)

                    self._set_state(name, InstallState.PACKAGE_INSTALLING)
                    self._install_package(txn, artifact)

                    descriptor = self._build_descriptor(existing, config, template, repository, tag)
                    write_descriptor(self.paths.descriptor_path(name), descriptor)
                    self._remove_previous(txn)
            except Exception as e:
                self._set_state(name, InstallState.ROLLING_BACK)
                self._rollback(txn)
                self._set_state(name, InstallState.IDLE)
                self._notify(self._failure_message(hook_type, label, e), PRIORITY_ALERT)
                raise

            self._set_state(name, InstallState.HOOKS_RUNNING)
            hook_error = self._run_lifecycle_hook(txn.version_dir, hook_type, descriptor.notify_name)

            self._set_state(name, InstallState.COMMITTED)
            if hook_type is HookType.PLUGIN_UPDATE:
                self._notify(f"{descriptor.notify_name} updated to Version: {tag}")
            else:
                self._notify(f"{descriptor.notify_name} Version: {tag} installed successfully")

            return InstallResult(
                plugin=name,
                tag=tag,
                previous_tag=existing.tag,
                installed_to=txn.version_dir,
                files={
                    "deb": artifact.package_asset.name,
                    "checksum": artifact.checksum_asset.name if artifact.checksum_asset else None,
                    "config": CONFIG_RELATIVE_PATH.name,
                },
                hook_error=hook_error,
            )

    @staticmethod
    def _failure_message(hook_type: HookType, label: str, error: Exception) -> str:
        if hook_type is HookType.PLUGIN_UPDATE:
            return f"Update failed for {label}: {error}"
        return f"Installation failed: {error}"

    def _existing(self, name: str, descriptor: Descriptor | None = None) -> _Existing:
        if descriptor is None:
            descriptor = read_descriptor(self.paths.descriptor_path(name))
        existing = _Existing(descriptor=descriptor)

        base_dir = self.paths.base_dir(name)
        if descriptor is not None and self.paths.version_dir(name, descriptor.tag).is_dir():
            existing.version_dir = self.paths.version_dir(name, descriptor.tag)
        else:
            # no usable descriptor; a leftover version directory may still hold the package
            for candidate in _version_dirs(base_dir):
                if find_package_file(candidate):
                    existing.version_dir = candidate
                    break

        if existing.version_dir is not None:
            package_file = find_package_file(existing.version_dir)
            if package_file is not None:
                existing.package = self.package_manager.package_name(package_file)
        return existing

    def _resolve_release(self, repository: str, tag: str) -> Release:
        index = self.resolver.resolve(repository)
        release = index.find(tag)
        if release is None:
            index = self.resolver.resolve(repository, force_refresh=True)
            release = index.find(tag)
        if release is None:
            # older than the listed pages; raises ReleaseNotFound if it does not exist
            release = self.resolver.fetch_release(repository, tag)
        return release

    def _verify(self, artifact: FetchedArtifact) -> None:
        if artifact.checksum_path is None:
            if self.require_checksum:
                raise IntegrityFailure(
                    f"No {self.algorithm} checksum published for {artifact.package_asset.name}"
                )
            return
        if not verify(artifact.package_path, artifact.checksum_path, self.algorithm):
            raise IntegrityFailure(f"{self.algorithm.upper()} checksum verification failed")

    def _stage(self, txn: _Transaction, artifact: FetchedArtifact, fresh_install: bool) -> None:
        """Copy the staged files into the plugin's version directory."""
        txn.created_base = not txn.base_dir.exists()
        reuses_previous = txn.previous.version_dir == txn.version_dir

        if txn.version_dir.exists() and not reuses_previous:
            remove_tree(txn.version_dir)
        txn.version_dir.mkdir(parents=True, exist_ok=True)
        txn.created_version = not reuses_previous

        source = artifact.source_path
        functions = source / "functions"
        if functions.is_file():
            shutil.copyfile(functions, txn.version_dir / "functions")
        shutil.copyfile(source / CONFIG_RELATIVE_PATH, txn.version_dir / CONFIG_RELATIVE_PATH.name)
        shutil.copyfile(artifact.package_path, txn.version_dir / artifact.package_asset.name)
        if artifact.checksum_path is not None:
            shutil.copyfile(artifact.checksum_path, txn.version_dir / artifact.checksum_path.name)

        if fresh_install:
            settings = source / SETTINGS_FILE
            target_settings = txn.base_dir / SETTINGS_FILE
            if settings.is_file() and not target_settings.exists():
                shutil.copyfile(settings, target_settings)
            static = source / STATIC_DIR
            if static.is_dir():
                copy_tree(static, txn.base_dir / STATIC_DIR)

    def _install_package(self, txn: _Transaction, artifact: FetchedArtifact) -> None:
        if txn.previous.package:
            try:
                self.package_manager.purge(txn.previous.package)
                txn.purged_previous = True
            except PackageManagerFailure as e:
                logger.warning("purge of previous package %s failed: %s", txn.previous.package, e)

        package_file = txn.version_dir / artifact.package_asset.name
        # recorded first so a failed or killed dpkg -i is still purged on rollback
        txn.installed_package = self.package_manager.package_name(package_file)
        self.package_manager.install(package_file)

    @staticmethod
    def _build_descriptor(
        existing: _Existing,
        config: PluginConfig,
        template: HubTemplate | None,
        repository: str,
        tag: str,
    ) -> Descriptor:
        if template is not None:
            return Descriptor(
                name=config.name,
                tag=tag,
                version=config.version or tag,
                repository=repository,
                displayName=config.displayName or template.name,
                description=template.description,
                driver=template.driver,
                settings=template.settings,
                icon=template.icon,
                author=template.author,
                donate=template.donate,
                support=template.support,
                homepage=template.homepage,
                installed_at=now_iso(),
            )

        descriptor = existing.descriptor
        if descriptor is None:
            raise PluginNotFound(f"Plugin not found: {config.name}")
        descriptor = Descriptor.from_dict(descriptor.to_dict())
        descriptor.apply(config)
        descriptor.version = config.version or tag
        descriptor.tag = tag
        descriptor.updated_at = now_iso()
        return descriptor

    def _remove_previous(self, txn: _Transaction) -> None:
        """Drop every version directory except the new one."""
        for directory in _version_dirs(txn.base_dir):
            if directory != txn.version_dir:
                remove_tree(directory)

    def _rollback(self, txn: _Transaction) -> None:
        """Undo a failed install. Never raises."""
        if txn.created_version:
            remove_tree(txn.version_dir)

        if txn.created_base:
            remove_tree(txn.base_dir)
        elif is_empty_dir(txn.base_dir):
            remove_tree(txn.base_dir)

        previous_file = (
            find_package_file(txn.previous.version_dir) if txn.previous.version_dir else None
        )
        try:
            if txn.purged_previous and previous_file is not None:
                logger.info("restoring previous package %s", previous_file.name)
                self.package_manager.install(previous_file)
            elif txn.installed_package and not txn.previous.package:
                self.package_manager.purge(txn.installed_package)
        except Exception as e:
            logger.error("rollback of %s left dpkg state unrestored: %s", txn.name, e)

    def _run_lifecycle_hook(self, version_dir: Path, hook_type: HookType, label: str) -> str | None:
        try:
            self.hooks.run_hook(version_dir, hook_type)
        except HookFailure as e:
            logger.warning("%s hook of %s failed: %s", hook_type.value, label, e)
            verb = "Install" if hook_type is HookType.INSTALL else "Update"
            self._notify(f"{verb} function for {label} reported an error", PRIORITY_ALERT)
            return str(e)
        return None

    # -- uninstall ---------------------------------------------------------

    def _uninstall(self, name: str) -> UninstallResult:
        config_dir = self.paths.base_dir(name)
        web_dir = self.paths.web_dir(name)
        config_exists = config_dir.is_dir()
        web_exists = web_dir.is_dir()

        if not config_exists and not web_exists:
            raise PluginNotFound(f"Plugin not found: {name}")

        existing = self._existing(name) if config_exists else _Existing()
        descriptor = existing.descriptor
        is_driver = bool(descriptor and descriptor.driver)
        label = descriptor.notify_name if descriptor else name

        version_dir = existing.version_dir
        if version_dir is None and config_exists:
            dirs = _version_dirs(config_dir)
            version_dir = dirs[0] if dirs else None

        if version_dir is not None:
            try:
                self.hooks.run_hook(version_dir, HookType.UNINSTALL)
            except HookFailure as e:
                logger.warning("uninstall hook of %s failed: %s", name, e)
                self._notify(f"Uninstall function for {label} reported an error", PRIORITY_ALERT)

        if existing.package:
            try:
                self.package_manager.purge(existing.package)
            except PackageManagerFailure as e:
                logger.warning("purge of %s failed: %s", existing.package, e)

        driver_removed = None
        if is_driver:
            driver_dir = self.paths.driver_dir(name)
            if driver_dir.exists() and remove_tree(driver_dir):
                driver_removed = driver_dir

        removed_config = config_dir if config_exists and remove_tree(config_dir) else None
        removed_web = web_dir if web_exists and remove_tree(web_dir) else None
        remove_tree(self.paths.cache_dir(name))

        self._notify(f"{label} uninstalled")
        logger.info("uninstalled %s", name)

        return UninstallResult(
            plugin=name,
            reboot_required=is_driver,
            removed={"config": removed_config, "web": removed_web, "driver": driver_removed},
        )
