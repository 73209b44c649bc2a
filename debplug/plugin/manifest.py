"""
Plugin Metadata.

This module reads and writes the records that describe a plugin.

Key features:
- Tolerant extraction of labeled fields from page/plugin.config.js
- template.json descriptor load/save (atomic writes)
- Hub template reading, confined to the hub repositories root
- Plugin name and tag validation
"""

import json
import re
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from debplug.plugin.errors import (
    InvalidRequest,
    MalformedDescriptor,
    TemplateNotFound,
)
from debplug.utils.fs import atomic_write_text

CONFIG_RELATIVE_PATH = Path("page") / "plugin.config.js"
DESCRIPTOR_FILE = "template.json"

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_TAG_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+-]*$")

_STRING_FIELDS = (
    "version",
    "displayName",
    "description",
    "author",
    "icon",
    "homepage",
    "support",
    "donate",
)
_BOOL_FIELDS = ("driver", "settings")


def validate_plugin_name(name: Any) -> str:
    """
    Check a plugin name is safe to use as a single path component.

    Args:
        name: Candidate name

    Returns:
        The name unchanged

    Raises:
        InvalidRequest: If the name is empty, contains a separator or `..`
    """
    if not name or not isinstance(name, str):
        raise InvalidRequest("Plugin name is required")
    if "/" in name or "\\" in name or ".." in name or not _NAME_RE.match(name):
        raise InvalidRequest(f"Invalid plugin name: {name}")
    return name


def validate_tag(tag: Any) -> str:
    """
    Check a release tag is safe to use as a directory name.

    Raises:
        InvalidRequest: If the tag is empty or malformed
    """
    if not tag or not isinstance(tag, str):
        raise InvalidRequest("Tag is required")
    if ".." in tag or not _TAG_RE.match(tag):
        raise InvalidRequest(f"Invalid tag: {tag}")
    return tag


def now_iso() -> str:
    """UTC timestamp in the format stored in descriptors."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class PluginConfig:
    """
    Fields pulled out of plugin.config.js.

    Optional fields are None when the file does not declare them, so that an
    update only overrides what the new release explicitly sets.
    """

    name: str
    version: str | None = None
    displayName: str | None = None
    description: str | None = None
    author: str | None = None
    icon: str | None = None
    homepage: str | None = None
    support: str | None = None
    donate: str | None = None
    driver: bool | None = None
    settings: bool | None = None

    def declared(self) -> dict[str, Any]:
        """Optional fields the file actually declared."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name != "name" and getattr(self, f.name) is not None
        }


def parse_plugin_config(content: str) -> PluginConfig:
    """
    Extract labeled fields from plugin.config.js source text.

    This is pattern matching, not JavaScript evaluation: only `key: 'value'`
    and `key: true|false` pairs are recognised.

    Raises:
        MalformedDescriptor: If no name is declared
    """
    name = _match_string(content, "name")
    if not name:
        raise MalformedDescriptor("Could not parse plugin name from plugin.config.js")

    values: dict[str, Any] = {key: _match_string(content, key) for key in _STRING_FIELDS}
    for key in _BOOL_FIELDS:
        match = re.search(rf"\b{key}:\s*(true|false)\b", content)
        values[key] = (match.group(1) == "true") if match else None

    return PluginConfig(name=name, **values)


def _match_string(content: str, key: str) -> str | None:
    match = re.search(rf"\b{key}:\s*['\"]([^'\"]+)['\"]", content)
    return match.group(1) if match else None


def extract_descriptor(source_root: Path, tag: str) -> PluginConfig:
    """
    Read the plugin descriptor from an extracted source tree.

    Args:
        source_root: Top-level directory of the extracted tarball
        tag: Requested release tag, used when no version is declared

    Returns:
        PluginConfig with version defaulted to the tag

    Raises:
        MalformedDescriptor: If the file is missing or has no usable name
    """
    config_path = source_root / CONFIG_RELATIVE_PATH
    try:
        content = config_path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        raise MalformedDescriptor("plugin.config.js not found in source") from e

    config = parse_plugin_config(content)
    try:
        validate_plugin_name(config.name)
    except InvalidRequest as e:
        raise MalformedDescriptor(str(e)) from e

    if config.version is None:
        config.version = tag
    return config


@dataclass
class Descriptor:
    """
    The persisted template.json record of an installed plugin.

    Attributes mirror the JSON keys. Keys this class does not know about are
    kept in `extra` and written back unchanged.
    """

    name: str
    tag: str
    version: str
    repository: str
    displayName: str | None = None
    description: str | None = None
    driver: bool = False
    settings: bool = False
    icon: str | None = None
    author: str | None = None
    donate: str | None = None
    support: str | None = None
    homepage: str | None = None
    installed_at: str | None = None
    updated_at: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def notify_name(self) -> str:
        return self.displayName or self.name

    def to_dict(self) -> dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "extra"}
        if data["updated_at"] is None:
            del data["updated_at"]
        data.update(self.extra)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Descriptor":
        known = {f.name for f in fields(cls)} - {"extra"}
        values = {k: v for k, v in data.items() if k in known}
        extra = {k: v for k, v in data.items() if k not in known}
        for required in ("name", "tag"):
            if not isinstance(values.get(required), str) or not values[required]:
                raise MalformedDescriptor(f"Descriptor missing required field: {required}")
        values["version"] = values.get("version") or values["tag"]
        values["repository"] = values.get("repository") or ""
        values["driver"] = values.get("driver") is True
        values["settings"] = values.get("settings") is True
        return cls(extra=extra, **values)

    def apply(self, config: PluginConfig) -> None:
        """Override fields the new plugin.config.js declares."""
        for key, value in config.declared().items():
            setattr(self, key, value)


def read_descriptor(path: Path) -> Descriptor | None:
    """
    Load template.json.

    Returns:
        Descriptor, or None when the file is missing or unreadable
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    try:
        return Descriptor.from_dict(data)
    except MalformedDescriptor:
        return None


def write_descriptor(path: Path, descriptor: Descriptor) -> None:
    """Atomically write template.json."""
    atomic_write_text(path, json.dumps(descriptor.to_dict(), indent=2))


@dataclass
class HubTemplate:
    """A hub catalog entry pointing at a plugin repository."""

    repository: str
    name: str | None = None
    description: str | None = None
    icon: str | None = None
    author: str | None = None
    donate: str | None = None
    support: str | None = None
    homepage: str | None = None
    driver: bool = False
    settings: bool = False


def read_hub_template(template_path: Any, hub_root: Path) -> HubTemplate:
    """
    Read a hub template JSON file.

    Args:
        template_path: Absolute path of the template inside the hub root
        hub_root: Hub repositories root

    Returns:
        HubTemplate

    Raises:
        InvalidRequest: If the path is missing, outside the hub root, or the
            template has no repository
        TemplateNotFound: If the file cannot be read
    """
    if not template_path or not isinstance(template_path, (str, Path)):
        raise InvalidRequest("Template path is required")

    path = Path(template_path)
    try:
        resolved = path.resolve()
        inside = resolved.is_relative_to(hub_root.resolve())
    except (OSError, RuntimeError):
        inside = False
    if not path.is_absolute() or not inside:
        raise InvalidRequest("Invalid template path")

    try:
        data = json.loads(resolved.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise TemplateNotFound("Template not found") from e
    except (OSError, ValueError) as e:
        raise TemplateNotFound(f"Failed to read template: {e}") from e

    if not isinstance(data, dict) or not data.get("repository"):
        raise InvalidRequest("Template missing repository field")

    def text(key: str) -> str | None:
        value = data.get(key)
        return value if isinstance(value, str) and value else None

    return HubTemplate(
        repository=data["repository"],
        name=text("name"),
        description=text("description"),
        icon=text("icon"),
        author=text("author"),
        donate=text("donate"),
        support=text("support"),
        homepage=text("homepage"),
        driver=data.get("driver") is True,
        settings=data.get("settings") is True,
    )
