"""
pm install command (-S).

Install plugins from hub templates.
"""

import sys
from pathlib import Path
from typing import Any

from debplug.plugin.errors import PluginError
from debplug.plugin.installer import InstallResult
from debplug.plugin.manager import PluginManager
from pm.commands import open_manager


def install_command(args: Any) -> int:
    """
    Execute install command.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    if not args.targets:
        print("Error: No targets specified", file=sys.stderr)
        print("Usage: pm -S <template>@<tag>", file=sys.stderr)
        return 1

    success_count = 0
    fail_count = 0

    with open_manager(args) as manager:
        for target in args.targets:
            try:
                install_plugin(manager, target, args)
                success_count += 1
            except PluginError as e:
                print(f"Failed to install {target}: {e}", file=sys.stderr)
                fail_count += 1

    # Summary
    if args.verbose:
        print(f"\nInstalled: {success_count}, Failed: {fail_count}")

    return 0 if fail_count == 0 else 1


def parse_target(target: str) -> tuple[str, str | None]:
    """
    Parse install target.

    Args:
        target: template@tag

    Returns:
        Tuple of (template, tag)
    """
    if "@" in target:
        template, tag = target.rsplit("@", 1)
        return template, tag
    return target, None


def resolve_template(template: str, hub_root: Path) -> Path:
    """Relative template paths are taken from the hub root."""
    path = Path(template)
    return path if path.is_absolute() else hub_root / path


def install_plugin(manager: PluginManager, target: str, args: Any) -> InstallResult:
    """
    Install a single plugin and wait for it.

    Args:
        manager: Plugin manager
        target: template@tag
        args: Command arguments
    """
    template, tag = parse_target(target)
    if not tag:
        raise PluginError(f"No tag given for {template} (use <template>@<tag>)")

    if args.verbose:
        print(f"Installing {template}@{tag}")

    handle = manager.install(resolve_template(template, manager.paths.hub_root), tag)
    result = handle.result()

    print(f"{result.plugin} {result.tag} installed to {result.installed_to}")
    if result.previous_tag:
        print(f"  replaced {result.previous_tag}")
    if result.degraded:
        print(f"  warning: install hook failed: {result.hook_error}", file=sys.stderr)
    return result
