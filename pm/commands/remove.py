"""
pm remove command (-R).
"""

import sys
from typing import Any

from debplug.plugin.errors import PluginError
from pm.commands import open_manager


def remove_command(args: Any) -> int:
    """
    Execute remove command.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    if not args.targets:
        print("Error: No targets specified", file=sys.stderr)
        print("Usage: pm -R <plugin>", file=sys.stderr)
        return 1

    failed = 0
    with open_manager(args) as manager:
        for name in args.targets:
            try:
                result = manager.uninstall(name).result()
            except PluginError as e:
                print(f"Failed to remove {name}: {e}", file=sys.stderr)
                failed += 1
                continue

            print(f"{result.plugin} removed")
            if args.verbose:
                for kind, path in result.removed.items():
                    if path is not None:
                        print(f"  {kind}: {path}")
            if result.reboot_required:
                print("  reboot required to unload the driver")

    return 0 if failed == 0 else 1
