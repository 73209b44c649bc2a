"""
pm upgrade command (-U).

Applies the updates found by the last `pm -Qu`.
"""

import sys
from typing import Any

from pm.commands import open_manager


def upgrade_command(args: Any) -> int:
    """
    Execute upgrade command.

    Args:
        args: Parsed command-line arguments (at most one target)

    Returns:
        Exit code (0 if every update succeeded)
    """
    if len(args.targets) > 1:
        print("Error: Update one plugin or all of them", file=sys.stderr)
        print("Usage: pm -U [plugin]", file=sys.stderr)
        return 1

    name = args.targets[0] if args.targets else None

    with open_manager(args) as manager:
        outcomes = manager.update(name).result()

    if not outcomes:
        print("No updates available")
        return 0

    failed = 0
    for outcome in outcomes:
        if outcome.success:
            print(f"{outcome.plugin} {outcome.from_tag} -> {outcome.to_tag}")
            if outcome.hook_error:
                print(f"  warning: update hook failed: {outcome.hook_error}", file=sys.stderr)
        else:
            print(f"Failed to update {outcome.plugin}: {outcome.error}", file=sys.stderr)
            failed += 1

    return 0 if failed == 0 else 1
