"""
pm query commands (-Q, -Qu, -Si).
"""

import sys
from typing import Any

from pm.commands import open_manager


def query_command(args: Any) -> int:
    """
    List installed plugins (-Q) or check for updates (-Qu).

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code
    """
    with open_manager(args) as manager:
        if args.upgrades:
            statuses = manager.check_updates()
            pending = [s for s in statuses if s.update_available]
            for status in pending:
                print(f"{status.plugin} {status.installed} -> {status.available}")
            if args.verbose:
                for status in statuses:
                    if status.available is None:
                        print(f"{status.plugin}: release check failed", file=sys.stderr)
            if not pending:
                print("All plugins are up to date")
            return 0

        plugins = manager.list_plugins()

    for plugin in plugins:
        line = f"{plugin.get('name', '?')} {plugin.get('version', '')}".rstrip()
        if plugin.get("update_available"):
            line += " [update available]"
        print(line)
    if args.verbose:
        print(f"\n{len(plugins)} plugin(s)")
    return 0


def releases_command(args: Any) -> int:
    """
    Show the releases of a repository (-Si).

    Args:
        args: Parsed command-line arguments (one repository URL)
    """
    if len(args.targets) != 1:
        print("Error: Exactly one repository expected", file=sys.stderr)
        print("Usage: pm -Si <repository>", file=sys.stderr)
        return 1

    with open_manager(args) as manager:
        index = manager.get_releases(args.targets[0], force_refresh=args.refresh)

    print(f"Repository : {index.repository}")
    for release in index.releases:
        flags = []
        if release.latest:
            flags.append("latest")
        if release.prerelease:
            flags.append("prerelease")
        archs = ", ".join(release.architectures) if release.architectures else "-"
        suffix = f" ({', '.join(flags)})" if flags else ""
        print(f"  {release.tag}{suffix}  [{archs}]  {release.published_at or ''}".rstrip())
    return 0
