"""
pm CLI - debplug Package Manager.

Pacman-style interface for managing appliance plugins.

Usage:
    pm -S <template>@<tag>       Install plugin from a hub template
    pm -R <plugin>               Remove plugin
    pm -U [plugin]               Update plugin(s)
    pm -Q                        List installed plugins
    pm -Qu                       Check for updates
    pm -Si <repository>          Show releases
    pm --init-config             Write a default config file
"""

import argparse
import sys

from debplug.config import ConfigError
from debplug.plugin.errors import PluginError


class PMError(Exception):
    """Base exception for pm errors."""

    pass


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser with pacman-style flags."""
    parser = argparse.ArgumentParser(
        prog="pm",
        description="debplug Package Manager - Pacman-style plugin manager",
        add_help=False,
    )

    # Operation flags (mutually exclusive)
    ops = parser.add_mutually_exclusive_group()
    ops.add_argument("-S", "--sync", action="store_true", help="Install plugin")
    ops.add_argument("-R", "--remove", action="store_true", help="Remove plugin")
    ops.add_argument("-U", "--upgrade", action="store_true", help="Update plugin(s)")
    ops.add_argument("-Q", "--query", action="store_true", help="Query installed")
    ops.add_argument("--init-config", action="store_true", help="Write default config")
    ops.add_argument("-h", "--help", action="store_true", help="Show help")

    # Sub-flags
    parser.add_argument("-u", "--upgrades", action="store_true", help="Check updates (-Qu)")
    parser.add_argument("-i", "--info", action="store_true", help="Show releases (-Si)")
    parser.add_argument("--refresh", action="store_true", help="Bypass release cache on -Si")

    # Common options
    parser.add_argument("--config", metavar="PATH", help="Config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    # Positional arguments
    parser.add_argument("targets", nargs="*", help="Templates, plugin names or repositories")

    return parser


def print_help():
    """Print help message."""
    help_text = """
pm - debplug Package Manager

Usage:
    pm -S <template>@<tag>       Install plugin from a hub template
    pm -R <plugin>               Remove plugin
    pm -U [plugin]               Update plugin(s) found by the last -Qu
    pm -Q                        List installed plugins
    pm -Qu                       Check for updates
    pm -Si <repository>          Show releases
    pm --init-config             Write a default config file

Options:
    --config PATH                Config file (default: $DEBPLUG_CONFIG or
                                 /etc/debplug/debplug.toml)
    --refresh                    Bypass the release cache on -Si
    -v, --verbose                Verbose output
    -h, --help                   Show this help
"""
    print(help_text.strip())


def main(argv: list[str] | None = None) -> int:
    """Main entry point for pm CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    try:
        # Show help
        if args.help or (
            not args.sync
            and not args.remove
            and not args.upgrade
            and not args.query
            and not args.init_config
        ):
            print_help()
            return 0

        # Route to appropriate command
        if args.init_config:
            from pm.commands import init_config_command

            return init_config_command(args)

        if args.sync and args.info:
            # -Si: Show releases
            from pm.commands.query import releases_command

            return releases_command(args)

        elif args.sync:
            # -S: Install
            from pm.commands.install import install_command

            return install_command(args)

        elif args.remove:
            # -R: Remove
            from pm.commands.remove import remove_command

            return remove_command(args)

        elif args.upgrade:
            # -U: Update
            from pm.commands.upgrade import upgrade_command

            return upgrade_command(args)

        elif args.query:
            # -Q: Query
            from pm.commands.query import query_command

            return query_command(args)

    except (PMError, PluginError, ConfigError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 130
    except Exception as e:
        print(f"Unexpected error: {e}", file=sys.stderr)
        if args.verbose:
            import traceback

            traceback.print_exc()
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
