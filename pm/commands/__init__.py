"""
pm command implementations.

Each command builds a PluginManager from the config file, runs one
operation and returns an exit code.
"""

import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from debplug.config import load_settings, write_default_config
from debplug.plugin.manager import PluginManager
from debplug.utils.log import configure_logging


def _config_arg(args: Any) -> Path | None:
    return Path(args.config) if getattr(args, "config", None) else None


@contextmanager
def open_manager(args: Any) -> Iterator[PluginManager]:
    """
    Build a PluginManager for one command and shut it down afterwards.

    Args:
        args: Parsed command-line arguments (uses config and verbose)
    """
    settings = load_settings(_config_arg(args))
    if args.verbose:
        configure_logging("INFO")
    else:
        configure_logging(os.getenv("DEBPLUG_LOG_LEVEL") or settings.log_level)

    manager = PluginManager(settings)
    try:
        yield manager
    finally:
        manager.shutdown()


def init_config_command(args: Any) -> int:
    """Write a commented default config file (--init-config)."""
    path = write_default_config(_config_arg(args))
    print(f"Wrote {path}")
    return 0
