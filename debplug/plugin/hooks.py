"""
Plugin Lifecycle Hooks.

This module runs the shell functions a plugin ships in its `functions` file.

Key features:
- Hook discovery in the installed version directory
- Functions sourced in a bash subprocess; name and path passed as arguments
- Missing functions skipped silently on the lifecycle path
- Wall-clock timeout
- Denylist for the ad-hoc "run this function" path
"""

import logging
import os
import re
from enum import Enum
from pathlib import Path

from debplug.plugin.errors import HookFailure, InvalidRequest
from debplug.plugin.process import CommandResult, CommandRunner, ProcessError

logger = logging.getLogger(__name__)

FUNCTIONS_FILE = "functions"
DEFAULT_TIMEOUT = 600.0

# Lifecycle and platform-reserved functions; only the engine may call these
BLOCKED_FUNCTIONS = frozenset(
    {"install", "uninstall", "plugin_update", "mos_start", "mos_osupdate"}
)

_FUNCTION_NAME = re.compile(r"^[A-Za-z0-9_-]+$")

# $1 = functions file, $2 = function name
_RUN_IF_DEFINED = 'source "$1" && if declare -F "$2" >/dev/null; then "$2"; fi'
_RUN_OR_FAIL = (
    'source "$1" && if declare -F "$2" >/dev/null; then "$2"; '
    'else echo "Function not found" >&2; exit 127; fi'
)


class HookType(Enum):
    """Hook type enumeration."""

    INSTALL = "install"
    UNINSTALL = "uninstall"
    PLUGIN_UPDATE = "plugin_update"


def functions_path(version_dir: Path) -> Path:
    return version_dir / FUNCTIONS_FILE


def has_functions(version_dir: Path) -> bool:
    """
    Check if a version directory ships a functions file.

    Args:
        version_dir: Installed version directory

    Returns:
        True if the functions file exists
    """
    return functions_path(version_dir).is_file()


def validate_function_name(name: str) -> str:
    """
    Raises:
        InvalidRequest: If the name is empty or has characters outside [A-Za-z0-9_-]
    """
    if not name or not isinstance(name, str):
        raise InvalidRequest("Function name is required")
    if not _FUNCTION_NAME.match(name):
        raise InvalidRequest("Invalid function name")
    return name


class HookRunner:
    """Executes plugin shell functions."""

    def __init__(self, runner: CommandRunner, timeout: float = DEFAULT_TIMEOUT):
        """
        Initialize HookRunner.

        Args:
            runner: Process runner
            timeout: Timeout in seconds for each hook
        """
        self.runner = runner
        self.timeout = timeout

    def _invoke(self, version_dir: Path, function: str, script: str) -> CommandResult:
        env = os.environ.copy()
        env["PLUGIN_DIR"] = str(version_dir)
        env["PLUGIN_HOOK"] = function

        argv = ["bash", "-c", script, "debplug-hook", str(functions_path(version_dir)), function]
        try:
            result = self.runner.run(argv, timeout=self.timeout, cwd=version_dir, env=env)
        except ProcessError as e:
            raise HookFailure(f"Failed to execute {function}: {e}") from e

        if result.timed_out:
            raise HookFailure(f"{function} timed out after {self.timeout:g} seconds")
        if result.returncode != 0:
            raise HookFailure(
                f"{function} failed with exit code {result.returncode}:\n"
                f"stdout: {result.stdout}\n"
                f"stderr: {result.stderr}"
            )
        return result

    def run_hook(self, version_dir: Path, hook_type: HookType) -> bool:
        """
        Run a lifecycle hook if the plugin defines it.

        Args:
            version_dir: Installed version directory
            hook_type: Hook to run

        Returns:
            False if there is no functions file, True otherwise

        Raises:
            HookFailure: If the hook exits non-zero or times out
        """
        if not has_functions(version_dir):
            return False

        logger.info("running %s hook in %s", hook_type.value, version_dir)
        self._invoke(version_dir, hook_type.value, _RUN_IF_DEFINED)
        return True

    def execute_function(self, version_dir: Path, function_name: str) -> CommandResult:
        """
        Run an arbitrary plugin function on request.

        Lifecycle and reserved names are refused here.

        Raises:
            InvalidRequest: If the name is invalid or blocked
            HookFailure: If there is no functions file, the function is
                undefined, fails or times out
        """
        validate_function_name(function_name)
        if function_name in BLOCKED_FUNCTIONS:
            raise InvalidRequest(f"Function '{function_name}' is not allowed to be executed")
        if not has_functions(version_dir):
            raise HookFailure(f"No functions file found in {version_dir}")

        return self._invoke(version_dir, function_name, _RUN_OR_FAIL)
