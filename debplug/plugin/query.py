"""
Plugin Query Commands.

Runs read-only helper commands that plugins install into the plugins bin
directory, for the web UI to poll.

Key features:
- Bare command names only, resolved inside the bin directory
- Denylist checked against the name and the symlink target
- Shell metacharacters rejected in arguments
- Clamped timeout
- Optional repair of truncated JSON output
"""

import json
import logging
import os
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from debplug.plugin.errors import InvalidRequest
from debplug.plugin.process import CommandRunner, ProcessError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
MIN_TIMEOUT = 0.1
MAX_TIMEOUT = 60.0

FORBIDDEN_COMMANDS = frozenset(
    {
        "mkdir", "rmdir", "rm", "mv", "cp", "touch", "truncate", "ln",
        "chmod", "chown", "chgrp", "chattr", "tar", "unzip", "gunzip",
        "gzip", "bzip2", "xz", "zip", "cpio", "sh", "bash", "zsh",
        "dash", "fish", "csh", "tcsh", "ksh", "python", "python2",
        "python3", "perl", "ruby", "node", "lua", "php", "awk", "gawk",
        "nawk", "mawk", "sed", "dd", "shred", "mkfs", "fdisk",
        "parted", "mount", "umount", "kill", "killall", "pkill",
        "reboot", "shutdown", "poweroff", "halt", "init", "insmod",
        "rmmod", "modprobe", "depmod", "nc", "netcat", "ncat",
        "socat", "curl", "wget", "su", "sudo", "chroot", "nohup",
        "setsid", "apt", "apt-get", "dpkg", "aptitude", "snap", "tee",
        "install", "rsync", "scp", "sftp", "ssh", "eval", "exec",
        "xargs", "at", "atq", "atrm", "crontab",
    }
)

_SHELL_META = re.compile(r"[;&|`$(){}\[\]<>\n\r]")

_ARRAY_FIXES = ("]", '"}]', "}]", '"]}')
_OBJECT_FIXES = ("}", '"}', '"}}', "}}")


@dataclass
class QueryResult:
    """
    Outcome of a query command.

    Attributes:
        success: True if the command exited 0 in time
        output: stdout on success, stderr (or stdout) on failure; parsed JSON
            when requested and possible
        exit_code: Process exit code
        duration_ms: Wall-clock duration
        timed_out: True if the timeout fired
    """

    success: bool
    output: Any
    exit_code: int
    duration_ms: int
    timed_out: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "output": self.output,
            "exit_code": self.exit_code,
            "duration_ms": self.duration_ms,
            "timed_out": self.timed_out,
        }


def clamp_timeout(timeout: float | None) -> float:
    if timeout is None:
        return DEFAULT_TIMEOUT
    return min(max(float(timeout), MIN_TIMEOUT), MAX_TIMEOUT)


def resolve_command(command: Any, bin_dir: Path) -> Path:
    """
    Validate a command name and locate it in the bin directory.

    Args:
        command: Bare command name
        bin_dir: Plugins bin directory

    Returns:
        Path of the command inside bin_dir

    Raises:
        InvalidRequest: If the name is a path, forbidden, missing, not
            executable, or links to a forbidden command
    """
    if not command or not isinstance(command, str):
        raise InvalidRequest("Command is required")
    if "/" in command or command != os.path.basename(command) or command in (".", ".."):
        raise InvalidRequest("Only command names allowed, not paths")
    if command in FORBIDDEN_COMMANDS:
        raise InvalidRequest(f"Command '{command}' is not allowed")

    path = bin_dir / command
    if not os.access(path, os.X_OK) or not path.is_file():
        raise InvalidRequest(f"Command not found or not executable: {command}")

    if path.is_symlink():
        try:
            target = path.resolve(strict=True).name
        except (OSError, RuntimeError) as e:
            raise InvalidRequest(f"Command '{command}' validation failed") from e
        if target in FORBIDDEN_COMMANDS:
            raise InvalidRequest(f"Command '{command}' links to forbidden command '{target}'")
    return path


def sanitize_args(args: list[Any] | None) -> list[str]:
    """
    Keep string arguments and reject shell metacharacters.

    Non-string entries are dropped.

    Raises:
        InvalidRequest: If an argument contains a shell metacharacter
    """
    clean = []
    for arg in args or []:
        if not isinstance(arg, str):
            continue
        if _SHELL_META.search(arg):
            raise InvalidRequest("Invalid characters in arguments")
        clean.append(arg)
    return clean


def try_parse_json(text: Any) -> Any:
    """
    Parse JSON output, closing brackets a truncated writer left open.

    Returns:
        Parsed value, or the input unchanged if it is not JSON
    """
    if not isinstance(text, str):
        return text
    trimmed = text.strip()
    if not trimmed:
        return text

    try:
        return json.loads(trimmed)
    except ValueError:
        pass

    if trimmed.startswith("["):
        fixes = _ARRAY_FIXES
    elif trimmed.startswith("{"):
        fixes = _OBJECT_FIXES
    else:
        return text

    for fix in fixes:
        try:
            return json.loads(trimmed + fix)
        except ValueError:
            continue
    return text


def execute_query(
    command: str,
    args: list[Any] | None,
    bin_dir: Path,
    runner: CommandRunner,
    timeout: float | None = DEFAULT_TIMEOUT,
    parse_json: bool = False,
) -> QueryResult:
    """
    Run a plugin query command.

    Args:
        command: Bare command name inside bin_dir
        args: Command arguments
        bin_dir: Plugins bin directory
        runner: Process runner
        timeout: Seconds, clamped to [0.1, 60]
        parse_json: Parse output as JSON

    Returns:
        QueryResult; command failures and timeouts are reported, not raised

    Raises:
        InvalidRequest: If the command or its arguments are rejected
    """
    path = resolve_command(command, bin_dir)
    argv = [str(path), *sanitize_args(args)]
    limit = clamp_timeout(timeout)

    started = time.monotonic()
    try:
        result = runner.run(argv, timeout=limit)
    except ProcessError as e:
        duration_ms = int((time.monotonic() - started) * 1000)
        return QueryResult(success=False, output=str(e), exit_code=1, duration_ms=duration_ms)
    duration_ms = int((time.monotonic() - started) * 1000)

    if result.timed_out:
        output = result.stdout or result.stderr or "Command timed out"
    elif result.returncode != 0:
        output = result.stderr or result.stdout or f"exit code {result.returncode}"
    else:
        output = result.stdout

    if parse_json and output:
        output = try_parse_json(output)

    logger.debug("query %s exited %s in %sms", command, result.returncode, duration_ms)
    return QueryResult(
        success=result.ok,
        output=output,
        exit_code=result.returncode if not result.timed_out else 1,
        duration_ms=duration_ms,
        timed_out=result.timed_out,
    )
