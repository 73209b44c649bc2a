"""
Process Invocation.

Every external command the engine runs (dpkg, dpkg-deb, tar, bash hooks,
plugin query commands) goes through CommandRunner.

Key features:
- Argument vectors only, never shell strings
- Hard wall-clock timeout per call
- Captured stdout/stderr
- Injectable for tests
"""

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


class ProcessError(Exception):
    """Base exception for process invocation errors."""

    pass


class CommandNotFound(ProcessError):
    """Raised when the executable does not exist."""

    pass


@dataclass
class CommandResult:
    """
    Outcome of one command invocation.

    Attributes:
        argv: Argument vector that was executed
        returncode: Exit code (-1 when the process was killed on timeout)
        stdout: Captured standard output
        stderr: Captured standard error
        timed_out: True if the timeout fired
    """

    argv: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        """True if the command exited 0 within its timeout."""
        return self.returncode == 0 and not self.timed_out

    def error_text(self) -> str:
        """Best human-readable failure text."""
        if self.timed_out:
            return f"{self.argv[0]} timed out"
        return (self.stderr or self.stdout).strip() or f"exit code {self.returncode}"


class CommandRunner:
    """Runs commands as argument vectors with a timeout."""

    def run(
        self,
        argv: list[str],
        timeout: float,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        """
        Run a command and wait for it.

        Args:
            argv: Command and arguments
            timeout: Wall-clock limit in seconds
            cwd: Working directory
            env: Full environment (inherits the current one when None)

        Returns:
            CommandResult (timeouts are reported, not raised)

        Raises:
            CommandNotFound: If the executable is missing
            ProcessError: If the process cannot be started
        """
        if not argv:
            raise ProcessError("Empty command")

        argv = [str(a) for a in argv]
        logger.debug("exec %s (timeout=%ss)", argv, timeout)

        try:
            result = subprocess.run(
                argv,
                cwd=cwd,
                env=env,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except FileNotFoundError as e:
            raise CommandNotFound(f"{argv[0]} command not found") from e
        except subprocess.TimeoutExpired as e:
            return CommandResult(
                argv=argv,
                returncode=-1,
                stdout=_decode(e.stdout),
                stderr=_decode(e.stderr),
                timed_out=True,
            )
        except OSError as e:
            raise ProcessError(f"Failed to run {argv[0]}: {e}") from e

        return CommandResult(
            argv=argv,
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
        )


def _decode(data: bytes | str | None) -> str:
    # TimeoutExpired carries bytes even when text=True was requested
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data
