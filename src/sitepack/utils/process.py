"""Thin wrapper around subprocess returning structured results"""

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from sitepack.core.errors import ExternalToolError

logger = logging.getLogger("Process")


@dataclass
class ProcessResult:
    """Outcome of a finished child process"""

    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def command(self) -> str:
        return " ".join(self.args)

    def raise_for_status(self, message: str) -> "ProcessResult":
        """Raise ExternalToolError with the captured stderr unless the process succeeded"""
        if not self.ok:
            detail = self.stderr.strip() or self.stdout.strip() or f"exit code {self.returncode}"
            raise ExternalToolError(f"{message}: {detail}", result=self)
        return self


def require_program(name: str) -> str:
    """Return the full path of an executable or raise if it is not installed"""
    path = shutil.which(name)
    if not path:
        raise ExternalToolError(f'"{name}" program not found')
    return path


def run_process(
    args: list[str],
    stdin_path: Path | None = None,
    stdout_path: Path | None = None,
    env: dict[str, str] | None = None,
    timeout: int | None = None,
    cwd: Path | None = None,
) -> ProcessResult:
    """Run a command synchronously and capture its output

    Args:
        args: Command and arguments (never passed through a shell)
        stdin_path: File fed to the process on stdin
        stdout_path: File receiving stdout instead of capturing it
        env: Extra environment variables merged over os.environ
        timeout: Seconds before the process is killed
        cwd: Working directory

    Returns:
        ProcessResult with exit code, stdout (empty if redirected) and stderr
    """
    full_env = None
    if env:
        full_env = os.environ.copy()
        full_env.update(env)

    logger.debug(f"Running: {' '.join(args)}")

    stdin_handle = open(stdin_path, "rb") if stdin_path else None
    stdout_handle = open(stdout_path, "wb") if stdout_path else None
    try:
        completed = subprocess.run(
            args,
            stdin=stdin_handle if stdin_handle else subprocess.DEVNULL,
            stdout=stdout_handle if stdout_handle else subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=full_env,
            cwd=str(cwd) if cwd else None,
            timeout=timeout,
        )
    except FileNotFoundError as e:
        raise ExternalToolError(f'"{args[0]}" program not found') from e
    except subprocess.TimeoutExpired as e:
        raise ExternalToolError(f"{args[0]} timed out after {timeout} seconds") from e
    finally:
        if stdin_handle:
            stdin_handle.close()
        if stdout_handle:
            stdout_handle.close()

    result = ProcessResult(
        args=list(args),
        returncode=completed.returncode,
        stdout=completed.stdout.decode("utf-8", errors="replace") if completed.stdout else "",
        stderr=completed.stderr.decode("utf-8", errors="replace") if completed.stderr else "",
    )
    if not result.ok:
        logger.debug(f"{args[0]} exited with {result.returncode}: {result.stderr.strip()}")
    return result
