"""One-way directory mirroring through rsync"""

import logging
from collections.abc import Callable
from pathlib import Path

from sitepack.core.errors import PreconditionError, UserAbortError
from sitepack.utils.process import ProcessResult, require_program, run_process

RSYNC_TIMEOUT = 7200  # 2 hours for large file trees


class FileSyncer:
    """Mirrors a source directory into a destination, deleting destination-only files"""

    def __init__(
        self,
        confirm: Callable[[str], bool],
        verbose: bool = False,
        timeout: int = RSYNC_TIMEOUT,
    ):
        self.confirm = confirm
        self.verbose = verbose
        self.timeout = timeout
        self.logger = logging.getLogger("FileSyncer")

    def check_available(self) -> str:
        """Path of the rsync executable, ExternalToolError when it is not installed"""
        return require_program("rsync")

    def build_command(self, source: Path, destination: Path) -> list[str]:
        # Trailing slashes make rsync copy the directory contents, not the directory itself
        cmd = ["rsync", "-a", "--delete"]
        if self.verbose:
            cmd.extend(["-v", "--stats"])
        cmd.extend([f"{str(source).rstrip('/')}/", f"{str(destination).rstrip('/')}/"])
        return cmd

    def mirror(self, source: Path, destination: Path) -> ProcessResult:
        """Mirror source into destination

        Raises:
            UserAbortError: The operator declined the sync
            PreconditionError: The source directory does not exist
            ExternalToolError: rsync failed (message carries its stderr)
        """
        if not self.confirm(f'Are you sure you want to sync files from "{source}/" to "{destination}/"?'):
            raise UserAbortError()

        if not source.is_dir():
            raise PreconditionError(f"The source directory {source} not found.")

        destination.mkdir(parents=True, exist_ok=True)
        self.logger.info(f'Copying files from "{source}" to "{destination}"...')

        result = run_process(self.build_command(source, destination), timeout=self.timeout)
        result.raise_for_status(f"Failed to copy files from {source} to {destination}")

        if self.verbose and result.stdout:
            self.logger.info(result.stdout.strip())
        return result
