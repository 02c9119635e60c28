"""Exception hierarchy for archive dump and restore"""

from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sitepack.utils.process import ProcessResult


class ArchiveError(Exception):
    """Base class for every error raised while dumping or restoring an archive"""


class PreconditionError(ArchiveError):
    """A requirement was not met before the operation started (missing source, existing target, ...)"""


class ExternalToolError(ArchiveError):
    """An external program (rsync, mysqldump, psql, ...) failed or could not be run"""

    def __init__(self, message: str, result: "ProcessResult | None" = None):
        super().__init__(message)
        self.result = result


class SafetyPolicyError(ArchiveError):
    """A file that must not be archived was found (e.g. settings with live credentials)"""

    def __init__(self, message: str, path: str | Path):
        super().__init__(message)
        self.path = str(path)


class ManifestError(ArchiveError):
    """The archive manifest is missing, malformed or of an unsupported version"""


class UserAbortError(ArchiveError):
    """The operator declined a confirmation prompt"""

    def __init__(self, message: str = "Cancelled by user"):
        super().__init__(message)
