"""Bundling a staging directory into a .tar.gz archive and back"""

import gzip
import hashlib
import logging
import os
import shutil
import sys
import tarfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from sitepack.utils.tempdirs import make_temp_dir

from .errors import ManifestError, PreconditionError
from .manifest import MANIFEST_FILE_NAME, ArchiveManifest, parse_manifest

ARCHIVE_FILE_NAME = "archive.tar.gz"
ARCHIVE_SUFFIXES = (".tar.gz", ".tgz")
ARCHIVE_UMASK = 0o077  # archives may contain credentials and user data


@contextmanager
def scoped_umask(mask: int) -> Iterator[None]:
    """Set the process-wide umask for the duration of the block and always restore it"""
    previous = os.umask(mask)
    try:
        yield
    finally:
        os.umask(previous)


def archive_base_name(archive_path: Path) -> str:
    """'site_20240101.tar.gz' -> 'site_20240101'"""
    name = Path(archive_path).name
    for suffix in ARCHIVE_SUFFIXES:
        if name.endswith(suffix):
            return name[: -len(suffix)]
    return Path(name).stem


def destination_cleanup(destination: str) -> str:
    """Correct a user supplied destination so that it names a .tar.gz file"""
    if destination.endswith(".tar.gz"):
        return destination
    if destination.endswith(".tar"):
        return f"{destination}.gz"
    if destination.endswith("/"):
        return f"{destination}{ARCHIVE_FILE_NAME}"
    return f"{destination}/{ARCHIVE_FILE_NAME}"


class ArchivePacker:
    """Packs and unpacks archive containers"""

    def __init__(self, temp_base: Path | None = None):
        self.temp_base = temp_base
        self.logger = logging.getLogger("ArchivePacker")

    @staticmethod
    def _safe_extractall(tar: tarfile.TarFile, path: str):
        """Safely extract all members from a tar archive, preventing path traversal.

        Rejects members with absolute paths or '..' components that could write
        files outside the target directory.
        """
        target = Path(path).resolve()
        safe_members = []
        for member in tar.getmembers():
            if os.path.isabs(member.name) or ".." in Path(member.name).parts:
                raise PreconditionError(f"Tar member '{member.name}' would extract outside target directory")
            member_path = (target / member.name).resolve()
            if not str(member_path).startswith(str(target) + os.sep) and member_path != target:
                raise PreconditionError(f"Tar member '{member.name}' would extract outside target directory")
            safe_members.append(member)

        if sys.version_info >= (3, 12):
            tar.extractall(path, members=safe_members, filter="data")  # nosec B202
        else:
            tar.extractall(path, members=safe_members)  # noqa: S202  # nosec B202

    def pack(self, staging_root: Path, archive_path: Path | None = None, overwrite: bool = False) -> Path:
        """Add every file under staging_root to a tar, then gzip it

        Args:
            staging_root: Directory whose contents become the archive root
            archive_path: Target .tar.gz (defaults to archive.tar.gz beside the staging root)
            overwrite: Replace an existing archive file

        Returns:
            Path of the compressed archive
        """
        staging_root = Path(staging_root)
        archive_path = Path(archive_path) if archive_path else staging_root.parent / ARCHIVE_FILE_NAME

        if archive_path.exists() and not overwrite:
            raise PreconditionError(
                f'The destination file {archive_path} already exists. Use "--overwrite" option for overwriting an existing file.'
            )
        if archive_path.resolve().is_relative_to(staging_root.resolve()):
            raise PreconditionError(f"Archive file {archive_path} cannot be written inside the directory being archived")

        archive_path.parent.mkdir(parents=True, exist_ok=True)
        tar_path = archive_path.parent / f"{archive_base_name(archive_path)}.tar"
        partial_path = archive_path.parent / f".{archive_path.name}.partial"

        try:
            with scoped_umask(ARCHIVE_UMASK):
                self.logger.info("Creating archive...")
                with tarfile.open(tar_path, "w") as tar:
                    for entry in sorted(staging_root.iterdir()):
                        tar.add(entry, arcname=entry.name)

                self.logger.info("Compressing archive...")
                with open(tar_path, "rb") as f_in, gzip.open(partial_path, "wb") as f_out:
                    shutil.copyfileobj(f_in, f_out)

            tar_path.unlink()
            if archive_path.exists():
                archive_path.unlink()
            partial_path.rename(archive_path)
        except Exception:
            # Clean up partial archive on failure
            for partial in (tar_path, partial_path):
                if partial.exists():
                    partial.unlink()
            raise

        return archive_path

    def unpack(self, archive_path: Path, extract_root: Path | None = None) -> Path:
        """Extract an archive into a fresh temporary directory

        Returns:
            The directory holding the archive contents (MANIFEST.yml, code/, ...)
        """
        archive_path = Path(archive_path)
        if not archive_path.is_file():
            raise PreconditionError(f"File {archive_path} is not found.")
        if not archive_path.name.endswith(ARCHIVE_SUFFIXES):
            raise PreconditionError(f"File {archive_path} is not a *.tar.gz file.")

        self.logger.info("Extracting the archive...")
        base = extract_root if extract_root is not None else make_temp_dir("uncompressed", self.temp_base)
        extract_dir = Path(base) / archive_base_name(archive_path)
        extract_dir.mkdir(parents=True, exist_ok=True)

        try:
            with tarfile.open(archive_path, "r:gz") as tar:
                self._safe_extractall(tar, str(extract_dir))
        except (tarfile.TarError, OSError) as e:
            raise PreconditionError(f"Could not extract {archive_path}: {e}") from e

        self.logger.info(f"The archive successfully extracted into {extract_dir}")
        return extract_dir

    def read_manifest(self, archive_path: Path) -> ArchiveManifest:
        """Read MANIFEST.yml straight from the archive without extracting it"""
        archive_path = Path(archive_path)
        try:
            with tarfile.open(archive_path, "r:gz") as tar:
                try:
                    member = tar.extractfile(MANIFEST_FILE_NAME)
                except KeyError as e:
                    raise ManifestError(f"Archive {archive_path} has no {MANIFEST_FILE_NAME}") from e
                if member is None:
                    raise ManifestError(f"{MANIFEST_FILE_NAME} in {archive_path} is not a regular file")
                raw = member.read()
        except (tarfile.TarError, OSError) as e:
            raise PreconditionError(f"Could not read {archive_path}: {e}") from e

        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ManifestError(f"{MANIFEST_FILE_NAME} in {archive_path} is not valid UTF-8") from e

        return parse_manifest(text, f"{archive_path}:{MANIFEST_FILE_NAME}")

    @staticmethod
    def checksum(file_path: Path, algorithm: str = "sha256") -> str:
        """Calculate checksum of a file

        Args:
            file_path: Path to file
            algorithm: Hash algorithm (default: sha256)

        Returns:
            Hexadecimal checksum string
        """
        hash_obj = hashlib.new(algorithm)
        with open(file_path, "rb") as f:
            # Read in chunks to handle large files efficiently
            for chunk in iter(lambda: f.read(8192), b""):
                hash_obj.update(chunk)
        return hash_obj.hexdigest()
