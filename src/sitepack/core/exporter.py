"""Materializing archive components into a staging directory"""

import logging
import os
import shutil
from pathlib import Path

from .database import DatabaseDriver
from .errors import ArchiveError, ExternalToolError, PreconditionError
from .manifest import COMPONENT_DATABASE
from .path_filter import PathFilter

SQL_DUMP_FILE_NAME = "database.sql"


class ComponentExporter:
    """Copies one component (code tree, files tree or database dump) into the staging root"""

    def __init__(self, staging_root: Path):
        self.staging_root = Path(staging_root)
        self.logger = logging.getLogger("ComponentExporter")
        self.files_copied = 0

    def export_tree(
        self,
        name: str,
        source: Path,
        path_filter: PathFilter,
        convert_symlinks: bool = False,
    ) -> Path:
        """Copy every entry of source kept by path_filter into <staging>/<name>

        Symlinks pointing inside source are kept as relative links, links pointing
        elsewhere (or every link when convert_symlinks is set) are replaced by copies
        of their targets. Entries below a dereferenced directory link go through
        path_filter under their path inside the component.

        Raises:
            PreconditionError: source does not exist or a directory link loops
            SafetyPolicyError: a kept settings file holds credentials
            ArchiveError: a file could not be read or written
        """
        source = Path(source)
        if not source.is_dir():
            raise PreconditionError(f"Path to {name} does not exist: {source}")

        destination = self.staging_root / name
        self.logger.info(f"Copying {name} files from {source} to {destination}...")
        resolved_source = source.resolve()

        try:
            destination.mkdir(parents=True, exist_ok=True)
            copied = self._copy_dir(
                source, destination, "", path_filter, resolved_source, convert_symlinks, frozenset([resolved_source])
            )
        except OSError as e:
            raise ArchiveError(f"Could not copy the {name} files from {source}: {e}") from e

        self.files_copied += copied
        self.logger.info(f"Copied {copied} {name} files ({len(path_filter.excluded)} paths excluded)")
        return destination

    def _copy_dir(
        self,
        directory: Path,
        target: Path,
        relative: str,
        path_filter: PathFilter,
        resolved_source: Path,
        convert_symlinks: bool,
        ancestors: frozenset[Path],
    ) -> int:
        """Copy the kept entries of one directory, returning the number of files written"""
        copied = 0
        with os.scandir(directory) as it:
            entries = sorted(it, key=lambda entry: entry.name)

        for entry in entries:
            entry_path = Path(entry.path)
            entry_relative = f"{relative}/{entry.name}" if relative else entry.name
            is_dir = entry.is_dir()
            # Excluded directories are pruned: nothing below them is visited
            if not path_filter.keep_relative(entry_relative, entry_path, is_dir=is_dir):
                continue

            entry_target = target / entry.name
            if entry.is_symlink():
                copied += self._copy_symlink(
                    entry_path, entry_target, entry_relative, path_filter, resolved_source, convert_symlinks, ancestors
                )
            elif is_dir:
                copied += self._copy_subdir(
                    entry_path, entry_target, entry_relative, path_filter, resolved_source, convert_symlinks, ancestors
                )
            else:
                shutil.copy2(entry_path, entry_target)
                copied += 1
        return copied

    def _copy_subdir(
        self,
        directory: Path,
        target: Path,
        relative: str,
        path_filter: PathFilter,
        resolved_source: Path,
        convert_symlinks: bool,
        ancestors: frozenset[Path],
    ) -> int:
        real = directory.resolve()
        if real in ancestors:
            raise PreconditionError(f"Symlink loop at {relative}: {directory} points back to {real}")

        target.mkdir()
        copied = self._copy_dir(
            directory, target, relative, path_filter, resolved_source, convert_symlinks, ancestors | {real}
        )
        # Directory modes are applied once the contents are written, a read-only source stays copyable
        shutil.copystat(directory, target)
        return copied

    def _copy_symlink(
        self,
        link: Path,
        target: Path,
        relative: str,
        path_filter: PathFilter,
        resolved_source: Path,
        convert_symlinks: bool,
        ancestors: frozenset[Path],
    ) -> int:
        """Recreate or dereference one symlink, returning the number of files written"""
        pointee = link.resolve()
        if not pointee.exists():
            self.logger.warning(f"Skipping broken symlink {link} -> {os.readlink(link)}")
            return 0

        inside = pointee == resolved_source or pointee.is_relative_to(resolved_source)
        if inside and not convert_symlinks:
            relative_target = os.path.relpath(pointee, link.parent.resolve())
            os.symlink(relative_target, target)
            return 1

        self.logger.debug(f"Converting symlink {link} -> {pointee}")
        if pointee.is_dir():
            return self._copy_subdir(
                pointee, target, relative, path_filter, resolved_source, convert_symlinks, ancestors
            )
        shutil.copy2(pointee, target)
        return 1

    def export_database(self, driver: DatabaseDriver) -> Path:
        """Dump the database into <staging>/database/database.sql

        Raises:
            ExternalToolError: The dump failed
        """
        self.logger.info("Creating database SQL dump file...")
        database_dir = self.staging_root / COMPONENT_DATABASE
        database_dir.mkdir(parents=True, exist_ok=True)
        dump_path = database_dir / SQL_DUMP_FILE_NAME

        try:
            driver.dump(dump_path)
        except ArchiveError as e:
            self.logger.debug(f"Database dump failed: {e}")
            raise ExternalToolError(
                f"Unable to dump database. Rerun with --debug to see any error message. ({e})",
                getattr(e, "result", None),
            ) from e

        return database_dir
