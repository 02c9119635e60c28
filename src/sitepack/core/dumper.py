"""Archive dump: stage the selected components, write the manifest and pack"""

import logging
import os
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from sitepack.utils.tempdirs import make_temp_dir, remove_temp_dir

from .config_manager import ConfigManager
from .database import DatabaseDriver, DatabaseSpec, get_driver
from .errors import ArchiveError, PreconditionError
from .exporter import ComponentExporter
from .manifest import COMPONENT_CODE, COMPONENT_DATABASE, COMPONENT_FILES, create_manifest, write_manifest
from .packer import ArchivePacker, destination_cleanup
from .path_filter import PathFilter
from .site import SiteEnvironment

DISK_SPACE_SAFETY_MARGIN = 1.2  # 20% on top of the estimated archive size
STAGING_ARCHIVE_DIR = "archive"


@dataclass
class DumpOptions:
    code: bool = False
    files: bool = False
    database: bool = False
    destination: str | None = None
    overwrite: bool = False
    description: str | None = None
    tags: str | None = None
    generator: str | None = None
    generator_version: str | None = None
    exclude_code_paths: list[str] = field(default_factory=list)
    extra_dump: str | None = None
    convert_symlinks: bool = False
    db_url: str | None = None

    @property
    def components(self) -> dict[str, bool]:
        return {COMPONENT_CODE: self.code, COMPONENT_FILES: self.files, COMPONENT_DATABASE: self.database}


class ArchiveDumper:
    """Creates an archive of a site's code, files and database"""

    def __init__(self, config: ConfigManager, packer: ArchivePacker | None = None):
        self.config = config
        storage = self.config.get_storage_paths()
        local_path = storage.get("local")
        assert local_path is not None, "Local storage path must be configured"
        self.local_path: Path = local_path
        self.temp_path: Path | None = storage.get("temp")
        self.packer = packer or ArchivePacker(self.temp_path)
        self.logger = logging.getLogger("ArchiveDumper")

    def resolve_destination(self, site: SiteEnvironment, destination: str | None) -> Path:
        """Absolute archive path: the cleaned-up destination or a timestamped file under storage"""
        if destination:
            return Path(destination_cleanup(str(Path(destination).expanduser()))).absolute()

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return (self.local_path / "archives" / f"{site.name}_{timestamp}.tar.gz").absolute()

    def resolve_database(self, site: SiteEnvironment, db_url: str | None) -> DatabaseSpec:
        """Connection to dump: --db-url, else the site registry, else the site's settings"""
        if db_url:
            return DatabaseSpec.from_url(db_url)

        registered_name = self.config.find_site_by_path(site.root)
        if registered_name:
            registered = self.config.get_site_database(registered_name)
            if registered is not None:
                self.logger.debug(f"Using database registered for site '{registered_name}'")
                return registered

        spec = site.database_spec()
        if spec is None:
            raise PreconditionError(
                f"No database connection found for site {site.root}. "
                f'Define "databases.default" in {site.settings_path} or use the "--db-url" option.'
            )
        return spec

    def _check_disk_space(self, path: Path, required_bytes: int, safety_margin: float = DISK_SPACE_SAFETY_MARGIN) -> tuple[bool, str]:
        """Check if sufficient disk space is available

        Args:
            path: Path to check disk space for
            required_bytes: Required space in bytes
            safety_margin: Multiply required space by this factor for safety (default: 1.2 = 20% margin)

        Returns:
            Tuple of (success, message)
        """
        try:
            stat = os.statvfs(path)
        except OSError as e:
            self.logger.warning(f"Could not check disk space: {e}")
            return True, "Disk space check skipped (error occurred)"

        available_bytes = stat.f_bavail * stat.f_frsize
        required_with_margin = required_bytes * safety_margin

        if available_bytes < required_with_margin:
            available_gb = available_bytes / (1024**3)
            required_gb = required_with_margin / (1024**3)
            return (
                False,
                f"Insufficient disk space: {available_gb:.2f} GB available, {required_gb:.2f} GB required (with {int((safety_margin - 1) * 100)}% safety margin)",
            )

        return True, f"Sufficient disk space available ({available_bytes / (1024**3):.2f} GB)"

    def _estimate_size(self, paths: list[Path]) -> int:
        """Estimate the size of the trees going into the archive"""
        total_size = 0
        for root_path in paths:
            if not root_path.is_dir():
                continue
            for dirpath, _dirnames, filenames in os.walk(root_path):
                for filename in filenames:
                    try:
                        total_size += (Path(dirpath) / filename).lstat().st_size
                    except OSError as e:
                        self.logger.debug(f"Skipping {filename} in size estimate: {e}")
        return total_size

    def dump(self, site: SiteEnvironment, options: DumpOptions) -> Path:
        """Create the archive

        Args:
            site: Site whose components are archived
            options: Component selection and archive metadata

        Returns:
            Absolute path of the archive file

        Raises:
            PreconditionError: Nothing selected, destination exists, no database, low disk space
            SafetyPolicyError: A settings file in the code holds database credentials
            ExternalToolError: The database dump failed
        """
        if not any(options.components.values()):
            raise PreconditionError("At least one component (code, files or database) must be selected")

        destination = self.resolve_destination(site, options.destination)
        if destination.exists() and not options.overwrite:
            raise PreconditionError(
                f'The destination file {destination} already exists. Use "--overwrite" option for overwriting an existing file.'
            )

        code_root = site.root
        files_root = site.files_path()
        if options.code and not code_root.is_dir():
            raise PreconditionError(f"Path to code does not exist: {code_root}")
        if options.files and not files_root.is_dir():
            raise PreconditionError(f"Path to files does not exist: {files_root}")

        driver: DatabaseDriver | None = None
        if options.database:
            spec = self.resolve_database(site, options.db_url)
            driver = get_driver(spec, timeouts=self.config.get_timeouts(), extra_dump=options.extra_dump)

        estimate_paths = ([code_root] if options.code else []) + ([files_root] if options.files else [])
        staging_dir = make_temp_dir("archives", self.temp_path)
        space_ok, space_msg = self._check_disk_space(staging_dir, self._estimate_size(estimate_paths))
        if not space_ok:
            remove_temp_dir(staging_dir)
            raise PreconditionError(space_msg)
        self.logger.debug(f"Disk space check passed: {space_msg}")

        self.logger.info(f"Creating archive of site '{site.name}' ({site.root}) in {destination}")
        try:
            archive_root = staging_dir / STAGING_ARCHIVE_DIR
            archive_root.mkdir()
            exporter = ComponentExporter(archive_root)

            if options.code:
                path_filter = PathFilter.for_code(
                    code_root,
                    extra_patterns=options.exclude_code_paths,
                    exclude_dirs=self.config.get_setting("archive.code_exclude_dirs"),
                    excluded_paths=[files_root, staging_dir, destination],
                )
                exporter.export_tree(COMPONENT_CODE, code_root, path_filter, options.convert_symlinks)

            if options.files:
                path_filter = PathFilter.for_files(files_root, self.config.get_setting("archive.files_exclude"))
                exporter.export_tree(COMPONENT_FILES, files_root, path_filter, options.convert_symlinks)

            if driver is not None:
                exporter.export_database(driver)

            manifest = create_manifest(
                options.components,
                description=options.description,
                tags=options.tags,
                generator=options.generator or self.config.get_setting("archive.generator"),
                generator_version=options.generator_version,
            )
            write_manifest(archive_root, manifest)

            packed = self.packer.pack(archive_root)

            try:
                destination.parent.mkdir(parents=True, exist_ok=True)
                if destination.exists():
                    destination.unlink()
                shutil.move(str(packed), str(destination))
            except OSError as e:
                raise ArchiveError(f"Could not move the archive to {destination}: {e}") from e
        finally:
            remove_temp_dir(staging_dir)

        self.logger.info(f"Archive saved to {destination}")
        return destination
