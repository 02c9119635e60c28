"""Archive restore: code, files and database into a destination site"""

import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from sitepack.utils.sync import RSYNC_TIMEOUT, FileSyncer
from sitepack.utils.tempdirs import remove_temp_dir

from .config_manager import ConfigManager
from .database import DatabaseSpec, get_driver
from .errors import ArchiveError, ExternalToolError, PreconditionError, UserAbortError
from .exporter import SQL_DUMP_FILE_NAME
from .manifest import (
    COMPONENT_CODE,
    COMPONENT_DATABASE,
    COMPONENT_FILES,
    COMPONENTS,
    ArchiveManifest,
    has_manifest,
    read_manifest,
)
from .packer import ArchivePacker, archive_base_name
from .site import DEFAULT_SETTINGS_DIR, SiteEnvironment


@dataclass
class RestoreOptions:
    code: bool = False
    files: bool = False
    database: bool = False
    code_source_path: Path | None = None
    files_source_path: Path | None = None
    db_source_path: Path | None = None
    destination_path: Path | None = None
    overwrite: bool = False
    settings_dir: str = DEFAULT_SETTINGS_DIR
    setup_database_connection: bool = True
    files_destination_relative_path: str | None = None
    db_url: str | None = None
    db_driver: str = "mysql"
    db_host: str | None = None
    db_port: int | None = None
    db_name: str | None = None
    db_user: str | None = None
    db_password: str | None = None
    db_prefix: str | None = None

    def requested(self) -> dict[str, bool]:
        return {COMPONENT_CODE: self.code, COMPONENT_FILES: self.files, COMPONENT_DATABASE: self.database}

    def source_path(self, component: str) -> Path | None:
        return {
            COMPONENT_CODE: self.code_source_path,
            COMPONENT_FILES: self.files_source_path,
            COMPONENT_DATABASE: self.db_source_path,
        }[component]

    def explicit_database(self) -> DatabaseSpec | None:
        """Connection given on the command line (--db-url, or --db-name with the other --db-* options)"""
        if self.db_url:
            return DatabaseSpec.from_url(self.db_url, prefix=self.db_prefix)
        if self.db_name:
            return DatabaseSpec(
                driver=self.db_driver,
                database=self.db_name,
                host=self.db_host,
                port=self.db_port,
                username=self.db_user,
                password=self.db_password,
                prefix=self.db_prefix,
            )
        return None


@dataclass
class RestorePlan:
    """Everything resolved and validated before the first change on disk"""

    destination: Path
    sources: dict[str, Path]
    manifest: ArchiveManifest | None
    database: DatabaseSpec | None = None
    explicit_database: bool = False


class ArchiveRestorer:
    """Restores an archive (or component sources) into a destination site"""

    def __init__(
        self,
        config: ConfigManager,
        confirm: Callable[[str], bool],
        packer: ArchivePacker | None = None,
        syncer: FileSyncer | None = None,
        verbose: bool = False,
    ):
        self.config = config
        self.confirm = confirm
        self.packer = packer or ArchivePacker(config.get_storage_paths().get("temp"))
        timeout = config.get_timeouts().get("rsync", RSYNC_TIMEOUT)
        self.syncer = syncer or FileSyncer(confirm, verbose=verbose, timeout=timeout)
        self.logger = logging.getLogger("ArchiveRestorer")

    def restore(self, path: Path | None, options: RestoreOptions, active_site: SiteEnvironment | None = None) -> Path:
        """Restore the requested components

        Args:
            path: Archive file or directory holding code/, files/ and database/
            options: Component selection, sources and database connection
            active_site: Site the command runs in, used as the default destination

        Returns:
            Absolute destination path

        Raises:
            PreconditionError: A source is missing or the destination is populated without --overwrite
            UserAbortError: The operator declined a confirmation
            ExternalToolError: rsync or a database client failed
        """
        extract_dir: Path | None = None
        try:
            source_root = None
            if path is not None:
                path = Path(path)
                if path.is_dir():
                    source_root = path
                else:
                    source_root = self.packer.unpack(path)
                    extract_dir = source_root.parent

            plan = self.plan(path, source_root, options, active_site)
            self._prepare_destination(plan, options)

            if COMPONENT_CODE in plan.sources:
                self.import_code(plan.sources[COMPONENT_CODE], plan.destination)
            if COMPONENT_FILES in plan.sources:
                self.import_files(plan.sources[COMPONENT_FILES], plan.destination, options)
            if COMPONENT_DATABASE in plan.sources:
                self.import_database(plan.sources[COMPONENT_DATABASE], plan, options)
        finally:
            if extract_dir is not None:
                remove_temp_dir(extract_dir)

        self.logger.info("Done!")
        return plan.destination

    def plan(
        self,
        path: Path | None,
        source_root: Path | None,
        options: RestoreOptions,
        active_site: SiteEnvironment | None,
    ) -> RestorePlan:
        """Resolve components, sources, destination and database without touching anything"""
        manifest = read_manifest(source_root) if source_root is not None and has_manifest(source_root) else None

        requested = options.requested()
        explicit = any(requested.values())
        if not explicit:
            if manifest is not None:
                requested = {name: manifest.includes(name) for name in COMPONENTS}
            elif source_root is None and any(options.source_path(name) for name in COMPONENTS):
                requested = {name: options.source_path(name) is not None for name in COMPONENTS}
            else:
                requested = {name: True for name in COMPONENTS}

        sources: dict[str, Path] = {}
        for component in COMPONENTS:
            if not requested[component]:
                continue
            source = options.source_path(component)
            if source is None:
                if source_root is None:
                    option = "db" if component == COMPONENT_DATABASE else component
                    raise PreconditionError(
                        f'Missing either "path" input or "--{option}-source-path" option for the {component} component.'
                    )
                if explicit and manifest is not None and not manifest.includes(component):
                    raise PreconditionError(f"The archive does not contain the {component} component.")
                source = source_root / component
                if component == COMPONENT_DATABASE:
                    source = source / SQL_DUMP_FILE_NAME
            sources[component] = Path(source)

        if not sources:
            raise PreconditionError("Nothing to restore: the archive manifest lists no components")

        destination = self.resolve_destination(path, options, active_site)

        # Pre-flight: every source and tool is checked before the first change
        for component, source in sources.items():
            if component == COMPONENT_DATABASE:
                if not source.is_file():
                    raise PreconditionError(f"Database dump file {source} not found.")
            elif not source.is_dir():
                raise PreconditionError(f"The source directory {source} not found for {component}.")

        # The code restore replaces the whole destination, the files restore mirrors over its target
        if COMPONENT_CODE in sources:
            for component, source in sources.items():
                self._check_source_outside(component, source, destination)
        elif COMPONENT_FILES in sources:
            self._check_source_outside(
                COMPONENT_FILES, sources[COMPONENT_FILES], self.files_destination(destination, options)
            )

        if COMPONENT_CODE in sources and self._is_populated(destination) and not options.overwrite:
            raise PreconditionError(f'Destination path {destination} already exists (use "--overwrite" option).')

        if COMPONENT_CODE in sources or COMPONENT_FILES in sources:
            try:
                self.syncer.check_available()
            except ExternalToolError as e:
                raise PreconditionError(f"Could not restore the code or the files: {e}") from e

        plan = RestorePlan(destination=destination, sources=sources, manifest=manifest)
        if COMPONENT_DATABASE in sources:
            plan.database = options.explicit_database()
            plan.explicit_database = plan.database is not None
            if plan.database is None:
                plan.database = SiteEnvironment(destination, options.settings_dir).database_spec()
            if plan.database is None:
                raise PreconditionError(
                    f"Database connection settings are required: no connection is configured for {destination}, "
                    'use "--db-url" or "--db-name" with the other "--db-*" options.'
                )
            # Resolves the driver and validates the connection parameters
            get_driver(plan.database, timeouts=self.config.get_timeouts())

        return plan

    @staticmethod
    def resolve_destination(path: Path | None, options: RestoreOptions, active_site: SiteEnvironment | None) -> Path:
        if options.destination_path:
            return Path(options.destination_path).expanduser().absolute()
        if active_site is not None:
            return active_site.root.absolute()
        if path is None:
            raise PreconditionError('Cannot determine the destination: use the "--destination-path" option.')
        return Path.cwd() / archive_base_name(path)

    @staticmethod
    def _check_source_outside(component: str, source: Path, target: Path) -> None:
        """Refuse a source that the restore would delete or overwrite before reading it"""
        resolved_source = source.resolve()
        resolved_target = target.resolve()
        if resolved_source == resolved_target or resolved_source.is_relative_to(resolved_target):
            raise PreconditionError(
                f"The {component} source {source} is inside the destination path {target}. "
                'Use the "--destination-path" option to restore into another directory.'
            )

    @staticmethod
    def _is_populated(path: Path) -> bool:
        return path.is_dir() and any(path.iterdir())

    def _prepare_destination(self, plan: RestorePlan, options: RestoreOptions) -> None:
        destination = plan.destination
        if COMPONENT_CODE in plan.sources and self._is_populated(destination):
            if not self.confirm(
                f"Destination path {destination} already exists. "
                f"Are you sure you want to delete {destination} directory before restoring the archive into it?"
            ):
                raise UserAbortError()
            self.logger.info(f"Removing {destination}...")
            try:
                shutil.rmtree(destination)
            except OSError as e:
                raise ArchiveError(f'Failed removing destination directory "{destination}": {e}') from e

        try:
            destination.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PreconditionError(f'Failed creating destination directory "{destination}": {e}') from e

    def import_code(self, source: Path, destination: Path) -> None:
        self.logger.info("Importing code...")
        self.syncer.mirror(source, destination)

        for manifest_path in SiteEnvironment(destination).dependency_manifests():
            self.logger.warning(f"{manifest_path.name} is found ({manifest_path}), install the project dependencies.")

    def files_destination(self, destination: Path, options: RestoreOptions) -> Path:
        """--files-destination-relative-path, else files_path from the destination's settings"""
        if options.files_destination_relative_path:
            return destination / options.files_destination_relative_path
        return SiteEnvironment(destination, options.settings_dir).files_path()

    def import_files(self, source: Path, destination: Path, options: RestoreOptions) -> None:
        self.logger.info("Importing files...")
        files_destination = self.files_destination(destination, options)

        overwrote_code = options.code and options.overwrite
        if files_destination.is_dir() and not overwrote_code:
            if not self.confirm(
                f"Destination files path {files_destination} already exists. "
                "Are you sure you want restore files archive into it?"
            ):
                raise UserAbortError()

        self.syncer.mirror(source, files_destination)

    def import_database(self, dump_path: Path, plan: RestorePlan, options: RestoreOptions) -> None:
        """Drop and recreate the database, import the dump, then wire local settings"""
        self.logger.info("Importing database...")
        spec = plan.database
        assert spec is not None, "Database connection must be resolved by plan()"
        driver = get_driver(spec, timeouts=self.config.get_timeouts())

        if driver.exists():
            if not self.confirm(
                f"Are you sure you want to drop the {spec.masked()} and import the database dump \"{dump_path}\"?"
            ):
                raise UserAbortError()

        driver.recreate()
        driver.import_file(dump_path)
        self.logger.info(f"Database {spec.database} imported from {dump_path}")

        if plan.explicit_database and options.setup_database_connection:
            site = SiteEnvironment(plan.destination, options.settings_dir)
            try:
                site.wire_database_connection(spec)
            except OSError as e:
                raise ArchiveError(f"Failed writing the database connection into {site.local_settings_path}: {e}") from e
