"""Site layout: settings discovery, files location and local database wiring"""

import logging
import re
import shutil
from pathlib import Path
from typing import Any

import yaml

from .database import DatabaseSpec
from .errors import PreconditionError

DEFAULT_SETTINGS_DIR = "config"
SETTINGS_FILE_NAME = "settings.yml"
LOCAL_SETTINGS_FILE_NAME = "settings.local.yml"
DEFAULT_SETTINGS_TEMPLATE_NAME = "default.settings.yml"
DEFAULT_FILES_PATH = "files"

# Markers delimiting the machine-edited block in settings.local.yml
BLOCK_BEGIN = "# >>> Added by sitepack archive:restore. Do not edit between these markers. >>>"
BLOCK_END = "# <<< sitepack archive:restore <<<"
_BLOCK_RE = re.compile(re.escape(BLOCK_BEGIN) + r".*?" + re.escape(BLOCK_END) + r"\n?", re.DOTALL)

# Dependency manifests that mean "install dependencies after restoring the code"
DEPENDENCY_MANIFESTS = ("pyproject.toml", "requirements.txt", "package.json", "composer.json")


class SiteEnvironment:
    """A site root with its settings directory"""

    def __init__(self, root: Path, settings_dir: str = DEFAULT_SETTINGS_DIR, name: str | None = None):
        self.root = Path(root)
        self.settings_dir_name = settings_dir
        self.name = name or self.root.resolve().name
        self.logger = logging.getLogger("SiteEnvironment")

    def __repr__(self) -> str:
        return f"SiteEnvironment(root={str(self.root)!r}, settings_dir={self.settings_dir_name!r})"

    @property
    def settings_dir(self) -> Path:
        return self.root / self.settings_dir_name

    @property
    def settings_path(self) -> Path:
        return self.settings_dir / SETTINGS_FILE_NAME

    @property
    def local_settings_path(self) -> Path:
        return self.settings_dir / LOCAL_SETTINGS_FILE_NAME

    def is_site(self) -> bool:
        return self.settings_path.is_file()

    @classmethod
    def locate(cls, start: Path, settings_dir: str = DEFAULT_SETTINGS_DIR) -> "SiteEnvironment | None":
        """Walk up from start until a directory containing <settings_dir>/settings.yml is found"""
        current = Path(start).resolve()
        for candidate in [current, *current.parents]:
            site = cls(candidate, settings_dir)
            if site.is_site():
                return site
        return None

    @staticmethod
    def _load_yaml(file_path: Path) -> dict[str, Any]:
        """Load YAML settings file"""
        if not file_path.exists():
            return {}

        with open(file_path, encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise PreconditionError(f"Could not parse {file_path}: {e}") from e
        if not isinstance(data, dict):
            raise PreconditionError(f"Settings file {file_path} must contain a mapping")
        return data

    @staticmethod
    def _save_yaml(data: dict[str, Any], file_path: Path) -> None:
        with open(file_path, "w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def load_settings(self) -> dict[str, Any]:
        """Main settings merged with every included file (later files win, top-level keys)"""
        settings = self._load_yaml(self.settings_path)
        merged = dict(settings)
        for include in settings.get("include") or []:
            include_path = self.settings_dir / str(include)
            if include_path.is_file():
                merged.update(self._load_yaml(include_path))
            else:
                self.logger.debug(f"Included settings file not found: {include_path}")
        return merged

    def database_spec(self, key: str = "default") -> DatabaseSpec | None:
        """Connection configured for this site, or None"""
        databases = self.load_settings().get("databases") or {}
        data = databases.get(key) if isinstance(databases, dict) else None
        if not data:
            return None

        spec = DatabaseSpec.from_mapping(data)
        if spec.driver.startswith("sqlite") and not Path(spec.database).is_absolute():
            spec.database = str((self.root / spec.database).resolve())
        return spec

    def files_path(self) -> Path:
        """Absolute path of the site's user-data directory"""
        relative = self.load_settings().get("files_path") or DEFAULT_FILES_PATH
        path = Path(str(relative))
        return path if path.is_absolute() else self.root / path

    def dependency_manifests(self) -> list[Path]:
        return [self.root / name for name in DEPENDENCY_MANIFESTS if (self.root / name).is_file()]

    def ensure_settings_file(self) -> Path:
        """Create settings.yml from default.settings.yml (or minimal content) if missing"""
        self.settings_dir.mkdir(parents=True, exist_ok=True)
        if self.settings_path.is_file():
            return self.settings_path

        template = self.settings_dir / DEFAULT_SETTINGS_TEMPLATE_NAME
        if template.is_file():
            self.logger.info(f"Copying {template} to {self.settings_path}...")
            shutil.copy2(template, self.settings_path)
        else:
            self.logger.info(f"Creating {self.settings_path}...")
            self._save_yaml({"include": [LOCAL_SETTINGS_FILE_NAME]}, self.settings_path)
        return self.settings_path

    def ensure_local_settings_included(self) -> bool:
        """Make sure settings.yml includes settings.local.yml; returns True if the file changed"""
        settings = self._load_yaml(self.settings_path)
        includes = settings.get("include") or []
        if not isinstance(includes, list):
            includes = [includes]
        if LOCAL_SETTINGS_FILE_NAME in includes:
            return False

        self.logger.info(f"Updating {self.settings_path} to include {LOCAL_SETTINGS_FILE_NAME} file...")
        settings["include"] = [*includes, LOCAL_SETTINGS_FILE_NAME]
        self._save_yaml(settings, self.settings_path)
        return True

    @staticmethod
    def render_database_block(spec: DatabaseSpec) -> str:
        body = yaml.dump({"databases": {"default": spec.to_mapping()}}, default_flow_style=False, sort_keys=False)
        return f"{BLOCK_BEGIN}\n{body}{BLOCK_END}\n"

    def write_database_block(self, spec: DatabaseSpec) -> Path:
        """Insert or replace the delimited database block in settings.local.yml"""
        block = self.render_database_block(spec)
        path = self.local_settings_path

        if not path.is_file():
            self.logger.info(f"Creating {path} with database connection settings...")
            content = block
        else:
            existing = path.read_text(encoding="utf-8")
            if _BLOCK_RE.search(existing):
                self.logger.info(f"Updating database connection settings in {path}...")
                content = _BLOCK_RE.sub(lambda _match: block, existing, count=1)
            else:
                self.logger.info(f"Adding database connection settings to {path}...")
                separator = "" if not existing or existing.endswith("\n") else "\n"
                content = f"{existing}{separator}\n{block}"

        try:
            path.write_text(content, encoding="utf-8")
        except OSError as e:
            raise PreconditionError(f"Failed to create or update {path}: {e}") from e
        path.chmod(0o600)
        return path

    def wire_database_connection(self, spec: DatabaseSpec) -> Path:
        """Point the site at a database through settings.local.yml"""
        self.ensure_settings_file()
        self.ensure_local_settings_included()
        return self.write_database_block(spec)
