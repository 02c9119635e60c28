"""Configuration Manager for Sitepack"""

import logging
import os
from pathlib import Path
from typing import Any, cast

import yaml
from cryptography.fernet import Fernet, InvalidToken

from .database import DatabaseSpec
from .errors import PreconditionError

CONFIG_DIR_ENV = "SITEPACK_CONFIG_DIR"
DEFAULT_CONFIG_DIR = Path.home() / ".config" / "sitepack"
DEFAULT_LOCAL_BASE = Path.home() / "backups" / "sitepack"
ENCRYPTED_PREFIX = "enc:"


class ConfigManager:
    """Tool settings and the registry of known sites"""

    def __init__(self, config_dir: str | Path | None = None):
        self.config_dir = Path(config_dir or os.environ.get(CONFIG_DIR_ENV) or DEFAULT_CONFIG_DIR)
        self.settings_file = self.config_dir / "settings.yaml"
        self.sites_file = self.config_dir / "sites.yaml"
        self.key_file = self.config_dir / ".encryption_key"
        self.logger = logging.getLogger("ConfigManager")
        self._cipher: Fernet | None = None

        # Missing files mean defaults
        self.settings = self._load_yaml(self.settings_file)
        self.sites = self._load_yaml(self.sites_file)

        # Encrypt plain passwords found in the site registry
        self._encrypt_passwords()

    @property
    def cipher(self) -> Fernet:
        """Fernet cipher, creating the key file on first use"""
        if self._cipher is None:
            self._cipher = self._init_encryption()
        return self._cipher

    def _init_encryption(self) -> Fernet:
        """Initialize encryption for sensitive data"""
        if self.key_file.exists():
            # Ensure correct permissions on existing key file
            current_mode = os.stat(self.key_file).st_mode & 0o777
            if current_mode != 0o600:
                os.chmod(self.key_file, 0o600)
            with open(self.key_file, "rb") as f:
                return Fernet(f.read())

        self.config_dir.mkdir(parents=True, exist_ok=True)
        key = Fernet.generate_key()
        fd = os.open(str(self.key_file), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        try:
            os.write(fd, key)
        finally:
            os.close(fd)
        self.logger.info(f"Created encryption key {self.key_file}")
        return Fernet(key)

    def _load_yaml(self, file_path: Path) -> dict[str, Any]:
        """Load YAML configuration file"""
        if not file_path.exists():
            return {}

        with open(file_path, encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise PreconditionError(f"Could not parse configuration file {file_path}: {e}") from e
        if not isinstance(data, dict):
            raise PreconditionError(f"Configuration file {file_path} must contain a mapping")
        return data

    def _save_yaml(self, data: dict[str, Any], file_path: Path) -> None:
        """Save configuration to YAML file"""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        with open(file_path, "w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
        os.chmod(file_path, 0o600)

    def _encrypt_passwords(self) -> None:
        """Encrypt site database passwords if not already encrypted"""
        modified = False

        for _site_name, site_config in self.sites.get("sites", {}).items():
            database = (site_config or {}).get("database") or {}
            password = database.get("password")

            if password and not str(password).startswith(ENCRYPTED_PREFIX):
                database["password"] = f"{ENCRYPTED_PREFIX}{self.encrypt_value(str(password))}"
                modified = True

        if modified:
            self._save_yaml(self.sites, self.sites_file)

    def encrypt_value(self, value: str) -> str:
        """Encrypt a string value"""
        return self.cipher.encrypt(value.encode()).decode()

    def decrypt_value(self, encrypted: str) -> str:
        """Decrypt an encrypted value"""
        if encrypted.startswith(ENCRYPTED_PREFIX):
            encrypted = encrypted[len(ENCRYPTED_PREFIX) :]
        try:
            return self.cipher.decrypt(encrypted.encode()).decode()
        except InvalidToken as e:
            raise PreconditionError(f"Could not decrypt a stored password with the key in {self.key_file}") from e

    def get_setting(self, key: str, default: Any = None) -> Any:
        """Get a setting value with optional default

        Args:
            key: Setting key (supports nested keys with dot notation, e.g., 'storage.local_base')
            default: Default value if setting not found

        Returns:
            Setting value or default
        """
        keys = key.split(".")
        value: Any = self.settings

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
                if value is None:
                    return default
            else:
                return default

        return value if value is not None else default

    def get_storage_paths(self) -> dict[str, Path | None]:
        """Get storage paths from settings

        Returns:
            Dict with 'local' (always set) and 'temp' (None means the system temp directory)
        """
        storage = self.settings.get("storage", {}) or {}
        temp_dir = storage.get("temp_dir")
        return {
            "local": Path(storage.get("local_base") or DEFAULT_LOCAL_BASE).expanduser(),
            "temp": Path(temp_dir).expanduser() if temp_dir else None,
        }

    def get_timeouts(self) -> dict[str, int]:
        return {str(k): int(v) for k, v in (self.get_setting("timeouts", {}) or {}).items()}

    def get_site(self, name: str) -> dict[str, Any] | None:
        """Get site configuration by name (password left encrypted)"""
        result = self.sites.get("sites", {}).get(name)
        return cast("dict[str, Any] | None", result)

    def get_all_sites(self) -> dict[str, Any]:
        """Get all site configurations"""
        return cast("dict[str, Any]", self.sites.get("sites", {}))

    def find_site_by_path(self, path: str | Path) -> str | None:
        """Name of the registered site rooted at path, if any"""
        resolved = Path(path).expanduser().resolve()
        for name, site in self.get_all_sites().items():
            if site and site.get("path") and Path(site["path"]).resolve() == resolved:
                return str(name)
        return None

    def get_site_database(self, name: str) -> DatabaseSpec | None:
        """Database registered for a site, with the password decrypted"""
        site = self.get_site(name)
        if not site or not site.get("database"):
            return None

        db_config = dict(site["database"])
        password = db_config.get("password")
        if password and str(password).startswith(ENCRYPTED_PREFIX):
            db_config["password"] = self.decrypt_value(str(password))
        return DatabaseSpec.from_mapping(db_config)

    def add_site(
        self,
        name: str,
        path: str | Path,
        settings_dir: str | None = None,
        database_url: str | None = None,
    ) -> dict[str, Any]:
        """Register a site, replacing any previous entry with the same name"""
        config: dict[str, Any] = {"path": str(Path(path).expanduser().resolve())}
        if settings_dir:
            config["settings_dir"] = settings_dir

        if database_url:
            database = DatabaseSpec.from_url(database_url).to_mapping()
            # Encrypt password if provided
            if database.get("password"):
                database["password"] = f"{ENCRYPTED_PREFIX}{self.encrypt_value(database['password'])}"
            config["database"] = database

        if "sites" not in self.sites:
            self.sites["sites"] = {}

        self.sites["sites"][name] = config
        self._save_yaml(self.sites, self.sites_file)
        return config

    def remove_site(self, name: str) -> bool:
        """Remove a site configuration"""
        if name in self.sites.get("sites", {}):
            del self.sites["sites"][name]
            self._save_yaml(self.sites, self.sites_file)
            return True
        return False
