"""Exclusion rules and credential safety checks applied while exporting a component"""

import fnmatch
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .errors import PreconditionError, SafetyPolicyError

# Always excluded from a code archive (top-level directories)
DEFAULT_CODE_EXCLUDE_DIRS = [".git", ".hg", ".svn", "vendor", "node_modules", ".venv"]

# Generated directories excluded from a files archive
DEFAULT_FILES_EXCLUDE = ["css", "js", "styles", "php"]

# Local override files (settings.local.yml, settings.dev.yaml, ...) at any depth
LOCAL_SETTINGS_PATTERN = r"(.+/)?settings\.[^/]+\.ya?ml"

# Main settings files checked for embedded credentials
SETTINGS_FILE_RE = re.compile(r"^(.+/)?settings\.ya?ml$")

_GLOB_CHARS = ("*", "?", "[")

logger = logging.getLogger("PathFilter")


@dataclass(frozen=True)
class PathExclusionRule:
    """A pattern and its compiled, anchored regex"""

    pattern: str
    regex: re.Pattern

    @classmethod
    def compile(cls, pattern: str) -> "PathExclusionRule":
        """Compile a glob or regular expression anchored to the whole relative path

        Patterns containing glob characters are translated with fnmatch,
        everything else is used as a regular expression.
        """
        pattern = pattern.strip().strip("/")
        if not pattern:
            raise PreconditionError("Empty exclusion pattern")

        if any(c in pattern for c in _GLOB_CHARS):
            regex_pattern = fnmatch.translate(pattern)
        else:
            regex_pattern = f"^(?:{pattern})$"

        try:
            return cls(pattern=pattern, regex=re.compile(regex_pattern))
        except re.error as e:
            raise PreconditionError(f"Invalid exclusion pattern '{pattern}': {e}") from e

    @classmethod
    def from_regex(cls, regex_pattern: str) -> "PathExclusionRule":
        return cls(pattern=regex_pattern, regex=re.compile(f"^(?:{regex_pattern})$"))

    @classmethod
    def for_path(cls, relative_path: str) -> "PathExclusionRule":
        """Rule matching exactly one literal relative path"""
        relative_path = relative_path.strip("/")
        return cls(pattern=relative_path, regex=re.compile(f"^{re.escape(relative_path)}$"))

    def matches(self, relative_path: str) -> bool:
        return self.regex.match(relative_path) is not None


def database_settings_present(settings: Any) -> bool:
    """True if parsed settings carry a non-empty 'databases' block"""
    return isinstance(settings, dict) and bool(settings.get("databases"))


def check_settings_file(path: Path, relative_path: str) -> None:
    """Refuse to archive a main settings file that holds database connection settings

    Raises:
        SafetyPolicyError: The file defines a non-empty 'databases' block or cannot be parsed
    """
    if not SETTINGS_FILE_RE.match(relative_path):
        return

    hint = (
        f"Please move the database connection settings into a settings.local.yml file "
        f'or exclude the file from the archive with "--exclude-code-paths={relative_path}".'
    )
    try:
        with open(path, encoding="utf-8") as f:
            settings = yaml.safe_load(f)
    except (yaml.YAMLError, UnicodeDecodeError) as e:
        raise SafetyPolicyError(
            f"Could not parse {relative_path} to check it for database connection settings ({e}). {hint}",
            relative_path,
        ) from e

    if database_settings_present(settings):
        raise SafetyPolicyError(
            f"Found database connection settings in {relative_path}. It is risky to include them in the archive. {hint}",
            relative_path,
        )


class PathFilter:
    """Decides which entries under a root are copied into a component"""

    def __init__(self, root: Path, rules: list[PathExclusionRule], check_sensitive: bool = False):
        self.root = Path(root)
        self.rules = rules
        self.check_sensitive = check_sensitive
        self.excluded: list[str] = []

    @classmethod
    def from_patterns(cls, root: Path, patterns: list[str], check_sensitive: bool = False) -> "PathFilter":
        return cls(root, [PathExclusionRule.compile(p) for p in patterns], check_sensitive)

    @classmethod
    def for_code(
        cls,
        root: Path,
        extra_patterns: list[str] | None = None,
        exclude_dirs: list[str] | None = None,
        excluded_paths: list[Path] | None = None,
    ) -> "PathFilter":
        """Filter for a code export

        Args:
            root: Code root
            extra_patterns: User supplied patterns (--exclude-code-paths)
            exclude_dirs: Version control and dependency directories
            excluded_paths: Absolute paths excluded when they live under root
                (files directory, staging directory, archive destination)
        """
        root = Path(root)
        rules = [PathExclusionRule.compile(p) for p in (extra_patterns or [])]
        if exclude_dirs is None:
            exclude_dirs = DEFAULT_CODE_EXCLUDE_DIRS
        rules.extend(PathExclusionRule.for_path(d) for d in exclude_dirs)
        rules.append(PathExclusionRule.from_regex(LOCAL_SETTINGS_PATTERN))

        resolved_root = root.resolve()
        for path in excluded_paths or []:
            resolved = Path(path).resolve()
            if resolved != resolved_root and resolved.is_relative_to(resolved_root):
                rules.append(PathExclusionRule.for_path(resolved.relative_to(resolved_root).as_posix()))

        return cls(root, rules, check_sensitive=True)

    @classmethod
    def for_files(cls, root: Path, patterns: list[str] | None = None) -> "PathFilter":
        return cls.from_patterns(root, DEFAULT_FILES_EXCLUDE if patterns is None else patterns)

    def relative(self, path: Path) -> str:
        return Path(os.path.relpath(path, self.root)).as_posix().strip("/")

    def excluded_by(self, relative_path: str) -> PathExclusionRule | None:
        for rule in self.rules:
            if rule.matches(relative_path):
                return rule
        return None

    def keep(self, path: Path, is_dir: bool | None = None) -> bool:
        """Return True if the entry is kept; runs the safety check on kept files

        Raises:
            SafetyPolicyError: A kept settings file holds database credentials
        """
        return self.keep_relative(self.relative(path), path, is_dir)

    def keep_relative(self, relative_path: str, path: Path, is_dir: bool | None = None) -> bool:
        """Same as keep() for an entry whose path inside the component is given explicitly

        Used for entries reached through a dereferenced directory symlink, where
        the real path lies outside the root.
        """
        relative_path = relative_path.strip("/")
        rule = self.excluded_by(relative_path)
        if rule is not None:
            logger.info(f"Path excluded ({rule.pattern}): {relative_path}")
            self.excluded.append(relative_path)
            return False

        if is_dir is None:
            is_dir = Path(path).is_dir()
        if self.check_sensitive and not is_dir:
            check_settings_file(Path(path), relative_path)
        return True
