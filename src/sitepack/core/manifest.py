"""MANIFEST.yml describing which components an archive holds"""

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from sitepack import __version__

from .errors import ManifestError

MANIFEST_FILE_NAME = "MANIFEST.yml"
MANIFEST_FORMAT_VERSION = "1.0"
SUPPORTED_MAJOR_VERSION = "1"

COMPONENT_CODE = "code"
COMPONENT_FILES = "files"
COMPONENT_DATABASE = "database"
COMPONENTS = (COMPONENT_CODE, COMPONENT_FILES, COMPONENT_DATABASE)

DEFAULT_GENERATOR = "sitepack archive:dump"


@dataclass(frozen=True)
class ArchiveManifest:
    """Metadata written once per dump and read back verbatim on restore"""

    datestamp: int
    formatversion: str
    components: dict[str, bool] = field(default_factory=dict)
    description: str | None = None
    tags: str | None = None
    generator: str = DEFAULT_GENERATOR
    generatorversion: str = ""

    def includes(self, component: str) -> bool:
        return bool(self.components.get(component, False))

    def to_dict(self) -> dict[str, Any]:
        return {
            "datestamp": self.datestamp,
            "formatversion": self.formatversion,
            "components": {name: bool(self.components.get(name, False)) for name in COMPONENTS},
            "description": self.description,
            "tags": self.tags,
            "generator": self.generator,
            "generatorversion": self.generatorversion,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ArchiveManifest":
        components = data.get("components") or {}
        if not isinstance(components, dict):
            raise ManifestError("Manifest 'components' must be a mapping")
        return cls(
            datestamp=int(data.get("datestamp") or 0),
            formatversion=str(data.get("formatversion", "")),
            components={name: bool(components.get(name, False)) for name in COMPONENTS},
            description=data.get("description"),
            tags=data.get("tags"),
            generator=str(data.get("generator") or ""),
            generatorversion=str(data.get("generatorversion") or ""),
        )


def create_manifest(
    components: dict[str, bool],
    description: str | None = None,
    tags: str | None = None,
    generator: str | None = None,
    generator_version: str | None = None,
) -> ArchiveManifest:
    return ArchiveManifest(
        datestamp=int(time.time()),
        formatversion=MANIFEST_FORMAT_VERSION,
        components={name: bool(components.get(name, False)) for name in COMPONENTS},
        description=description,
        tags=tags,
        generator=generator or DEFAULT_GENERATOR,
        generatorversion=generator_version or __version__,
    )


def write_manifest(staging_root: Path, manifest: ArchiveManifest) -> Path:
    """Serialize the manifest to MANIFEST.yml at the staging root"""
    manifest_path = Path(staging_root) / MANIFEST_FILE_NAME
    with open(manifest_path, "w", encoding="utf-8") as f:
        yaml.dump(manifest.to_dict(), f, default_flow_style=False, sort_keys=False)
    return manifest_path


def check_format_version(version: str) -> None:
    """Accept any 1.x manifest, reject everything else"""
    major = version.split(".", 1)[0] if version else ""
    if major != SUPPORTED_MAJOR_VERSION:
        raise ManifestError(
            f"Unsupported manifest format version '{version or '[missing]'}' "
            f"(supported: {SUPPORTED_MAJOR_VERSION}.x)"
        )


def read_manifest(staging_root: Path) -> ArchiveManifest:
    """Parse MANIFEST.yml from an unpacked archive

    Raises:
        ManifestError: Missing, unparseable or unsupported manifest
    """
    manifest_path = Path(staging_root) / MANIFEST_FILE_NAME
    if not manifest_path.is_file():
        raise ManifestError(f"Manifest file {manifest_path} not found")

    return parse_manifest(manifest_path.read_text(encoding="utf-8"), str(manifest_path))


def parse_manifest(text: str, source: str = MANIFEST_FILE_NAME) -> ArchiveManifest:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ManifestError(f"Could not parse {source}: {e}") from e

    if not isinstance(data, dict):
        raise ManifestError(f"Manifest {source} is not a mapping")

    check_format_version(str(data.get("formatversion") or ""))
    return ArchiveManifest.from_dict(data)


def has_manifest(staging_root: Path) -> bool:
    return (Path(staging_root) / MANIFEST_FILE_NAME).is_file()
