"""Tests for MANIFEST.yml writing and reading."""

import pytest
import yaml

from sitepack import __version__
from sitepack.core.errors import ManifestError
from sitepack.core.manifest import (
    DEFAULT_GENERATOR,
    MANIFEST_FILE_NAME,
    MANIFEST_FORMAT_VERSION,
    create_manifest,
    has_manifest,
    read_manifest,
    write_manifest,
)


def test_read_returns_what_was_written(tmp_path):
    manifest = create_manifest(
        {"code": True, "files": False, "database": True},
        description="Before upgrade",
        tags="prod,weekly",
        generator="ci",
        generator_version="7",
    )

    write_manifest(tmp_path, manifest)

    assert read_manifest(tmp_path) == manifest


def test_defaults():
    manifest = create_manifest({"files": True})

    assert manifest.formatversion == MANIFEST_FORMAT_VERSION
    assert manifest.generator == DEFAULT_GENERATOR
    assert manifest.generatorversion == __version__
    assert manifest.components == {"code": False, "files": True, "database": False}
    assert manifest.datestamp > 0


def test_file_layout(tmp_path):
    write_manifest(tmp_path, create_manifest({"code": True}, description="d"))

    with open(tmp_path / MANIFEST_FILE_NAME) as f:
        data = yaml.safe_load(f)

    assert list(data) == [
        "datestamp",
        "formatversion",
        "components",
        "description",
        "tags",
        "generator",
        "generatorversion",
    ]
    assert data["components"] == {"code": True, "files": False, "database": False}
    assert has_manifest(tmp_path)


@pytest.mark.parametrize("version", ["1.0", "1.3"])
def test_same_major_version_is_accepted(tmp_path, version):
    (tmp_path / MANIFEST_FILE_NAME).write_text(
        yaml.dump({"datestamp": 1, "formatversion": version, "components": {"code": True}})
    )

    assert read_manifest(tmp_path).includes("code")


@pytest.mark.parametrize("version", ["2.0", "0.9", None])
def test_other_versions_are_rejected(tmp_path, version):
    (tmp_path / MANIFEST_FILE_NAME).write_text(
        yaml.dump({"datestamp": 1, "formatversion": version, "components": {"code": True}})
    )

    with pytest.raises(ManifestError):
        read_manifest(tmp_path)


def test_missing_or_malformed_manifest(tmp_path):
    with pytest.raises(ManifestError):
        read_manifest(tmp_path)

    (tmp_path / MANIFEST_FILE_NAME).write_text("- just\n- a list\n")
    with pytest.raises(ManifestError):
        read_manifest(tmp_path)
