"""Shared fixtures: a throwaway configuration directory and a small SQLite-backed site."""

import logging
import sqlite3
from contextlib import closing
from pathlib import Path

import pytest
import yaml

from sitepack import cli as cli_module
from sitepack.core.config_manager import ConfigManager
from sitepack.utils import logs
from sitepack.utils.tempdirs import cleanup_temp_dirs


def write_yaml(path: Path, data) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)
    return path


@pytest.fixture(autouse=True)
def _isolate_process_state():
    """Drop logging handlers, CLI components and temp dirs left behind by a test"""
    yield
    root = logging.getLogger()
    for handler in logs._handlers:
        root.removeHandler(handler)
        handler.close()
    logs._handlers.clear()
    cli_module._components.clear()
    cleanup_temp_dirs()


@pytest.fixture
def config_dir(tmp_path):
    directory = tmp_path / "sitepack-config"
    write_yaml(
        directory / "settings.yaml",
        {
            "storage": {
                "local_base": str(tmp_path / "storage"),
                "temp_dir": str(tmp_path / "tmp"),
            },
        },
    )
    return directory


@pytest.fixture
def config(config_dir):
    return ConfigManager(config_dir)


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "db" / "site.db"
    path.parent.mkdir()
    with closing(sqlite3.connect(path)) as conn:
        conn.execute("CREATE TABLE t (id INTEGER PRIMARY KEY, name TEXT)")
        conn.executemany("INSERT INTO t (id, name) VALUES (?, ?)", [(1, "alpha"), (2, "beta")])
        conn.commit()
    return path


@pytest.fixture
def site_root(tmp_path, db_path):
    """Site with code, a files directory and database settings kept in settings.local.yml"""
    root = tmp_path / "site"
    (root / "files" / "css").mkdir(parents=True)
    (root / "a.txt").write_text("hello\n")
    (root / "src").mkdir()
    (root / "src" / "app.py").write_text("print('app')\n")
    (root / "files" / "upload.txt").write_text("user data\n")
    (root / "files" / "css" / "aggregated.css").write_text("body {}\n")
    write_yaml(root / "config" / "settings.yml", {"include": ["settings.local.yml"], "site_name": "Example"})
    write_yaml(
        root / "config" / "settings.local.yml",
        {"databases": {"default": {"driver": "sqlite", "database": str(db_path)}}},
    )
    return root
