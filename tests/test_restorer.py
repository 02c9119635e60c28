"""Tests for restoring archives and component sources."""

import shutil
import sqlite3
from contextlib import closing
from pathlib import Path
from types import SimpleNamespace

import pytest
import yaml

from sitepack.core import restorer as restorer_module
from sitepack.core.database import DatabaseSpec, get_driver
from sitepack.core.dumper import ArchiveDumper, DumpOptions
from sitepack.core.errors import ArchiveError, PreconditionError, UserAbortError
from sitepack.core.restorer import ArchiveRestorer, RestoreOptions
from sitepack.core.site import BLOCK_BEGIN, SiteEnvironment
from sitepack.utils.tempdirs import registered_temp_dirs

requires_rsync = pytest.mark.skipif(shutil.which("rsync") is None, reason="rsync is not installed")


def read_rows(db_path):
    with closing(sqlite3.connect(db_path)) as conn:
        return conn.execute("SELECT id, name FROM t ORDER BY id").fetchall()


def make_db(path, rows):
    with closing(sqlite3.connect(path)) as conn:
        conn.execute("CREATE TABLE t (id INTEGER PRIMARY KEY, name TEXT)")
        conn.executemany("INSERT INTO t (id, name) VALUES (?, ?)", rows)
        conn.commit()
    return path


class Prompts:
    """Records every confirmation and answers with a fixed reply"""

    def __init__(self, answer=True):
        self.answer = answer
        self.messages = []

    def __call__(self, message):
        self.messages.append(message)
        return self.answer


class CopySyncer:
    """Mirrors with shutil so restore logic can be tested without rsync"""

    def __init__(self, confirm):
        self.confirm = confirm
        self.calls = []

    def check_available(self):
        return "copy"

    def mirror(self, source, destination):
        if not self.confirm(f'Are you sure you want to sync files from "{source}/" to "{destination}/"?'):
            raise UserAbortError()
        self.calls.append((Path(source), Path(destination)))
        if destination.exists():
            shutil.rmtree(destination)
        shutil.copytree(source, destination, symlinks=True)


@pytest.fixture
def archive(config, site_root, tmp_path):
    return ArchiveDumper(config).dump(
        SiteEnvironment(site_root),
        DumpOptions(code=True, files=True, database=True, destination=str(tmp_path / "archives" / "site.tar.gz")),
    )


@pytest.fixture
def files_only_archive(config, site_root, tmp_path):
    return ArchiveDumper(config).dump(
        SiteEnvironment(site_root),
        DumpOptions(files=True, destination=str(tmp_path / "archives" / "files.tar.gz")),
    )


@pytest.fixture
def dump_dir(tmp_path, db_path):
    """Component directory holding only database/database.sql"""
    source = tmp_path / "source"
    (source / "database").mkdir(parents=True)
    get_driver(DatabaseSpec(driver="sqlite", database=str(db_path))).dump(source / "database" / "database.sql")
    return source


def _assert_restored(destination, target_db):
    assert (destination / "a.txt").read_text() == "hello\n"
    assert (destination / "src" / "app.py").exists()
    assert (destination / "files" / "upload.txt").read_text() == "user data\n"
    assert read_rows(target_db) == [(1, "alpha"), (2, "beta")]

    site = SiteEnvironment(destination)
    assert site.database_spec().database == str(target_db)
    assert site.local_settings_path.read_text().count(BLOCK_BEGIN) == 1


def test_full_restore(config, archive, tmp_path):
    destination = tmp_path / "restored"
    target_db = tmp_path / "restored.db"
    prompts = Prompts()
    restorer = ArchiveRestorer(config, prompts, syncer=CopySyncer(prompts))

    result = restorer.restore(archive, RestoreOptions(destination_path=destination, db_url=f"sqlite://{target_db}"))

    assert result == destination
    _assert_restored(destination, target_db)
    # One confirmation per sync; the new database did not need a drop confirmation
    assert len(prompts.messages) == 2
    assert registered_temp_dirs() == []


@requires_rsync
def test_full_restore_with_rsync(config, archive, tmp_path):
    destination = tmp_path / "restored"
    target_db = tmp_path / "restored.db"
    prompts = Prompts()

    ArchiveRestorer(config, prompts).restore(
        archive,
        RestoreOptions(destination_path=destination, db_url=f"sqlite://{target_db}"),
    )

    _assert_restored(destination, target_db)
    assert all(message.startswith("Are you sure you want to sync files") for message in prompts.messages)


def test_populated_destination_requires_overwrite(config, archive, tmp_path):
    destination = tmp_path / "live"
    destination.mkdir()
    (destination / "keep.txt").write_text("precious")
    prompts = Prompts()
    syncer = CopySyncer(prompts)

    with pytest.raises(PreconditionError, match="--overwrite"):
        ArchiveRestorer(config, prompts, syncer=syncer).restore(
            archive, RestoreOptions(code=True, destination_path=destination)
        )

    assert (destination / "keep.txt").read_text() == "precious"
    assert prompts.messages == []
    assert syncer.calls == []


def test_declining_overwrite_keeps_destination(config, archive, tmp_path):
    destination = tmp_path / "live"
    destination.mkdir()
    (destination / "keep.txt").write_text("precious")
    prompts = Prompts(answer=False)

    with pytest.raises(UserAbortError):
        ArchiveRestorer(config, prompts, syncer=CopySyncer(prompts)).restore(
            archive, RestoreOptions(code=True, overwrite=True, destination_path=destination)
        )

    assert (destination / "keep.txt").read_text() == "precious"
    assert "delete" in prompts.messages[0]


def test_overwrite_replaces_destination(config, archive, tmp_path):
    destination = tmp_path / "live"
    destination.mkdir()
    (destination / "stale.txt").write_text("old")
    prompts = Prompts()

    ArchiveRestorer(config, prompts, syncer=CopySyncer(prompts)).restore(
        archive, RestoreOptions(code=True, files=True, overwrite=True, destination_path=destination)
    )

    assert not (destination / "stale.txt").exists()
    assert (destination / "a.txt").exists()
    assert (destination / "files" / "upload.txt").exists()


def test_database_prompt_declined_leaves_database_untouched(config, dump_dir, tmp_path):
    target_db = make_db(tmp_path / "target.db", [(9, "zeta")])
    prompts = Prompts(answer=False)

    with pytest.raises(UserAbortError):
        ArchiveRestorer(config, prompts, syncer=CopySyncer(prompts)).restore(
            dump_dir,
            RestoreOptions(database=True, db_url=f"sqlite://{target_db}", destination_path=tmp_path / "dest"),
        )

    assert read_rows(target_db) == [(9, "zeta")]
    assert len(prompts.messages) == 1
    assert "drop" in prompts.messages[0]


def test_database_only_restore_accepted(config, dump_dir, tmp_path):
    target_db = make_db(tmp_path / "target.db", [(9, "zeta")])
    destination = tmp_path / "dest"
    prompts = Prompts()

    ArchiveRestorer(config, prompts, syncer=CopySyncer(prompts)).restore(
        dump_dir,
        RestoreOptions(database=True, db_url=f"sqlite://{target_db}", destination_path=destination),
    )

    assert read_rows(target_db) == [(1, "alpha"), (2, "beta")]
    assert SiteEnvironment(destination).database_spec().database == str(target_db)


def test_database_from_destination_settings_is_not_rewired(config, dump_dir, site_root, db_path):
    local_settings = site_root / "config" / "settings.local.yml"
    before = local_settings.read_text()
    prompts = Prompts()

    ArchiveRestorer(config, prompts).restore(
        dump_dir,
        RestoreOptions(database=True),
        active_site=SiteEnvironment(site_root),
    )

    assert read_rows(db_path) == [(1, "alpha"), (2, "beta")]
    assert local_settings.read_text() == before


def test_no_setup_database_connection(config, dump_dir, tmp_path):
    destination = tmp_path / "dest"
    prompts = Prompts()

    ArchiveRestorer(config, prompts).restore(
        dump_dir,
        RestoreOptions(
            database=True,
            db_url=f"sqlite://{tmp_path / 'new.db'}",
            destination_path=destination,
            setup_database_connection=False,
        ),
    )

    assert read_rows(tmp_path / "new.db") == [(1, "alpha"), (2, "beta")]
    assert not (destination / "config" / "settings.local.yml").exists()


def test_database_connection_is_required(config, dump_dir, tmp_path):
    with pytest.raises(PreconditionError, match="Database connection settings are required"):
        ArchiveRestorer(config, Prompts()).restore(
            dump_dir, RestoreOptions(database=True, destination_path=tmp_path / "dest")
        )
    assert not (tmp_path / "dest").exists()


def test_db_name_options_build_the_connection():
    options = RestoreOptions(db_driver="pgsql", db_name="shop", db_user="shop", db_password="pw", db_port=5433)

    assert options.explicit_database() == DatabaseSpec(
        driver="pgsql", database="shop", port=5433, username="shop", password="pw"
    )
    assert RestoreOptions().explicit_database() is None


def test_missing_source(config, tmp_path):
    with pytest.raises(PreconditionError, match="--code-source-path"):
        ArchiveRestorer(config, Prompts(), syncer=CopySyncer(Prompts())).restore(
            None, RestoreOptions(code=True, destination_path=tmp_path / "dest")
        )


def test_component_absent_from_manifest(config, files_only_archive, tmp_path):
    with pytest.raises(PreconditionError, match="does not contain the code component"):
        ArchiveRestorer(config, Prompts(), syncer=CopySyncer(Prompts())).restore(
            files_only_archive, RestoreOptions(code=True, destination_path=tmp_path / "dest")
        )
    assert registered_temp_dirs() == []


def test_components_default_to_manifest(config, files_only_archive, tmp_path):
    destination = tmp_path / "dest"
    prompts = Prompts()
    syncer = CopySyncer(prompts)

    ArchiveRestorer(config, prompts, syncer=syncer).restore(
        files_only_archive, RestoreOptions(destination_path=destination)
    )

    assert syncer.calls[0][1] == destination / "files"
    assert (destination / "files" / "upload.txt").exists()
    assert not (destination / "a.txt").exists()


def test_source_path_options_win(config, files_only_archive, tmp_path):
    alt_files = tmp_path / "alt-files"
    alt_files.mkdir()
    (alt_files / "other.txt").write_text("other")
    destination = tmp_path / "dest"
    prompts = Prompts()

    ArchiveRestorer(config, prompts, syncer=CopySyncer(prompts)).restore(
        files_only_archive,
        RestoreOptions(files=True, files_source_path=alt_files, destination_path=destination),
    )

    assert (destination / "files" / "other.txt").exists()
    assert not (destination / "files" / "upload.txt").exists()


def test_files_destination(config, files_only_archive, tmp_path):
    destination = tmp_path / "dest"
    (destination / "config").mkdir(parents=True)
    (destination / "config" / "settings.yml").write_text(yaml.dump({"files_path": "web/uploads"}))
    prompts = Prompts()
    restorer = ArchiveRestorer(config, prompts, syncer=CopySyncer(prompts))

    assert restorer.files_destination(destination, RestoreOptions()) == destination / "web" / "uploads"
    assert restorer.files_destination(destination, RestoreOptions(files_destination_relative_path="data")) == (
        destination / "data"
    )

    (destination / "web" / "uploads").mkdir(parents=True)
    restorer.restore(files_only_archive, RestoreOptions(destination_path=destination))

    assert (destination / "web" / "uploads" / "upload.txt").exists()
    # Existing files directory: one confirmation before restoring into it, one for the sync
    assert len(prompts.messages) == 2
    assert "already exists" in prompts.messages[0]


def test_default_destination_is_named_after_the_archive(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)

    assert ArchiveRestorer.resolve_destination(Path("/backups/site_2024.tar.gz"), RestoreOptions(), None) == (
        tmp_path / "site_2024"
    )
    active = SiteEnvironment(tmp_path / "active")
    assert ArchiveRestorer.resolve_destination(Path("x.tgz"), RestoreOptions(), active) == tmp_path / "active"
    with pytest.raises(PreconditionError):
        ArchiveRestorer.resolve_destination(None, RestoreOptions(), None)


def test_code_import_hints_at_dependencies(config, tmp_path, caplog):
    code = tmp_path / "code"
    code.mkdir()
    (code / "requirements.txt").write_text("click\n")
    prompts = Prompts()

    ArchiveRestorer(config, prompts, syncer=CopySyncer(prompts)).restore(
        None, RestoreOptions(code=True, code_source_path=code, destination_path=tmp_path / "dest")
    )

    assert "requirements.txt is found" in caplog.text


def test_default_destination_equal_to_source_is_refused(config, tmp_path, monkeypatch):
    work = tmp_path / "work"
    (work / "bk" / "code").mkdir(parents=True)
    (work / "bk" / "code" / "a.txt").write_text("only copy")
    monkeypatch.chdir(work)
    prompts = Prompts()

    with pytest.raises(PreconditionError, match="inside the destination path"):
        ArchiveRestorer(config, prompts, syncer=CopySyncer(prompts)).restore(
            work / "bk", RestoreOptions(code=True, overwrite=True)
        )

    assert (work / "bk" / "code" / "a.txt").read_text() == "only copy"
    assert prompts.messages == []


def test_destination_above_a_source_is_refused(config, dump_dir, tmp_path):
    destination = tmp_path / "site"
    code = destination / "backup" / "code"
    code.mkdir(parents=True)
    (code / "a.txt").write_text("a")
    prompts = Prompts()

    with pytest.raises(PreconditionError, match="code source"):
        ArchiveRestorer(config, prompts, syncer=CopySyncer(prompts)).restore(
            None,
            RestoreOptions(code=True, code_source_path=code, overwrite=True, destination_path=destination),
        )

    assert (code / "a.txt").exists()
    assert prompts.messages == []


def test_files_source_inside_files_destination_is_refused(config, tmp_path):
    destination = tmp_path / "site"
    incoming = destination / "files" / "incoming"
    incoming.mkdir(parents=True)
    (incoming / "upload.txt").write_text("u")
    prompts = Prompts()

    with pytest.raises(PreconditionError, match="files source"):
        ArchiveRestorer(config, prompts, syncer=CopySyncer(prompts)).restore(
            None, RestoreOptions(files=True, files_source_path=incoming, destination_path=destination)
        )

    assert (incoming / "upload.txt").exists()


def test_failed_destination_removal_is_an_archive_error(config, archive, tmp_path, monkeypatch):
    destination = tmp_path / "live"
    destination.mkdir()
    (destination / "old.txt").write_text("old")
    prompts = Prompts()

    def fail_rmtree(path, *args, **kwargs):
        raise PermissionError(13, "Permission denied", str(path))

    monkeypatch.setattr(restorer_module, "shutil", SimpleNamespace(rmtree=fail_rmtree))
    with pytest.raises(ArchiveError, match="Failed removing destination directory"):
        ArchiveRestorer(config, prompts, syncer=CopySyncer(prompts)).restore(
            archive, RestoreOptions(code=True, overwrite=True, destination_path=destination)
        )
