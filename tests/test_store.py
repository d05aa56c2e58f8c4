"""Tests for the directory store."""

import os
import threading

import pytest

from pillar.codec import decode_issue
from pillar.config import Config, write_config
from pillar.errors import AlreadyExists, NotFound, StoreIOError, ValidationError
from pillar.models import Issue, Milestone, Priority, Project, Status
from pillar.store import (
    ENV_WORKSPACE,
    Store,
    atomic_write,
    load_all,
    open_workspace,
    resolve_base_directory,
    resolve_workspace_root,
)


@pytest.fixture
def store(tmp_path):
    """A store with one project."""
    store = Store(tmp_path)
    store.create(Project(id="ALPH", name="Alpha"))
    return store


def temp_files(directory):
    return [p for p in directory.iterdir() if p.name.endswith(".tmp")]


class TestWorkspaceDiscovery:
    """Test workspace root and base directory resolution."""

    def test_walks_upward(self, tmp_path):
        (tmp_path / ".pillar").mkdir()
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        assert resolve_workspace_root(nested) == tmp_path.resolve()

    def test_not_found(self, tmp_path):
        with pytest.raises(NotFound, match="pillar init"):
            resolve_workspace_root(tmp_path)

    def test_env_override(self, tmp_path, monkeypatch):
        """Test PILLAR_WORKSPACE replaces the start directory."""
        ws = tmp_path / "ws"
        (ws / ".pillar").mkdir(parents=True)
        elsewhere = tmp_path / "elsewhere"
        elsewhere.mkdir()
        monkeypatch.setenv(ENV_WORKSPACE, str(ws))
        assert resolve_workspace_root(elsewhere) == ws.resolve()

    def test_base_directory_created(self, tmp_path):
        write_config(tmp_path, Config(base_directory="data/projects"))
        base = resolve_base_directory(tmp_path)
        assert base == (tmp_path / "data" / "projects").resolve()
        assert base.is_dir()

    @pytest.mark.parametrize("bad", ["../outside", ".pillar", ".pillar/data"])
    def test_invalid_base_directory(self, tmp_path, bad):
        write_config(tmp_path, Config())
        with pytest.raises(ValidationError):
            resolve_base_directory(tmp_path, Config(base_directory=bad))

    def test_open_workspace(self, workspace):
        nested = workspace.root / "somewhere"
        nested.mkdir()
        ws = open_workspace(nested)
        assert ws.root == workspace.root
        assert ws.base_dir == workspace.base_dir


class TestCreateUpdate:
    """Test create and update semantics."""

    def test_project_layout(self, store, tmp_path):
        assert (tmp_path / "ALPH" / "README.md").is_file()
        assert (tmp_path / "ALPH" / "milestones").is_dir()
        assert (tmp_path / "ALPH" / "issues").is_dir()

    def test_create_existing_fails(self, store):
        with pytest.raises(AlreadyExists):
            store.create(Project(id="ALPH", name="Alpha again"))

    def test_create_in_missing_project(self, store):
        with pytest.raises(NotFound):
            store.create(Issue(project="NOPE", number=1, title="x"))

    def test_paths(self, store, tmp_path):
        milestone = Milestone(project="ALPH", title="v1.0")
        issue = Issue(project="ALPH", number=1, title="Fix critical bug")
        assert store.create(milestone) == tmp_path / "ALPH" / "milestones" / "v1-0.md"
        assert store.create(issue) == tmp_path / "ALPH" / "issues" / "001-fix-critical-bug.md"

    def test_update_missing_fails(self, store):
        with pytest.raises(NotFound):
            store.update(Issue(project="ALPH", number=9, title="Ghost"))

    def test_update_keeps_filename(self, store):
        """Test an issue keeps its file when its title changes."""
        path = store.create(Issue(project="ALPH", number=1, title="Old title"))
        issue = store.load_issue("ALPH", 1)
        issue.title = "New title"
        assert store.update(issue) == path
        assert store.load_issue("ALPH", 1).title == "New title"
        assert len(list(path.parent.iterdir())) == 1

    def test_no_temp_files_left(self, store, tmp_path):
        store.create(Issue(project="ALPH", number=1, title="x"))
        assert temp_files(tmp_path / "ALPH" / "issues") == []


class TestAtomicWrite:
    """Test the write-temp-then-rename sequence."""

    def test_failed_rename_keeps_original(self, tmp_path, monkeypatch):
        target = tmp_path / "file.md"
        target.write_text("original")

        def fail_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(os, "replace", fail_replace)
        with pytest.raises(StoreIOError, match="disk full"):
            atomic_write(target, "new content")

        assert target.read_text() == "original"
        assert temp_files(tmp_path) == []

    def test_missing_directory(self, tmp_path):
        with pytest.raises(StoreIOError):
            atomic_write(tmp_path / "nope" / "file.md", "x")


class TestLoad:
    """Test loading entities back from disk."""

    def test_load_all(self, store):
        store.create(Milestone(project="ALPH", title="v1.0"))
        store.create(Issue(project="ALPH", number=2, title="Second"))
        store.create(Issue(project="ALPH", number=1, title="First"))

        result = store.load_all()
        assert result.ok
        assert [p.id for p in result.projects] == ["ALPH"]
        assert [m.title for m in result.milestones] == ["v1.0"]
        assert [i.number for i in result.issues] == [1, 2]
        assert all(i.path is not None for i in result.issues)

    def test_bad_files_reported_not_fatal(self, store, tmp_path):
        """Test an undecodable file is reported with its path and loading continues."""
        store.create(Issue(project="ALPH", number=1, title="Good"))
        broken = tmp_path / "ALPH" / "issues" / "002-broken.md"
        broken.write_text("---\ntitle: [oops\n---\n")
        unnumbered = tmp_path / "ALPH" / "issues" / "notes.md"
        unnumbered.write_text("---\ntitle: Notes\n---\n")

        result = load_all(tmp_path)
        assert [i.title for i in result.issues] == ["Good"]
        assert {e.path for e in result.errors} == {broken, unnumbered}
        assert all(isinstance(e.error, ValidationError) for e in result.errors)
        assert any("number" in str(e) for e in result.errors)

    def test_broken_project_skips_its_children(self, store, tmp_path):
        (tmp_path / "ALPH" / "README.md").write_text("---\nstatus: todo\n---\n")
        result = store.load_all()
        assert result.projects == []
        assert len(result.errors) == 1

    def test_ignores_non_projects(self, store, tmp_path):
        (tmp_path / "docs").mkdir()
        (tmp_path / ".git").mkdir()
        assert store.project_ids() == ["ALPH"]

    def test_load_milestone_by_title(self, store, tmp_path):
        store.create(Milestone(project="ALPH", title="v1.0"))
        assert store.load_milestone("ALPH", "v1.0").title == "v1.0"
        with pytest.raises(NotFound):
            store.load_milestone("ALPH", "v2.0")

    def test_load_missing(self, store):
        with pytest.raises(NotFound):
            store.load_project("NOPE")
        with pytest.raises(NotFound):
            store.load_issue("ALPH", 1)


class TestConcurrentUpdates:
    """Test concurrent writers to the same file."""

    def test_last_rename_wins(self, store):
        """Test two racing updates leave one complete, parseable version."""
        path = store.create(Issue(project="ALPH", number=1, title="Shared"))
        a = store.load_issue("ALPH", 1)
        b = store.load_issue("ALPH", 1)
        a.status = Status.IN_PROGRESS
        a.tags = ["from-a"]
        b.priority = Priority.URGENT
        b.description = ("from b " * 500).strip()

        barrier = threading.Barrier(2)
        errors = []

        def writer(issue):
            barrier.wait()
            try:
                for _ in range(20):
                    store.update(issue)
            except Exception as e:  # surfaced by the assertion below
                errors.append(e)

        threads = [threading.Thread(target=writer, args=(i,)) for i in (a, b)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        result = decode_issue(path.read_text(), "ALPH", 1)
        assert result in (a, b)
        assert temp_files(path.parent) == []
