"""Tests for stages/importer.py module.

Tests copying between snapshots, the build context and stage filesystems.
"""

import os
import stat
from unittest.mock import patch

import pytest

from stagebuild.errors import PathNotFoundError
from stagebuild.stages import importer
from stagebuild.stages.importer import IMPORT_TMP_PREFIX, expand_source, import_from
from stagebuild.stages.snapshot import Snapshot, compute_tree_hash


@pytest.fixture
def source(tmp_path):
    """Create a source snapshot with files, a directory and a symlink."""
    root = tmp_path / "source"
    (root / "usr" / "local" / "bin").mkdir(parents=True)
    for name in ("ansible", "ansible-playbook", "python3"):
        tool = root / "usr" / "local" / "bin" / name
        tool.write_text(f"#!/bin/sh\necho {name}\n")
        tool.chmod(0o755)
    (root / "app" / "lib").mkdir(parents=True)
    (root / "app" / "lib" / "mod.py").write_text("x = 1\n")
    (root / "app" / "README").write_text("readme\n")
    os.symlink("lib/mod.py", root / "app" / "current")
    return Snapshot(root=root, digest=compute_tree_hash(root))


@pytest.fixture
def target(tmp_path):
    """Create a target stage filesystem with existing content."""
    root = tmp_path / "target"
    (root / "app").mkdir(parents=True)
    (root / "app" / "keep.txt").write_text("keep\n")
    (root / "app" / "README").write_text("old readme\n")
    return root


def leftovers(root):
    """Return temporary import directories left in root."""
    return [p for p in root.iterdir() if p.name.startswith(IMPORT_TMP_PREFIX)]


class TestImportFrom:
    """Tests for import_from function."""

    def test_copy_file(self, source, target):
        """Should copy a file preserving its mode."""
        import_from(source, "/usr/local/bin/python3", "/usr/bin/python3", target)

        copied = target / "usr" / "bin" / "python3"
        assert copied.read_text() == "#!/bin/sh\necho python3\n"
        assert stat.S_IMODE(copied.stat().st_mode) == 0o755
        assert leftovers(target) == []

    def test_copy_file_into_directory(self, source, target):
        """A trailing slash means 'into this directory'."""
        import_from(source, "/usr/local/bin/python3", "/opt/bin/", target)

        assert (target / "opt" / "bin" / "python3").exists()

    def test_copy_directory_merges(self, source, target):
        """Directories merge into existing ones, overwriting conflicts."""
        import_from(source, "/app", "/app", target)

        assert (target / "app" / "keep.txt").read_text() == "keep\n"
        assert (target / "app" / "README").read_text() == "readme\n"
        assert (target / "app" / "lib" / "mod.py").read_text() == "x = 1\n"

    def test_symlinks_copied_as_symlinks(self, source, target):
        """Symlinks are copied as links, not followed."""
        import_from(source, "/app", "/app", target)

        link = target / "app" / "current"
        assert link.is_symlink()
        assert os.readlink(link) == "lib/mod.py"

    def test_overwrites_file(self, source, target):
        """An existing file at the destination is replaced."""
        import_from(source, "/app/README", "/app/README", target)

        assert (target / "app" / "README").read_text() == "readme\n"

    def test_replaces_symlink_destination(self, source, target):
        """A symlink at the destination is replaced, not written through."""
        outside = target / "elsewhere.txt"
        outside.write_text("untouched\n")
        os.symlink("/elsewhere.txt", target / "app" / "link")

        import_from(source, "/app/README", "/app/link", target)

        assert not (target / "app" / "link").is_symlink()
        assert outside.read_text() == "untouched\n"

    def test_glob_multiple_matches(self, source, target):
        """Multiple glob matches land inside the destination directory."""
        written = import_from(
            source, "/usr/local/bin/ansible*", "/usr/local/bin/", target
        )

        names = sorted(p.name for p in written)
        assert names == ["ansible", "ansible-playbook"]
        assert not (target / "usr" / "local" / "bin" / "python3").exists()

    def test_missing_source_leaves_destination_untouched(self, source, target):
        """A missing source raises PathNotFoundError without side effects."""
        before = compute_tree_hash(target)

        with pytest.raises(PathNotFoundError) as exc_info:
            import_from(source, "/does/not/exist", "/app/", target)

        assert exc_info.value.path == "/does/not/exist"
        assert compute_tree_hash(target) == before

    def test_glob_without_matches(self, source, target):
        """A glob that matches nothing raises PathNotFoundError."""
        with pytest.raises(PathNotFoundError):
            import_from(source, "/usr/local/bin/nothing*", "/bin/", target)

    def test_failure_rolls_back(self, source, target):
        """A failure while committing restores the previous state."""
        before = compute_tree_hash(target)
        real_commit = importer._commit_entry
        calls = []

        def failing_commit(staged, dest, backup_dir, journal):
            calls.append(dest)
            if len(calls) > 1:
                raise OSError("disk full")
            real_commit(staged, dest, backup_dir, journal)

        with (
            patch.object(importer, "_commit_entry", side_effect=failing_commit),
            pytest.raises(OSError, match="disk full"),
        ):
            import_from(source, "/usr/local/bin/ansible*", "/app/", target)

        assert compute_tree_hash(target) == before
        assert leftovers(target) == []

    def test_copy_from_context_directory(self, tmp_path, target):
        """Plain directories (the build context) are valid sources."""
        context = tmp_path / "context"
        (context / "src").mkdir(parents=True)
        (context / "src" / "main.c").write_text("int main;\n")

        import_from(context, "src/", "/build/", target)

        assert (target / "build" / "main.c").read_text() == "int main;\n"

    def test_context_path_cannot_escape(self, tmp_path, target):
        """Parent references in context paths stay inside the context."""
        context = tmp_path / "context"
        context.mkdir()
        (tmp_path / "secret.txt").write_text("secret\n")

        with pytest.raises(PathNotFoundError):
            import_from(context, "../secret.txt", "/secret.txt", target)


class TestExpandSource:
    """Tests for expand_source function."""

    def test_sorted_glob(self, source):
        """Glob matches are returned sorted."""
        matches = expand_source(source.root, "/usr/local/bin/*")

        assert [m.name for m in matches] == ["ansible", "ansible-playbook", "python3"]

    def test_glob_in_directory_component(self, source):
        """Globs in intermediate components are supported."""
        matches = expand_source(source.root, "/usr/*/bin/python3")

        assert [m.name for m in matches] == ["python3"]

    def test_root(self, source):
        """The root path matches the whole tree."""
        assert expand_source(source.root, "/") == [source.root]
