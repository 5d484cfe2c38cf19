"""
Tests for archive extraction and directory helpers.
"""

import io
import os
import stat
import tarfile
import warnings
from pathlib import Path

import pytest

from src.core.errors import FileSystemError
from src.core.services.archive import (
    extract_archive,
    flatten_single_root,
    make_executable,
    remove_tree,
    reset_directory,
    swap_directory,
)
from tests.fakes import make_zip


def write_tar(path: Path, files: dict[str, bytes], links: dict[str, str] | None = None) -> Path:
    with tarfile.open(path, "w:gz") as bundle:
        for name, content in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            info.mode = 0o755
            bundle.addfile(info, io.BytesIO(content))
        for name, target in (links or {}).items():
            info = tarfile.TarInfo(name)
            info.type = tarfile.SYMTYPE
            info.linkname = target
            bundle.addfile(info)
    return path


# ── Extraction ───────────────────────────────────────────────────────


class TestExtractZip:
    def test_extracts_tree(self, tmp_path: Path):
        archive = tmp_path / "a.zip"
        archive.write_bytes(make_zip({"jre/bin/java": b"#!java", "jre/lib/rt.jar": b"jar"}))
        dest = extract_archive(archive, tmp_path / "out")
        assert (dest / "jre" / "bin" / "java").read_bytes() == b"#!java"
        assert (dest / "jre" / "lib" / "rt.jar").is_file()

    @pytest.mark.skipif(os.name == "nt", reason="POSIX permissions")
    def test_restores_unix_modes(self, tmp_path: Path):
        archive = tmp_path / "a.zip"
        archive.write_bytes(make_zip({"butler": b"bin"}, modes={"butler": 0o755}))
        extract_archive(archive, tmp_path / "out")
        assert (tmp_path / "out" / "butler").stat().st_mode & stat.S_IXUSR

    @pytest.mark.parametrize("name", ["../evil.txt", "ok/../../evil.txt", "/abs/evil.txt"])
    def test_rejects_escaping_entries(self, tmp_path: Path, name: str):
        archive = tmp_path / "a.zip"
        archive.write_bytes(make_zip({name: b"x"}))
        with pytest.raises(FileSystemError):
            extract_archive(archive, tmp_path / "out")
        assert not (tmp_path / "evil.txt").exists()

    def test_corrupt_archive(self, tmp_path: Path):
        archive = tmp_path / "broken.zip"
        archive.write_bytes(b"PK\x03\x04 not really a zip")
        with pytest.raises(FileSystemError):
            extract_archive(archive, tmp_path / "out")

    def test_unknown_format(self, tmp_path: Path):
        archive = tmp_path / "notes.bin"
        archive.write_bytes(b"plain bytes")
        with pytest.raises(FileSystemError, match="unrecognised"):
            extract_archive(archive, tmp_path / "out")


class TestExtractTar:
    def test_extracts_tarball(self, tmp_path: Path):
        archive = write_tar(tmp_path / "jre.tar.gz", {"jdk-21/bin/java": b"#!java"})
        extract_archive(archive, tmp_path / "out")
        assert (tmp_path / "out" / "jdk-21" / "bin" / "java").read_bytes() == b"#!java"

    def test_internal_symlink_allowed(self, tmp_path: Path):
        archive = write_tar(
            tmp_path / "jre.tar.gz",
            {"jdk/bin/java": b"#!java"},
            links={"jdk/java": "bin/java"},
        )
        extract_archive(archive, tmp_path / "out")
        assert (tmp_path / "out" / "jdk" / "java").is_symlink()

    def test_escaping_symlink_rejected(self, tmp_path: Path):
        archive = write_tar(tmp_path / "jre.tar.gz", {}, links={"jdk/passwd": "../../../etc/passwd"})
        with pytest.raises(FileSystemError, match="escapes"):
            extract_archive(archive, tmp_path / "out")

    def test_traversal_rejected(self, tmp_path: Path):
        archive = write_tar(tmp_path / "jre.tar.gz", {"../evil": b"x"})
        with pytest.raises(FileSystemError):
            extract_archive(archive, tmp_path / "out")


# ── Flatten ──────────────────────────────────────────────────────────


class TestFlatten:
    def test_hoists_single_wrapper(self, tmp_path: Path):
        (tmp_path / "jdk-21.0.3+9-jre" / "bin").mkdir(parents=True)
        (tmp_path / "jdk-21.0.3+9-jre" / "bin" / "java").write_text("x")
        assert flatten_single_root(tmp_path) is True
        assert (tmp_path / "bin" / "java").is_file()
        assert not (tmp_path / "jdk-21.0.3+9-jre").exists()

    def test_wrapper_with_same_named_child(self, tmp_path: Path):
        (tmp_path / "bin" / "bin").mkdir(parents=True)
        (tmp_path / "bin" / "bin" / "java").write_text("x")
        assert flatten_single_root(tmp_path) is True
        assert (tmp_path / "bin" / "java").is_file()

    def test_multiple_entries_untouched(self, tmp_path: Path):
        (tmp_path / "bin").mkdir()
        (tmp_path / "lib").mkdir()
        assert flatten_single_root(tmp_path) is False

    def test_single_file_untouched(self, tmp_path: Path):
        (tmp_path / "java").write_text("x")
        assert flatten_single_root(tmp_path) is False


# ── Directory helpers ────────────────────────────────────────────────


class TestDirectories:
    def test_swap_replaces_live(self, tmp_path: Path):
        source, live = tmp_path / "tmp-21", tmp_path / "latest"
        source.mkdir()
        (source / "new").write_text("new")
        live.mkdir()
        (live / "old").write_text("old")

        swap_directory(source, live, delay=0)

        assert (live / "new").is_file()
        assert not (live / "old").exists()
        assert not source.exists()

    def test_swap_failure_raises(self, tmp_path: Path):
        with pytest.raises(FileSystemError, match="cannot finalize"):
            swap_directory(tmp_path / "missing", tmp_path / "latest", attempts=2, delay=0)

    def test_reset_directory(self, tmp_path: Path):
        target = tmp_path / "game"
        (target / "Client").mkdir(parents=True)
        (target / "Client" / "GameClient").write_text("x")
        reset_directory(target)
        assert target.is_dir()
        assert list(target.iterdir()) == []

    def test_remove_tree_missing_is_noop(self, tmp_path: Path):
        remove_tree(tmp_path / "nothing")

    @pytest.mark.skipif(os.name == "nt", reason="POSIX permissions")
    def test_remove_tree_read_only(self, tmp_path: Path):
        target = tmp_path / "ro"
        target.mkdir()
        locked = target / "locked"
        locked.write_text("x")
        locked.chmod(0o444)
        remove_tree(target)
        assert not target.exists()

    def test_remove_tree_no_deprecation_warning(self, tmp_path: Path):
        target = tmp_path / "tree"
        (target / "nested").mkdir(parents=True)
        (target / "nested" / "file").write_text("x")
        with warnings.catch_warnings():
            warnings.simplefilter("error", DeprecationWarning)
            remove_tree(target)
        assert not target.exists()

    @pytest.mark.skipif(os.name == "nt", reason="POSIX permissions")
    def test_make_executable(self, tmp_path: Path):
        binary = tmp_path / "GameClient"
        binary.write_text("x")
        binary.chmod(0o644)
        make_executable(binary)
        mode = binary.stat().st_mode
        assert mode & stat.S_IXUSR and mode & stat.S_IXGRP and mode & stat.S_IXOTH

    def test_make_executable_missing_is_noop(self, tmp_path: Path):
        make_executable(tmp_path / "absent")
