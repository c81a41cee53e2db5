"""Tests for file enumeration, ignore rules and the ingest manifest."""

from __future__ import annotations

import hashlib
import json
from pathlib import Path

import pytest

from mentat.errors import IoError
from mentat.ingestion.manifest import build_manifest, write_manifest
from mentat.utils.files import (
    DEFAULT_IGNORE,
    compute_content_hash,
    is_ignored,
    iter_source_paths,
    load_ignore_patterns,
)


class TestIterSourcePaths:
    """Test iter_source_paths function."""

    def test_single_file(self, tmp_path: Path) -> None:
        target = tmp_path / "notes.txt"
        target.write_text("dummy")

        assert list(iter_source_paths([target])) == [target]

    def test_directory_is_sorted_and_recursive(self, sample_tree: Path) -> None:
        names = [p.relative_to(sample_tree).as_posix() for p in iter_source_paths([sample_tree])]

        assert names == ["README.md", "logo.bin", "src/main.py", "src/util.py"]

    def test_default_ignores_skip_directories(self, sample_tree: Path) -> None:
        paths = list(iter_source_paths([sample_tree]))
        assert all("node_modules" not in p.parts for p in paths)

    def test_ingestignore_file(self, sample_tree: Path) -> None:
        (sample_tree / ".ingestignore").write_text("# comments are skipped\n*.md\n\nsrc/\n")

        names = {p.name for p in iter_source_paths([sample_tree])}

        assert names == {"logo.bin", ".ingestignore"}

    def test_exclude_roots(self, sample_tree: Path) -> None:
        paths = list(iter_source_paths([sample_tree], exclude=[sample_tree / "src"]))
        assert {p.name for p in paths} == {"README.md", "logo.bin"}

    def test_nonexistent_path(self, tmp_path: Path) -> None:
        assert list(iter_source_paths([tmp_path / "missing"])) == []

    def test_empty_directory(self, tmp_path: Path) -> None:
        assert list(iter_source_paths([tmp_path])) == []


class TestIgnorePatterns:
    """Test ignore matching rules."""

    def test_load_defaults_without_file(self, tmp_path: Path) -> None:
        assert load_ignore_patterns(tmp_path) == list(DEFAULT_IGNORE)

    @pytest.mark.parametrize(
        "relative",
        [".git/config", "a/node_modules/x.js", "build.lock", "deep/dir/run.log", ".env"],
    )
    def test_ignored(self, relative: str) -> None:
        assert is_ignored(Path(relative), DEFAULT_IGNORE)

    @pytest.mark.parametrize("relative", ["src/main.rs", "target.txt", "docs/index.md"])
    def test_not_ignored(self, relative: str) -> None:
        assert not is_ignored(Path(relative), DEFAULT_IGNORE)

    def test_directory_pattern_does_not_match_file_name(self) -> None:
        assert not is_ignored(Path("target"), ["target/"])
        assert is_ignored(Path("target/debug/app"), ["target/"])


class TestComputeContentHash:
    """Test compute_content_hash function."""

    def test_known_digest(self, tmp_path: Path) -> None:
        target = tmp_path / "file.txt"
        target.write_bytes(b"Hello, World!")

        assert compute_content_hash(target) == hashlib.sha256(b"Hello, World!").digest()

    def test_large_file(self, tmp_path: Path) -> None:
        data = b"x" * (3 * (1 << 20) + 17)
        target = tmp_path / "large.bin"
        target.write_bytes(data)

        assert compute_content_hash(target) == hashlib.sha256(data).digest()

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            compute_content_hash(tmp_path / "missing.txt")


class TestManifest:
    """Test ingest manifest generation."""

    def test_build_and_write(self, sample_tree: Path, tmp_path: Path) -> None:
        entries = build_manifest(sample_tree)
        out = write_manifest(entries, tmp_path / "manifest.json")

        payload = json.loads(out.read_text(encoding="utf-8"))
        assert [Path(item["path"]).name for item in payload] == [
            "README.md",
            "logo.bin",
            "main.py",
            "util.py",
        ]
        readme = payload[0]
        data = (sample_tree / "README.md").read_bytes()
        assert readme["hash"] == hashlib.sha256(data).hexdigest()
        assert readme["size"] == len(data)

    def test_write_failure(self, tmp_path: Path) -> None:
        with pytest.raises(IoError):
            write_manifest([], tmp_path / "missing-dir" / "manifest.json")
