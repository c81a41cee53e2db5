"""Shared fixtures for Mentat tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from mentat.embedding.encoder import PseudoEmbedder
from mentat.index.storage import SQLiteStore


@pytest.fixture
def store(tmp_path):
    """Create a temporary store for testing."""
    db = SQLiteStore(tmp_path / "index" / "kv.sqlite3")
    yield db
    db.close()


@pytest.fixture
def embedder() -> PseudoEmbedder:
    return PseudoEmbedder()


@pytest.fixture
def sample_tree(tmp_path) -> Path:
    """A small tree with text files, a binary file and an ignored directory."""
    root = tmp_path / "tree"
    (root / "src").mkdir(parents=True)
    (root / "node_modules" / "pkg").mkdir(parents=True)

    (root / "README.md").write_text("# Sample\n\nA tiny project used for indexing tests.\n")
    (root / "src" / "main.py").write_text(
        "def main():\n    print('hello world')\n\n" * 200
    )
    (root / "src" / "util.py").write_text("def add(a, b):\n    return a + b\n")
    (root / "logo.bin").write_bytes(b"\x89PNG\x00\x00binary")
    (root / "node_modules" / "pkg" / "index.js").write_text("module.exports = 1;\n")
    return root
