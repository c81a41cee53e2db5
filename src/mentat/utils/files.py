"""Utility helpers for working with files."""

from __future__ import annotations

import hashlib
from fnmatch import fnmatch
from pathlib import Path
from typing import Iterable, Iterator, Sequence

IGNORE_FILENAME = ".ingestignore"

DEFAULT_IGNORE: tuple[str, ...] = (
    ".git/",
    "target/",
    "node_modules/",
    ".DS_Store",
    "Thumbs.db",
    "*.lock",
    "*.tmp",
    "*.log",
    "*.swp",
    "*.swo",
    "index/",
    ".claude/",
    ".vscode/",
    ".idea/",
    ".env",
    ".env.local",
)


def load_ignore_patterns(root: Path) -> list[str]:
    """Built-in patterns plus the non-comment lines of ``root/.ingestignore``."""
    patterns = list(DEFAULT_IGNORE)
    ignore_file = root / IGNORE_FILENAME
    if ignore_file.is_file():
        for line in ignore_file.read_text(encoding="utf-8", errors="replace").splitlines():
            line = line.strip()
            if line and not line.startswith("#"):
                patterns.append(line)
    return patterns


def is_ignored(relative: Path, patterns: Sequence[str]) -> bool:
    """Match a root-relative path against glob patterns.

    Patterns ending in ``/`` match directory components only; the others match
    the whole relative path or any single component.
    """
    parts = relative.parts
    posix = relative.as_posix()
    for pattern in patterns:
        if pattern.endswith("/"):
            name = pattern.rstrip("/")
            if any(fnmatch(part, name) for part in parts[:-1]):
                return True
        elif fnmatch(posix, pattern) or any(fnmatch(part, pattern) for part in parts):
            return True
    return False


def iter_source_paths(
    inputs: Iterable[Path],
    *,
    exclude: Iterable[Path] = (),
) -> Iterator[Path]:
    """Yield files from input paths, descending into directories in sorted order."""
    excluded = [Path(p).resolve() for p in exclude]
    for item in inputs:
        item = Path(item)
        if item.is_dir():
            patterns = load_ignore_patterns(item)
            for child in sorted(item.rglob("*")):
                if not child.is_file():
                    continue
                if is_ignored(child.relative_to(item), patterns):
                    continue
                if _is_excluded(child, excluded):
                    continue
                yield child
        elif item.is_file():
            yield item


def _is_excluded(path: Path, excluded: Sequence[Path]) -> bool:
    if not excluded:
        return False
    resolved = path.resolve()
    return any(resolved == root or root in resolved.parents for root in excluded)


def compute_content_hash(path: Path) -> bytes:
    """Compute the SHA256 digest of a file's bytes."""
    sha = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1 << 20), b""):
            sha.update(chunk)
    return sha.digest()
