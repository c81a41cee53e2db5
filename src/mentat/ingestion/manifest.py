"""Ingest manifest: the enumerated file list with content hashes."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Iterable, List

from mentat.errors import IoError
from mentat.models import ManifestEntry
from mentat.utils.files import compute_content_hash, iter_source_paths

LOGGER = logging.getLogger(__name__)

MANIFEST_FILENAME = "ingest_manifest.json"


def build_manifest(root: Path, *, exclude: Iterable[Path] = ()) -> List[ManifestEntry]:
    entries: List[ManifestEntry] = []
    for path in iter_source_paths([root], exclude=exclude):
        try:
            digest = compute_content_hash(path)
            size = path.stat().st_size
        except OSError as exc:
            raise IoError(f"Unable to read {path}: {exc}") from exc
        entries.append(ManifestEntry(path=str(path), hash=digest.hex(), size=size))
    LOGGER.info("Enumerated %d files under %s", len(entries), root)
    return entries


def write_manifest(entries: Iterable[ManifestEntry], out_path: Path) -> Path:
    payload = [asdict(entry) for entry in entries]
    try:
        out_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    except OSError as exc:
        raise IoError(f"Unable to write manifest {out_path}: {exc}") from exc
    return out_path
