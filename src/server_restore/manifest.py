from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Set, Tuple

from .archive import ExtractedTree

LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class PackageManifest:
    packages: Tuple[str, ...] = ()

    def __len__(self) -> int:
        return len(self.packages)


def parse_manifest(text: str) -> PackageManifest:
    """Parse a newline-delimited package list, keeping first-seen order."""
    seen: Set[str] = set()
    packages: List[str] = []
    for line in text.splitlines():
        name = line.strip()
        if not name or name.startswith("#"):
            continue
        if name in seen:
            continue
        seen.add(name)
        packages.append(name)
    return PackageManifest(packages=tuple(packages))


def load_manifest(tree: ExtractedTree, relative_path: str) -> PackageManifest:
    path = tree.path(relative_path)
    if not path.is_file():
        LOG.info("No package manifest at %s; skipping package reinstall", relative_path)
        return PackageManifest()
    manifest = parse_manifest(path.read_text(encoding="utf-8", errors="replace"))
    LOG.info("Loaded %d package(s) from %s", len(manifest), relative_path)
    return manifest
