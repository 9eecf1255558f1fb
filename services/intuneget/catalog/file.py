"""
File-backed package catalog.

Loads a JSON winget index (a list of package objects, or an object with a
"packages" list) into memory and serves searches from an inverted token
index. Suitable for dev/CI and for air-gapped installs that ship a static
index; production uses the database backend.
"""

from __future__ import annotations

import json
from collections import defaultdict
from collections.abc import Iterable
from typing import Any

import aiofiles

from intuneget.catalog.protocol import (
    CatalogEntry,
    CatalogError,
    CatalogPackage,
    Manifest,
)
from intuneget.logging_config import get_logger
from intuneget.services.normalization import humanize_package_id, normalize_name, tokenize

logger = get_logger(__name__)


def _entry_from_json(raw: dict[str, Any]) -> CatalogEntry:
    package_id = raw.get("id") or raw.get("wingetId") or raw.get("packageIdentifier")
    if not package_id or not raw.get("name"):
        raise CatalogError(f"Catalog entry missing id or name: {raw!r}")
    return CatalogEntry(
        package_id=package_id,
        name=raw["name"],
        publisher=raw.get("publisher") or "",
        version=raw.get("version") or raw.get("latestVersion") or "",
        tags=list(raw.get("tags") or []),
        installers=list(raw.get("installers") or []),
        detection_rules=raw.get("detectionRules") or None,
        description=raw.get("description"),
    )


class FileCatalog:
    """Catalog served from an in-memory index."""

    def __init__(self, entries: Iterable[CatalogEntry]) -> None:
        self._entries: dict[str, CatalogEntry] = {}
        # Winget ids are case-insensitive
        self._by_lower_id: dict[str, str] = {}
        self._index: dict[str, set[str]] = defaultdict(set)

        for entry in entries:
            self._entries[entry.package_id] = entry
            self._by_lower_id[entry.package_id.lower()] = entry.package_id
            for token in self._entry_tokens(entry):
                self._index[token].add(entry.package_id)

        logger.info("File catalog indexed", packages=len(self._entries), tokens=len(self._index))

    @staticmethod
    def _entry_tokens(entry: CatalogEntry) -> set[str]:
        tokens = set(tokenize(normalize_name(entry.name)))
        tokens.update(tokenize(entry.name))
        tokens.update(tokenize(humanize_package_id(entry.package_id)))
        return tokens

    @classmethod
    def from_entries(cls, entries: Iterable[CatalogEntry | dict[str, Any]]) -> FileCatalog:
        """Build a catalog from entries or raw index dicts."""
        return cls(e if isinstance(e, CatalogEntry) else _entry_from_json(e) for e in entries)

    @classmethod
    async def load(cls, path: str) -> FileCatalog:
        """Read and index a JSON winget index file."""
        try:
            async with aiofiles.open(path) as f:
                raw = json.loads(await f.read())
        except (OSError, json.JSONDecodeError) as e:
            raise CatalogError(f"Cannot load catalog index {path}: {e}") from e

        if isinstance(raw, dict):
            raw = raw.get("packages", [])
        return cls.from_entries(raw)

    def _resolve(self, package_id: str) -> CatalogEntry | None:
        canonical = self._by_lower_id.get(package_id.lower())
        return self._entries.get(canonical) if canonical else None

    async def search(self, query: str, *, limit: int = 20) -> list[CatalogPackage]:
        query_tokens = tokenize(query)
        if not query_tokens:
            return []

        overlap: dict[str, int] = defaultdict(int)
        for token in query_tokens:
            for package_id in self._index.get(token, ()):
                overlap[package_id] += 1

        ranked = sorted(overlap, key=lambda pid: (-overlap[pid], len(pid), pid))
        return [self._entries[pid].to_package() for pid in ranked[:limit]]

    async def get_package(self, package_id: str) -> CatalogPackage | None:
        entry = self._resolve(package_id)
        return entry.to_package() if entry else None

    async def get_manifest(self, package_id: str, version: str | None = None) -> Manifest | None:
        entry = self._resolve(package_id)
        if entry is None:
            return None
        # Only the latest version is indexed
        if version is not None and version != entry.version:
            return None
        return entry.to_manifest()

    async def close(self) -> None:
        self._entries.clear()
        self._by_lower_id.clear()
        self._index.clear()
