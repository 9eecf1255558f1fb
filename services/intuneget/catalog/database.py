"""
Database-backed package catalog.

Queries the catalog_packages table, which holds the winget-pkgs index synced
by the catalog sync job. Every call opens its own short-lived session so the
catalog can be shared by concurrent matching waves.

Searches are substring matches on lower(name) / lower(winget_id), ranked by
how many query tokens each row contains before the result window is cut.
On PostgreSQL the LIKE filters are served by the trigram GIN indexes from
migration 001.
"""

from __future__ import annotations

from sqlalchemy import case, func, or_, select
from sqlalchemy.exc import DBAPIError

from intuneget.catalog.protocol import (
    CatalogEntry,
    CatalogPackage,
    CatalogUnavailableError,
    Manifest,
)
from intuneget.db import models
from intuneget.db.session import SessionFactory
from intuneget.logging_config import get_logger
from intuneget.services.normalization import tokenize

logger = get_logger(__name__)

# Tokens shorter than this match too much of the catalog to be useful
MIN_TOKEN_LENGTH = 2


def _to_entry(row: models.CatalogPackage) -> CatalogEntry:
    return CatalogEntry(
        package_id=row.winget_id,
        name=row.name,
        publisher=row.publisher or "",
        version=row.latest_version or "",
        tags=list(row.tags or []),
        installers=list(row.installers or []),
        detection_rules=row.detection_rules or None,
        description=row.description,
    )


def _escape_like(token: str) -> str:
    return token.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _word_match(column, token: str, separator: str):
    """column holds token as a whole word, split on separator."""
    escaped = _escape_like(token)
    return or_(
        column == token,
        column.like(f"{escaped}{separator}%", escape="\\"),
        column.like(f"%{separator}{escaped}", escape="\\"),
        column.like(f"%{separator}{escaped}{separator}%", escape="\\"),
    )


class DatabaseCatalog:
    """Catalog served from the catalog_packages table."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def _fetch_one(self, package_id: str) -> CatalogEntry | None:
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(models.CatalogPackage).where(
                        func.lower(models.CatalogPackage.winget_id) == package_id.lower()
                    )
                )
                row = result.scalar_one_or_none()
                return _to_entry(row) if row else None
        except (DBAPIError, OSError) as e:
            logger.warning("Catalog lookup failed", package_id=package_id, error=str(e))
            raise CatalogUnavailableError(f"Catalog lookup failed: {e}") from e

    async def search(self, query: str, *, limit: int = 20) -> list[CatalogPackage]:
        tokens = [t for t in tokenize(query) if len(t) >= MIN_TOKEN_LENGTH]
        if not tokens:
            return []

        name = func.lower(models.CatalogPackage.name)
        winget_id = func.lower(models.CatalogPackage.winget_id)
        token_hits = []
        hits = None
        for token in tokens:
            pattern = f"%{_escape_like(token)}%"
            contains = or_(name.like(pattern, escape="\\"), winget_id.like(pattern, escape="\\"))
            whole_word = or_(_word_match(name, token, " "), _word_match(winget_id, token, "."))
            token_hits.append(contains)
            # A whole-word hit counts twice so "go" ranks Go above Google
            score = case((contains, 1), else_=0) + case((whole_word, 1), else_=0)
            hits = score if hits is None else hits + score

        stmt = (
            select(models.CatalogPackage)
            .where(or_(*token_hits))
            .order_by(
                hits.desc(),
                models.CatalogPackage.popularity_rank.is_(None),
                models.CatalogPackage.popularity_rank,
                models.CatalogPackage.winget_id,
            )
            .limit(limit * 4)
        )
        try:
            async with self._session_factory() as db:
                rows = (await db.execute(stmt)).scalars().all()
        except (DBAPIError, OSError) as e:
            logger.warning("Catalog search failed", query=query, error=str(e))
            raise CatalogUnavailableError(f"Catalog search failed: {e}") from e

        query_tokens = set(tokens)

        def overlap(row: models.CatalogPackage) -> int:
            row_tokens = set(tokenize(row.name)) | set(tokenize(row.winget_id.replace(".", " ")))
            return len(query_tokens & row_tokens)

        ranked = sorted(rows, key=lambda r: (-overlap(r), len(r.winget_id), r.winget_id))
        return [_to_entry(r).to_package() for r in ranked[:limit]]

    async def get_package(self, package_id: str) -> CatalogPackage | None:
        entry = await self._fetch_one(package_id)
        return entry.to_package() if entry else None

    async def get_manifest(self, package_id: str, version: str | None = None) -> Manifest | None:
        entry = await self._fetch_one(package_id)
        if entry is None:
            return None
        if version is not None and version != entry.version:
            return None
        return entry.to_manifest()

    async def close(self) -> None:
        """Sessions are owned by the database engine; nothing to release."""
