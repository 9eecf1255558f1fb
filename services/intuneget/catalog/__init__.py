"""
Winget package catalog for the IntuneGet migration service.

Provides init_catalog() / close_catalog() for app lifespan and
get_catalog() as a FastAPI dependency.
"""

from __future__ import annotations

from intuneget.catalog.protocol import PackageCatalog
from intuneget.config import CatalogBackend, settings
from intuneget.logging_config import get_logger

logger = get_logger(__name__)

# Module-level catalog instance
_catalog: PackageCatalog | None = None


async def init_catalog() -> None:
    """Initialize the catalog backend based on configuration.

    Called during app startup (lifespan), after init_db().
    """
    global _catalog  # noqa: PLW0603
    cfg = settings.catalog

    match cfg.backend:
        case CatalogBackend.DATABASE:
            from intuneget.catalog.database import DatabaseCatalog
            from intuneget.db.session import get_db_session

            _catalog = DatabaseCatalog(session_factory=get_db_session)
            logger.info("Catalog initialized", backend="database")

        case CatalogBackend.FILE:
            from intuneget.catalog.file import FileCatalog

            _catalog = await FileCatalog.load(cfg.index_path)
            logger.info("Catalog initialized", backend="file", index_path=cfg.index_path)


async def close_catalog() -> None:
    """Close the catalog backend and release resources.

    Called during app shutdown (lifespan).
    """
    global _catalog  # noqa: PLW0603
    if _catalog is not None:
        await _catalog.close()
        _catalog = None
        logger.info("Catalog closed")


def get_catalog() -> PackageCatalog:
    """FastAPI dependency that returns the catalog backend.

    Raises RuntimeError if the catalog has not been initialized.
    """
    if _catalog is None:
        raise RuntimeError("Catalog not initialized - call init_catalog() first")
    return _catalog


def get_catalog_or_none() -> PackageCatalog | None:
    """Return the catalog backend if initialized, otherwise None."""
    return _catalog
