"""
Top-level test configuration for the IntuneGet migration service.
"""

import os

# Ensure test-friendly defaults
os.environ.setdefault("INTUNEGET_CATALOG__BACKEND", "file")
os.environ.setdefault("INTUNEGET_JSON_LOGS", "false")
os.environ.setdefault("INTUNEGET_LOG_LEVEL", "DEBUG")

from collections.abc import AsyncGenerator  # noqa: E402
from contextlib import asynccontextmanager  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from intuneget.catalog.file import FileCatalog  # noqa: E402
from intuneget.catalog.protocol import CatalogEntry  # noqa: E402
from intuneget.db.models import Base  # noqa: E402
from intuneget.db.session import SessionFactory  # noqa: E402


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[SessionFactory]:
    """Session factory over a throwaway SQLite database with the full schema.

    Sessions commit on exit and roll back on error, like get_db_session().
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'intuneget.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    @asynccontextmanager
    async def factory() -> AsyncGenerator[AsyncSession]:
        async with maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    yield factory
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory: SessionFactory) -> AsyncGenerator[AsyncSession]:
    """A single session for tests that stay inside one unit of work."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def catalog_entries() -> list[CatalogEntry]:
    """A small winget index covering the installer types the pipeline handles."""
    return [
        CatalogEntry(
            package_id="Google.Chrome",
            name="Google Chrome",
            publisher="Google LLC",
            version="120.0.6099.110",
            tags=["browser", "chromium"],
            installers=[
                {
                    "architecture": "x64",
                    "url": "https://dl.google.com/chrome/install/googlechromestandaloneenterprise64.msi",
                    "sha256": "a" * 64,
                    "type": "msi",
                    "scope": "machine",
                    "productCode": "{8A69D345-D564-463C-AFF1-A69D9E530F96}",
                },
                {
                    "architecture": "x86",
                    "url": "https://dl.google.com/chrome/install/googlechromestandaloneenterprise.msi",
                    "sha256": "b" * 64,
                    "type": "msi",
                    "scope": "machine",
                    "productCode": "{8A69D345-D564-463C-AFF1-A69D9E530F97}",
                },
            ],
        ),
        CatalogEntry(
            package_id="Google.ChromeRemoteDesktop",
            name="Chrome Remote Desktop Host",
            publisher="Google LLC",
            version="119.0.6045.28",
            installers=[
                {
                    "architecture": "x64",
                    "url": "https://dl.google.com/edgedl/chrome-remote-desktop/chromeremotedesktophost.msi",
                    "sha256": "c" * 64,
                    "type": "msi",
                    "productCode": "{5F1B0B5A-0C0C-4C5E-9A2B-6F0F5B4C9E11}",
                }
            ],
        ),
        CatalogEntry(
            package_id="Mozilla.Firefox",
            name="Mozilla Firefox",
            publisher="Mozilla",
            version="121.0",
            installers=[
                {
                    "architecture": "x64",
                    "url": "https://download-installer.cdn.mozilla.net/pub/firefox/releases/121.0/win64/en-US/Firefox%20Setup%20121.0.exe",
                    "sha256": "d" * 64,
                    "type": "nullsoft",
                    "scope": "machine",
                }
            ],
        ),
        CatalogEntry(
            package_id="Mozilla.Thunderbird",
            name="Mozilla Thunderbird",
            publisher="Mozilla",
            version="115.6.0",
            installers=[
                {
                    "architecture": "x64",
                    "url": "https://download-installer.cdn.mozilla.net/pub/thunderbird/releases/115.6.0/win64/en-US/Thunderbird%20Setup%20115.6.0.exe",
                    "sha256": "e" * 64,
                    "type": "nullsoft",
                }
            ],
        ),
        CatalogEntry(
            package_id="7zip.7zip",
            name="7-Zip",
            publisher="Igor Pavlov",
            version="23.01",
            installers=[
                {
                    "architecture": "x64",
                    "url": "https://www.7-zip.org/a/7z2301-x64.exe",
                    "sha256": "f" * 64,
                    "type": "exe",
                    "silentArgs": "/S",
                }
            ],
        ),
        CatalogEntry(
            package_id="Microsoft.VisualStudioCode",
            name="Microsoft Visual Studio Code",
            publisher="Microsoft Corporation",
            version="1.85.1",
            installers=[
                {
                    "architecture": "x64",
                    "url": "https://update.code.visualstudio.com/1.85.1/win32-x64-user/stable",
                    "sha256": "1" * 64,
                    "type": "inno",
                    "scope": "user",
                },
                {
                    "architecture": "x64",
                    "url": "https://update.code.visualstudio.com/1.85.1/win32-x64/stable",
                    "sha256": "2" * 64,
                    "type": "inno",
                    "scope": "machine",
                },
            ],
            detection_rules=[
                {
                    "type": "file",
                    "path": "%ProgramFiles%\\Microsoft VS Code",
                    "fileOrFolderName": "Code.exe",
                    "detectionType": "exists",
                    "check32BitOn64System": False,
                }
            ],
        ),
        CatalogEntry(
            package_id="Microsoft.WindowsTerminal",
            name="Windows Terminal",
            publisher="Microsoft Corporation",
            version="1.18.3181.0",
            installers=[
                {
                    "architecture": "x64",
                    "url": "https://github.com/microsoft/terminal/releases/download/v1.18.3181.0/Microsoft.WindowsTerminal_1.18.3181.0_8wekyb3d8bbwe.msixbundle",
                    "sha256": "3" * 64,
                    "type": "msix",
                    "packageFamilyName": "Microsoft.WindowsTerminal_8wekyb3d8bbwe",
                }
            ],
        ),
    ]


@pytest.fixture
def file_catalog(catalog_entries: list[CatalogEntry]) -> FileCatalog:
    """In-memory catalog seeded with catalog_entries."""
    return FileCatalog.from_entries(catalog_entries)
