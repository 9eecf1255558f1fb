"""
Package catalog protocol and types.

Defines the PackageCatalog Protocol that all catalog backends must satisfy,
along with the shared package/installer/manifest types and exceptions.
"""

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

# --- Data Types ---


@dataclass(frozen=True)
class CatalogPackage:
    """A Winget package as returned by catalog search."""

    package_id: str
    name: str
    publisher: str
    version: str
    tags: tuple[str, ...] = ()


@dataclass(frozen=True)
class Installer:
    """One installer entry of a package manifest."""

    architecture: str
    url: str
    sha256: str
    type: str
    scope: str | None = None
    product_code: str | None = None
    package_family_name: str | None = None
    silent_args: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Installer":
        """Build from the camelCase shape stored in the winget index."""
        return cls(
            architecture=str(data.get("architecture") or "neutral").lower(),
            url=str(data.get("url") or ""),
            sha256=str(data.get("sha256") or ""),
            type=str(data.get("type") or "exe").lower(),
            scope=data.get("scope") or None,
            product_code=data.get("productCode") or None,
            package_family_name=data.get("packageFamilyName") or None,
            silent_args=data.get("silentArgs") or None,
        )


@dataclass(frozen=True)
class Manifest:
    """Installable view of one package version."""

    package_id: str
    name: str
    publisher: str
    version: str
    installers: tuple[Installer, ...] = ()
    detection_rules: tuple[dict[str, Any], ...] | None = None
    description: str | None = None

    def best_installer(self, preferred_architecture: str | None = None) -> Installer | None:
        """Pick the installer to deploy.

        Preference: the requested architecture, then x64, neutral, x86, arm64.
        Within one architecture, machine scope wins over user scope.
        """
        if not self.installers:
            return None
        order = ["x64", "neutral", "x86", "arm64"]
        if preferred_architecture:
            order.insert(0, preferred_architecture.lower())

        def rank(inst: Installer) -> tuple[int, int]:
            arch_rank = order.index(inst.architecture) if inst.architecture in order else len(order)
            scope_rank = 1 if inst.scope == "user" else 0
            return arch_rank, scope_rank

        return min(self.installers, key=rank)


@dataclass
class CatalogEntry:
    """Raw catalog row used to seed backends (index files, test fixtures)."""

    package_id: str
    name: str
    publisher: str = ""
    version: str = ""
    tags: list[str] = field(default_factory=list)
    installers: list[dict[str, Any]] = field(default_factory=list)
    detection_rules: list[dict[str, Any]] | None = None
    description: str | None = None

    def to_package(self) -> CatalogPackage:
        return CatalogPackage(
            package_id=self.package_id,
            name=self.name,
            publisher=self.publisher,
            version=self.version,
            tags=tuple(self.tags),
        )

    def to_manifest(self) -> Manifest:
        return Manifest(
            package_id=self.package_id,
            name=self.name,
            publisher=self.publisher,
            version=self.version,
            installers=tuple(Installer.from_dict(i) for i in self.installers),
            detection_rules=tuple(self.detection_rules) if self.detection_rules else None,
            description=self.description,
        )


# --- Exceptions ---


class CatalogError(Exception):
    """Base exception for catalog operations."""


class CatalogUnavailableError(CatalogError):
    """The catalog could not be reached. Transient: callers should retry.

    Distinct from "no match found", which is an empty search result.
    """


# --- Protocol ---


@runtime_checkable
class PackageCatalog(Protocol):
    """Protocol defining the package catalog interface.

    All methods are async. Not-found is a normal outcome (empty list / None),
    never an exception.
    """

    async def search(self, query: str, *, limit: int = 20) -> list[CatalogPackage]:
        """Find packages whose name or id shares tokens with the query.

        Args:
            query: Free-text query, usually a normalized application name.
            limit: Maximum number of packages returned.

        Raises:
            CatalogUnavailableError: If the backing store is unreachable.
        """
        ...

    async def get_package(self, package_id: str) -> CatalogPackage | None:
        """Look up one package by its Winget id."""
        ...

    async def get_manifest(self, package_id: str, version: str | None = None) -> Manifest | None:
        """Return the manifest for a package version (latest when version is None).

        Returns None when the package or the requested version is unknown.
        """
        ...

    async def close(self) -> None:
        """Release backend resources."""
        ...
