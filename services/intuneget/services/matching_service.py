"""
SCCM application to Winget package matching.

match_application() scores catalog candidates for one SCCM application and
classifies the best one:

    confidence >= matched_threshold  -> matched (single package)
    confidence >= partial_threshold  -> partial (top candidates kept as alternates)
    otherwise / no candidates        -> unmatched

Signals:
    name       similarity of normalized names (dominant weight)
    publisher  similarity of normalized publishers (dropped when either side is unknown)
    version    proximity bonus when both versions parse

Matching is pure: it reads the catalog and returns a MatchResult. Persisting
the result is the matching orchestrator's job. CatalogUnavailableError is
never turned into "unmatched"; it propagates so the caller can retry.
"""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Protocol

from rapidfuzz import fuzz

from intuneget.catalog.protocol import CatalogPackage, PackageCatalog
from intuneget.config import MatchingConfig, settings
from intuneget.logging_config import get_logger
from intuneget.services.normalization import (
    humanize_package_id,
    normalize_name,
    normalize_publisher,
    parse_version,
)

logger = get_logger(__name__)


class MatchStatus(StrEnum):
    """Outcome of matching one application."""

    MATCHED = "matched"
    PARTIAL = "partial"
    UNMATCHED = "unmatched"


class MatchableApp(Protocol):
    """Anything carrying the descriptive fields of an SCCM application."""

    display_name: str
    manufacturer: str | None
    version: str | None


@dataclass(frozen=True)
class AppIdentity:
    """Minimal MatchableApp for callers without an SccmApp row."""

    display_name: str
    manufacturer: str | None = None
    version: str | None = None


@dataclass(frozen=True)
class Candidate:
    """A scored catalog package."""

    package_id: str
    name: str
    publisher: str
    version: str
    confidence: float
    name_score: float
    publisher_score: float | None = None
    version_score: float | None = None

    def to_partial_match(self) -> dict:
        """Shape stored in sccm_apps.partial_matches."""
        return {
            "wingetId": self.package_id,
            "name": self.name,
            "publisher": self.publisher,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class MatchResult:
    status: MatchStatus
    best_match: Candidate | None
    confidence: float
    alternates: list[Candidate] = field(default_factory=list)


# --- Signals ---


def text_similarity(a: str, b: str) -> float:
    """Mean of the token-set and plain edit ratios, scaled to 0..1.

    token_set_ratio alone scores a subset ("firefox" vs "mozilla firefox") as
    identical; the plain ratio pulls such pairs below an exact match.
    """
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    return (fuzz.token_set_ratio(a, b) + fuzz.ratio(a, b)) / 200


def name_similarity(app_name: str, package: CatalogPackage) -> float:
    """Best of the similarity to the package name and to its humanized id."""
    return max(
        text_similarity(app_name, normalize_name(package.name)),
        text_similarity(app_name, humanize_package_id(package.package_id)),
    )


def publisher_similarity(app_publisher: str, package_publisher: str) -> float | None:
    """Publisher signal; None when either side has no publisher."""
    if not app_publisher or not package_publisher:
        return None
    if app_publisher in package_publisher or package_publisher in app_publisher:
        return 1.0
    return text_similarity(app_publisher, package_publisher)


def version_proximity(app_version: str | None, package_version: str | None) -> float | None:
    """1.0 for equal versions, 0.5 for the same major, 0.0 otherwise.

    None when either version does not parse.
    """
    left, right = parse_version(app_version), parse_version(package_version)
    if left is None or right is None:
        return None

    def trim(parts: tuple[int, ...]) -> tuple[int, ...]:
        while len(parts) > 1 and parts[-1] == 0:
            parts = parts[:-1]
        return parts

    if trim(left) == trim(right):
        return 1.0
    if left[0] == right[0]:
        return 0.5
    return 0.0


def score_candidate(
    app: MatchableApp,
    package: CatalogPackage,
    config: MatchingConfig,
    *,
    normalized_name: str | None = None,
) -> Candidate:
    """Combine the signals for one package into a Candidate."""
    app_name = normalized_name if normalized_name is not None else normalize_name(app.display_name)
    name_score = name_similarity(app_name, package)
    publisher_score = publisher_similarity(
        normalize_publisher(app.manufacturer), normalize_publisher(package.publisher)
    )
    version_score = version_proximity(app.version, package.version)

    if publisher_score is None:
        confidence = name_score
    else:
        total_weight = config.name_weight + config.publisher_weight
        confidence = (
            config.name_weight * name_score + config.publisher_weight * publisher_score
        ) / total_weight
    if version_score is not None:
        confidence += config.version_bonus * version_score

    return Candidate(
        package_id=package.package_id,
        name=package.name,
        publisher=package.publisher,
        version=package.version,
        confidence=round(min(max(confidence, 0.0), 1.0), 4),
        name_score=round(name_score, 4),
        publisher_score=round(publisher_score, 4) if publisher_score is not None else None,
        version_score=version_score,
    )


def rank_candidates(candidates: list[Candidate]) -> list[Candidate]:
    """Deterministic order: confidence, publisher similarity, shorter id, id."""
    return sorted(
        candidates,
        key=lambda c: (
            -c.confidence,
            -(c.publisher_score if c.publisher_score is not None else -1.0),
            len(c.package_id),
            c.package_id,
        ),
    )


def classify(confidence: float, config: MatchingConfig) -> MatchStatus:
    """Map a confidence to a status. Both thresholds are inclusive."""
    if confidence >= config.matched_threshold:
        return MatchStatus.MATCHED
    if confidence >= config.partial_threshold:
        return MatchStatus.PARTIAL
    return MatchStatus.UNMATCHED


def build_result(ranked: list[Candidate], config: MatchingConfig) -> MatchResult:
    """Classify an already-ranked candidate list."""
    if not ranked:
        return MatchResult(status=MatchStatus.UNMATCHED, best_match=None, confidence=0.0)

    best = ranked[0]
    status = classify(best.confidence, config)
    match status:
        case MatchStatus.MATCHED:
            return MatchResult(status=status, best_match=best, confidence=best.confidence)
        case MatchStatus.PARTIAL:
            alternates = [c for c in ranked if c.confidence >= config.partial_threshold]
            return MatchResult(
                status=status,
                best_match=best,
                confidence=best.confidence,
                alternates=alternates[: config.max_alternates],
            )
        case MatchStatus.UNMATCHED:
            return MatchResult(status=status, best_match=None, confidence=best.confidence)


async def match_application(
    app: MatchableApp,
    catalog: PackageCatalog,
    config: MatchingConfig | None = None,
) -> MatchResult:
    """Match one SCCM application against the catalog.

    Raises:
        CatalogUnavailableError: If the catalog cannot be queried.
    """
    cfg = config or settings.matching
    normalized = normalize_name(app.display_name)
    if not normalized:
        return MatchResult(status=MatchStatus.UNMATCHED, best_match=None, confidence=0.0)

    packages = await catalog.search(normalized, limit=cfg.candidate_limit)
    candidates = [score_candidate(app, p, cfg, normalized_name=normalized) for p in packages]
    result = build_result(rank_candidates(candidates), cfg)

    logger.debug(
        "Application matched",
        display_name=app.display_name,
        status=result.status,
        confidence=result.confidence,
        best=result.best_match.package_id if result.best_match else None,
        candidates=len(candidates),
    )
    return result
