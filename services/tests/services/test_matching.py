"""Tests for SCCM-to-Winget application matching."""

from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError

from intuneget.catalog.protocol import CatalogPackage, CatalogUnavailableError
from intuneget.config import MatchingConfig
from intuneget.services.matching_service import (
    AppIdentity,
    Candidate,
    MatchStatus,
    build_result,
    classify,
    match_application,
    publisher_similarity,
    rank_candidates,
    score_candidate,
    text_similarity,
    version_proximity,
)


def _candidate(package_id: str, confidence: float, publisher_score: float | None = None) -> Candidate:
    return Candidate(
        package_id=package_id,
        name=package_id,
        publisher="",
        version="1.0",
        confidence=confidence,
        name_score=confidence,
        publisher_score=publisher_score,
    )


class TestMatchApplication:
    async def test_exact_name_and_publisher_is_matched(self, file_catalog):
        app = AppIdentity(display_name="Google Chrome", manufacturer="Google LLC", version="120.0.6099.110")

        result = await match_application(app, file_catalog, MatchingConfig())

        assert result.status == MatchStatus.MATCHED
        assert result.best_match.package_id == "Google.Chrome"
        assert result.confidence >= 0.9
        assert result.alternates == []

    async def test_unknown_internal_app_is_unmatched(self, file_catalog):
        app = AppIdentity(display_name="Contoso Internal Payroll 3.2", manufacturer="Contoso")

        result = await match_application(app, file_catalog, MatchingConfig())

        assert result.status == MatchStatus.UNMATCHED
        assert result.best_match is None
        assert result.confidence == 0.0
        assert result.alternates == []

    async def test_short_name_without_publisher_is_partial(self, file_catalog):
        app = AppIdentity(display_name="Firefox")

        result = await match_application(app, file_catalog, MatchingConfig())

        assert result.status == MatchStatus.PARTIAL
        assert 0.5 <= result.confidence < 0.85
        assert [c.package_id for c in result.alternates] == ["Mozilla.Firefox"]
        assert result.best_match.package_id == "Mozilla.Firefox"

    async def test_sccm_noise_in_name(self, file_catalog):
        app = AppIdentity(display_name="Mozilla Firefox (x64 en-US)", manufacturer="Mozilla", version="121.0")

        result = await match_application(app, file_catalog, MatchingConfig())

        assert result.status == MatchStatus.MATCHED
        assert result.best_match.package_id == "Mozilla.Firefox"

    async def test_deterministic(self, file_catalog):
        app = AppIdentity(display_name="Chrome", manufacturer="Google")

        first = await match_application(app, file_catalog, MatchingConfig())
        second = await match_application(app, file_catalog, MatchingConfig())

        assert first == second

    async def test_empty_name_skips_catalog(self):
        catalog = AsyncMock()

        result = await match_application(AppIdentity(display_name=""), catalog, MatchingConfig())

        assert result.status == MatchStatus.UNMATCHED
        catalog.search.assert_not_called()

    async def test_catalog_unavailable_propagates(self):
        catalog = AsyncMock()
        catalog.search.side_effect = CatalogUnavailableError("connection refused")

        with pytest.raises(CatalogUnavailableError):
            await match_application(AppIdentity(display_name="Google Chrome"), catalog, MatchingConfig())

    async def test_candidate_limit_passed_to_search(self):
        catalog = AsyncMock()
        catalog.search.return_value = []

        await match_application(
            AppIdentity(display_name="Google Chrome"), catalog, MatchingConfig(candidate_limit=7)
        )

        catalog.search.assert_awaited_once_with("google chrome", limit=7)


class TestClassify:
    def test_thresholds_are_inclusive(self):
        config = MatchingConfig(matched_threshold=0.85, partial_threshold=0.5)

        assert classify(0.85, config) == MatchStatus.MATCHED
        assert classify(0.8499, config) == MatchStatus.PARTIAL
        assert classify(0.5, config) == MatchStatus.PARTIAL
        assert classify(0.4999, config) == MatchStatus.UNMATCHED

    def test_thresholds_come_from_config(self):
        config = MatchingConfig(matched_threshold=0.95, partial_threshold=0.7)

        assert classify(0.9, config) == MatchStatus.PARTIAL
        assert classify(0.6, config) == MatchStatus.UNMATCHED


class TestMatchingConfig:
    def test_partial_above_matched_rejected(self):
        with pytest.raises(ValidationError, match="partial_threshold"):
            MatchingConfig(matched_threshold=0.6, partial_threshold=0.7)

    def test_equal_thresholds_allowed(self):
        config = MatchingConfig(matched_threshold=0.7, partial_threshold=0.7)
        assert classify(0.7, config) == MatchStatus.MATCHED

    def test_zero_weights_rejected(self):
        with pytest.raises(ValidationError, match="must not both be zero"):
            MatchingConfig(name_weight=0.0, publisher_weight=0.0)

    def test_single_zero_weight_allowed(self):
        package = CatalogPackage(
            package_id="Mozilla.Firefox", name="Mozilla Firefox", publisher="Mozilla", version=""
        )
        config = MatchingConfig(name_weight=0.0, publisher_weight=1.0)

        candidate = score_candidate(
            AppIdentity(display_name="Firefox", manufacturer="Mozilla"), package, config
        )

        assert candidate.confidence == 1.0


class TestBuildResult:
    def test_no_candidates(self):
        result = build_result([], MatchingConfig())
        assert result.status == MatchStatus.UNMATCHED
        assert result.best_match is None
        assert result.confidence == 0.0

    def test_partial_keeps_alternates_above_threshold(self):
        ranked = [_candidate("A.One", 0.7), _candidate("A.Two", 0.6), _candidate("A.Three", 0.3)]

        result = build_result(ranked, MatchingConfig())

        assert result.status == MatchStatus.PARTIAL
        assert [c.package_id for c in result.alternates] == ["A.One", "A.Two"]

    def test_partial_alternates_capped(self):
        ranked = [_candidate(f"A.P{i}", 0.7 - i * 0.01) for i in range(8)]

        result = build_result(ranked, MatchingConfig(max_alternates=3))

        assert len(result.alternates) == 3

    def test_unmatched_reports_best_confidence(self):
        result = build_result([_candidate("A.One", 0.3)], MatchingConfig())
        assert result.status == MatchStatus.UNMATCHED
        assert result.best_match is None
        assert result.confidence == 0.3


class TestRankCandidates:
    def test_ties_broken_by_publisher_then_id_length(self):
        ranked = rank_candidates(
            [
                _candidate("Vendor.LongerName", 0.8, publisher_score=1.0),
                _candidate("Other.Name", 0.8, publisher_score=0.2),
                _candidate("Vendor.Name", 0.8, publisher_score=1.0),
                _candidate("Top.Pick", 0.9),
            ]
        )
        assert [c.package_id for c in ranked] == [
            "Top.Pick",
            "Vendor.Name",
            "Vendor.LongerName",
            "Other.Name",
        ]


class TestSignals:
    def test_text_similarity_bounds(self):
        assert text_similarity("google chrome", "google chrome") == 1.0
        assert text_similarity("", "google chrome") == 0.0
        assert 0.0 < text_similarity("chrome", "google chrome") < 1.0

    def test_subset_name_is_not_exact(self):
        score = text_similarity("firefox", "mozilla firefox")
        assert 0.5 <= score < 0.85
        assert text_similarity("mozilla firefox", "firefox") == score

    def test_word_order_tolerated(self):
        assert text_similarity("studio code visual", "visual studio code") > text_similarity(
            "studio code visual", "visual basic"
        )

    def test_publisher_substring_is_full_match(self):
        assert publisher_similarity("microsoft", "microsoft windows") == 1.0

    def test_publisher_unknown(self):
        assert publisher_similarity("", "google") is None

    def test_version_proximity(self):
        assert version_proximity("121.0", "121") == 1.0
        assert version_proximity("121.0", "121.4.1") == 0.5
        assert version_proximity("120.0", "121.0") == 0.0
        assert version_proximity("latest", "121.0") is None

    def test_missing_publisher_drops_signal(self):
        package = CatalogPackage(
            package_id="Mozilla.Firefox", name="Mozilla Firefox", publisher="Mozilla", version="121.0"
        )
        candidate = score_candidate(AppIdentity(display_name="Mozilla Firefox"), package, MatchingConfig())

        assert candidate.publisher_score is None
        assert candidate.version_score is None
        assert candidate.confidence == candidate.name_score == 1.0

    def test_partial_match_shape(self):
        candidate = _candidate("Mozilla.Firefox", 0.65)
        assert candidate.to_partial_match() == {
            "wingetId": "Mozilla.Firefox",
            "name": "Mozilla.Firefox",
            "publisher": "",
            "confidence": 0.65,
        }
