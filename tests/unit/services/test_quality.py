from datetime import UTC, datetime, timedelta

import pytest

from scrapeflow.models.result import QualityMetrics, Result, ValidationStatus
from scrapeflow.services.quality import (
    QualityScorer,
    accuracy,
    compute_checksum,
    completeness,
    consistency,
    derive_validation_status,
    freshness,
)


def make_result(content, timestamp=None) -> Result:
    return Result.new(
        job_id="job-1",
        source_type="WEBSITE",
        source_url="https://example.com",
        content=content,
        timestamp=timestamp,
    )


@pytest.mark.parametrize(
    "scores,expected",
    [
        ([100, 100, 100, 100], ValidationStatus.VALID),
        ([80, 80, 80, 80], ValidationStatus.VALID),
        ([70, 70, 70, 70], ValidationStatus.PARTIAL),
        ([56, 56, 56, 56], ValidationStatus.PARTIAL),
        ([55, 55, 55, 55], ValidationStatus.INVALID),
        ([50, 50, 50, 50], ValidationStatus.INVALID),
        ([100, 100, 40, 0], ValidationStatus.INVALID),
    ],
)
def test_validation_status_from_scores(scores, expected):
    metrics = QualityMetrics(
        completeness=scores[0], accuracy=scores[1], consistency=scores[2], freshness=scores[3]
    )
    assert derive_validation_status(metrics) == expected


def test_completeness_counts_empty_fields():
    result = make_result([{"a": "x", "b": ""}, {"a": "y", "b": "z"}])
    assert completeness(result) == 75.0
    assert completeness(make_result(None)) == 0.0


def test_accuracy_checks_recorded_checksum():
    result = make_result({"a": 1})
    assert accuracy(result) == 100.0
    result.metadata.checksum = compute_checksum({"a": 1})
    assert accuracy(result) == 100.0
    result.metadata.checksum = "deadbeef"
    assert accuracy(result) == 0.0


def test_consistency_uses_most_common_shape():
    result = make_result([{"a": 1}, {"a": 2}, {"a": 3}, {"b": 4}])
    assert consistency(result) == 75.0


def test_freshness_decays_with_age():
    now = datetime(2024, 6, 30, tzinfo=UTC)
    assert freshness(make_result({}, now - timedelta(hours=2)), now) == 100.0
    assert freshness(make_result({}, now - timedelta(days=30)), now) == 0.0
    middle = freshness(make_result({}, now - timedelta(days=15.5)), now)
    assert 0 < middle < 100


def test_scorer_clamps_pluggable_functions():
    scorer = QualityScorer(
        completeness=lambda r: 150, accuracy=lambda r: -5, consistency=lambda r: 50
    )
    metrics = scorer.score(make_result([{"a": 1}]))

    assert metrics.completeness == 100.0
    assert metrics.accuracy == 0.0
    assert metrics.consistency == 50.0
    assert metrics.freshness == 100.0
