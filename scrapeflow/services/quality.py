import hashlib
import json
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from scrapeflow.config.constants import FRESHNESS_HORIZON_DAYS, PARTIAL_THRESHOLD, VALID_THRESHOLD
from scrapeflow.models.result import QualityMetrics, Result, ValidationStatus

ScoreFn = Callable[[Result], float]


def serialize_content(content: Any) -> bytes:
    return json.dumps(content, sort_keys=True, default=str).encode()


def compute_checksum(content: Any) -> str:
    return hashlib.sha256(serialize_content(content)).hexdigest()


def _items(content: Any) -> list[Any]:
    if content is None:
        return []
    if isinstance(content, list):
        return content
    return [content]


def _filled(value: Any) -> bool:
    return value not in (None, "", [], {})


def completeness(result: Result) -> float:
    """Share of populated fields across collected items."""
    items = _items(result.content)
    if not items:
        return 0.0
    total = filled = 0
    for item in items:
        values = item.values() if isinstance(item, dict) else [item]
        for value in values:
            total += 1
            filled += _filled(value)
    return 100.0 * filled / total if total else 0.0


def accuracy(result: Result) -> float:
    """Full marks unless a recorded checksum disagrees with the content."""
    if not result.metadata.checksum:
        return 100.0
    return 100.0 if result.metadata.checksum == compute_checksum(result.content) else 0.0


def consistency(result: Result) -> float:
    """Share of record items sharing the most common key set."""
    records = [item for item in _items(result.content) if isinstance(item, dict)]
    if len(records) < 2:
        return 100.0
    shapes = Counter(frozenset(r.keys()) for r in records)
    return 100.0 * shapes.most_common(1)[0][1] / len(records)


def parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return None


def freshness(result: Result, now: datetime | None = None) -> float:
    """100 within a day of collection, decaying linearly to 0 at the horizon."""
    collected = parse_timestamp(result.timestamp)
    if collected is None:
        return 0.0
    age_days = ((now or datetime.now(UTC)) - collected).total_seconds() / 86400
    if age_days <= 1:
        return 100.0
    if age_days >= FRESHNESS_HORIZON_DAYS:
        return 0.0
    return 100.0 * (FRESHNESS_HORIZON_DAYS - age_days) / (FRESHNESS_HORIZON_DAYS - 1)


def _clamp(score: float) -> float:
    return max(0.0, min(100.0, float(score)))


@dataclass(frozen=True)
class QualityScorer:
    """Pluggable scoring functions, one per quality dimension."""

    completeness: ScoreFn = completeness
    accuracy: ScoreFn = accuracy
    consistency: ScoreFn = consistency
    freshness: ScoreFn = freshness

    def score(self, result: Result) -> QualityMetrics:
        return QualityMetrics(
            completeness=_clamp(self.completeness(result)),
            accuracy=_clamp(self.accuracy(result)),
            consistency=_clamp(self.consistency(result)),
            freshness=_clamp(self.freshness(result)),
        )


def derive_validation_status(metrics: QualityMetrics) -> ValidationStatus:
    """Fixed policy: VALID at 80+, PARTIAL at 56+ (70% of 80), INVALID below."""
    overall = metrics.overall
    if overall >= VALID_THRESHOLD:
        return ValidationStatus.VALID
    if overall >= PARTIAL_THRESHOLD:
        return ValidationStatus.PARTIAL
    return ValidationStatus.INVALID
