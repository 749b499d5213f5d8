"""
Name: Content freshness report

Responsibilities:
  - Turn per-source "last indexed" timestamps into fresh / stale counts,
    age stats and age buckets
  - Shared by the in-memory and Postgres stores (same output shape)

Notes:
  - Age of a source = days since its newest live chunk was indexed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

AGE_RANGES: tuple[tuple[str, int, int | None], ...] = (
    ("0-7", 0, 7),
    ("8-30", 8, 30),
    ("31-90", 31, 90),
    ("91-180", 91, 180),
    ("181+", 181, None),
)


@dataclass(frozen=True)
class SourceFreshness:
    source_uri: str
    source_type: str
    last_indexed: datetime
    chunk_count: int


def _age_days(ts: datetime, now: datetime) -> int:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return max(0, (now - ts).days)


def _bucket(age: int) -> str:
    for label, low, high in AGE_RANGES:
        if age >= low and (high is None or age <= high):
            return label
    return AGE_RANGES[-1][0]


def build_freshness_report(
    sources: Iterable[SourceFreshness],
    threshold_days: int,
    now: datetime | None = None,
) -> dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    by_range = {label: 0 for label, _, _ in AGE_RANGES}
    stale: list[dict[str, Any]] = []
    ages: list[int] = []

    for source in sources:
        age = _age_days(source.last_indexed, now)
        ages.append(age)
        by_range[_bucket(age)] += 1
        if age > threshold_days:
            stale.append(
                {
                    "source_uri": source.source_uri,
                    "source_type": source.source_type,
                    "chunk_count": source.chunk_count,
                    "last_indexed": source.last_indexed.isoformat(),
                    "age_days": age,
                }
            )

    stale.sort(key=lambda item: (-item["age_days"], item["source_uri"]))
    return {
        "threshold_days": threshold_days,
        "total_sources": len(ages),
        "fresh_sources": len(ages) - len(stale),
        "stale_sources": len(stale),
        "average_age_days": round(sum(ages) / len(ages), 1) if ages else 0,
        "oldest_content_days": max(ages) if ages else 0,
        "newest_content_days": min(ages) if ages else 0,
        "by_age_range": by_range,
        "stale": stale,
    }
