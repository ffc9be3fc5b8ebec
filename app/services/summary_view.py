from __future__ import annotations

import logging
from datetime import datetime
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Any, Iterable, Mapping, Sequence

from app.models.schemas import (
    AreaPointOut,
    ChartDataOut,
    DashboardStatsOut,
    GenderTotalsOut,
    NationalityCount,
    NationalitySnapshotOut,
    NormalizedSummary,
    RegionStats,
    SnapshotOut,
    StoredSummary,
    TrendPointOut,
)
from app.services.field_classifier import parse_count

logger = logging.getLogger(__name__)

# Key spellings seen across summary generations: current camelCase, the
# first PascalCase model, and snake_case dumps.
_SOURCE_KEYS = ("source", "Source")
_TOTAL_KEYS = ("total", "Total")
_DIFFERENT_TOTAL_KEYS = (
    "totalDifferentGenderPairing",
    "total_different_gender_pairing",
    "TotalDifferentGender",
    "totalDifferentGender",
)
_SAME_TOTAL_KEYS = (
    "totalSameGenderPairing",
    "total_same_gender_pairing",
    "TotalSameGender",
    "totalSameGender",
)
_REGION_LIST_KEYS = ("byRegion", "by_region", "ByArea", "byArea")
_REGION_NAME_KEYS = ("region", "Region", "Area", "area")
_REGION_SAME_KEYS = ("sameGenderPairing", "same_gender_pairing", "SameGender", "sameGender")
_REGION_DIFFERENT_KEYS = ("differentGenderPairing", "different_gender_pairing", "DifferentGender", "differentGender")
_NATIONALITY_KEYS = ("nationalityBreakdown", "nationality_breakdown", "NationalityBreakdown", "nationality", "Nationality")

_PERCENT_QUANT = Decimal("0.01")


def _first(document: Mapping[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        if key in document:
            return document[key]
    return None


def _coerce_regions(items: Any) -> tuple[RegionStats, ...]:
    if not isinstance(items, list):
        return ()
    regions: dict[str, RegionStats] = {}
    for item in items:
        if not isinstance(item, dict):
            continue
        name = str(_first(item, _REGION_NAME_KEYS) or "").strip()
        if not name:
            continue
        regions[name] = RegionStats(
            region=name,
            total=parse_count(_first(item, _TOTAL_KEYS)),
            same_gender_pairing=parse_count(_first(item, _REGION_SAME_KEYS)),
            different_gender_pairing=parse_count(_first(item, _REGION_DIFFERENT_KEYS)),
        )
    return tuple(sorted(regions.values(), key=lambda item: item.total, reverse=True))


def _coerce_breakdown(value: Any) -> dict[str, NationalityCount]:
    if not isinstance(value, dict):
        return {}
    counts: dict[str, NationalityCount] = {}
    for name, entry in value.items():
        if not isinstance(entry, dict):
            continue
        same = parse_count(_first(entry, ("same", "Same")))
        different = parse_count(_first(entry, ("different", "Different")))
        if same or different:
            counts[str(name)] = NationalityCount(same=same, different=different)
    return dict(sorted(counts.items(), key=lambda item: item[1].total, reverse=True))


def coerce_summary(document: Any, fallback_source: str) -> NormalizedSummary | None:
    """Read a stored summary document written by any summary model generation.

    Documents whose nationality data is a flat list of per-period counts come
    from the oldest model; they become total-only summaries.
    """
    if not isinstance(document, dict):
        return None

    source = str(_first(document, _SOURCE_KEYS) or "").strip() or fallback_source
    nationality = _first(document, _NATIONALITY_KEYS)
    if isinstance(nationality, list):
        raw_total = _first(document, _TOTAL_KEYS)
        total = parse_count(raw_total) if raw_total is not None else sum(parse_count(x) for x in nationality)
        return NormalizedSummary(source=source, total=total)

    return NormalizedSummary(
        source=source,
        total=parse_count(_first(document, _TOTAL_KEYS)),
        total_different_gender_pairing=parse_count(_first(document, _DIFFERENT_TOTAL_KEYS)),
        total_same_gender_pairing=parse_count(_first(document, _SAME_TOTAL_KEYS)),
        by_region=_coerce_regions(_first(document, _REGION_LIST_KEYS)),
        nationality_breakdown=_coerce_breakdown(nationality),
    )


def percent_change(current_total: int, previous_total: int | None) -> float:
    if not previous_total:
        return 0.0
    change = Decimal(current_total - previous_total) / Decimal(previous_total) * 100
    return float(change.quantize(_PERCENT_QUANT, rounding=ROUND_HALF_EVEN))


class SummaryView:
    """Chart-ready views over stored summaries supplied newest first."""

    def __init__(self, entries: Sequence[StoredSummary]):
        self._entries = tuple(entries)

    @property
    def latest(self) -> StoredSummary | None:
        return self._entries[0] if self._entries else None

    @property
    def previous(self) -> StoredSummary | None:
        return self._entries[1] if len(self._entries) > 1 else None

    def build_trend(self, n: int) -> list[TrendPointOut]:
        if n <= 0:
            return []
        return [TrendPointOut(timestamp=entry.created_at, total=entry.summary.total) for entry in self._entries[:n]]

    def build_snapshot(self) -> SnapshotOut:
        latest = self.latest
        if latest is None:
            return SnapshotOut()
        summary = latest.summary
        return SnapshotOut(
            created_at=latest.created_at,
            source=summary.source,
            by_region=list(summary.by_region),
            gender=GenderTotalsOut(
                same_gender=summary.total_same_gender_pairing,
                different_gender=summary.total_different_gender_pairing,
            ),
        )

    def build_nationality_snapshot(self) -> NationalitySnapshotOut:
        latest = self.latest
        if latest is None or not latest.summary.nationality_breakdown:
            return NationalitySnapshotOut()
        ordered = sorted(
            ((name, count) for name, count in latest.summary.nationality_breakdown.items() if count.total > 0),
            key=lambda item: item[1].total,
            reverse=True,
        )
        return NationalitySnapshotOut(
            nationality_data={name: count.total for name, count in ordered},
            nationality_breakdown=dict(ordered),
        )

    def percent_change(self) -> float:
        latest = self.latest
        previous = self.previous
        if latest is None or previous is None:
            return 0.0
        return percent_change(latest.summary.total, previous.summary.total)

    def build_chart_data(self, n: int | None = None) -> ChartDataOut:
        snapshot = self.build_snapshot()
        nationality = self.build_nationality_snapshot()
        return ChartDataOut(
            trend_data=self.build_trend(len(self._entries) if n is None else n),
            area_data=[AreaPointOut(name=item.region, value=item.total) for item in snapshot.by_region],
            gender_data=snapshot.gender,
            nationality_data=nationality.nationality_data,
            nationality_breakdown=nationality.nationality_breakdown,
        )

    def build_dashboard_stats(self, last_update: datetime | None = None) -> DashboardStatsOut:
        latest = self.latest
        return DashboardStatsOut(
            last_update=last_update if last_update is not None else (latest.created_at if latest else None),
            total_marriages=latest.summary.total if latest else 0,
            monthly_change=self.percent_change(),
        )


def stored_summaries_from_rows(rows: Iterable[Mapping[str, Any]]) -> list[StoredSummary]:
    """Build StoredSummary values from ``(id, source, summary, created_at)`` rows, skipping unreadable ones."""
    entries: list[StoredSummary] = []
    for row in rows:
        fallback_source = str(row.get("source") or f"summary-{row.get('id')}")
        summary = coerce_summary(row.get("summary"), fallback_source)
        if summary is None:
            logger.warning("stored_summary_skipped id=%s reason=not_an_object", row.get("id"))
            continue
        entries.append(StoredSummary(summary=summary, created_at=row["created_at"], summary_id=row.get("id")))
    return entries
