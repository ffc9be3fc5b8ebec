from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Sequence, Union

from app.models.schemas import NationalityCount, NormalizedSummary, RegionStats
from app.services.country_resolver import CountryResolver, default_resolver
from app.services.errors import MalformedPayloadError
from app.services.field_classifier import (
    DEFAULT_TAXONOMY,
    FieldTaxonomy,
    classify_field,
    is_subtotal_token,
    parse_count,
    record_carries_nationality_data,
)

logger = logging.getLogger(__name__)

UNKNOWN_REGION = "unknown"
LEGACY_AREA_KEY = "area"
LEGACY_TOTAL_KEY = "total"


@dataclass(frozen=True)
class RichPayload:
    records: tuple[Mapping[str, Any], ...]


@dataclass(frozen=True)
class LegacyRow:
    area: str
    total: int


@dataclass(frozen=True)
class LegacyPayload:
    rows: tuple[LegacyRow, ...]


ParsedPayload = Union[RichPayload, LegacyPayload]


def _decode(raw: Any) -> Any:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise MalformedPayloadError(f"payload is not utf-8: {exc}") from exc
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except ValueError as exc:
            raise MalformedPayloadError(f"payload is not valid json: {exc}") from exc
    return raw


def _looks_like_rich_record(record: Mapping[str, Any], resolver: CountryResolver, taxonomy: FieldTaxonomy) -> bool:
    known_keys = (
        taxonomy.region_keys
        + taxonomy.overall_total_keys
        + taxonomy.same_total_keys
        + taxonomy.different_total_keys
        + taxonomy.breakdown_keys
    )
    if any(key in record for key in known_keys):
        return True
    return record_carries_nationality_data(record, resolver, taxonomy)


def _try_rich(document: Any, resolver: CountryResolver, taxonomy: FieldTaxonomy) -> RichPayload | None:
    if not isinstance(document, list):
        return None
    if not all(isinstance(item, dict) for item in document):
        return None
    if document and not any(_looks_like_rich_record(item, resolver, taxonomy) for item in document):
        return None
    return RichPayload(records=tuple(document))


def _try_legacy(document: Any) -> LegacyPayload | None:
    if not isinstance(document, list) or not document:
        return None
    rows: list[LegacyRow] = []
    for item in document:
        if not isinstance(item, dict) or LEGACY_AREA_KEY not in item or LEGACY_TOTAL_KEY not in item:
            return None
        area = item[LEGACY_AREA_KEY]
        if area is None or isinstance(area, (dict, list)):
            return None
        rows.append(LegacyRow(area=str(area).strip() or UNKNOWN_REGION, total=parse_count(item[LEGACY_TOTAL_KEY])))
    return LegacyPayload(rows=tuple(rows))


def parse_payload(
    raw: Any,
    *,
    resolver: CountryResolver | None = None,
    taxonomy: FieldTaxonomy = DEFAULT_TAXONOMY,
) -> ParsedPayload:
    """Resolve a raw payload to its shape once: rich region records first, legacy rollups second."""
    resolver = default_resolver() if resolver is None else resolver
    document = _decode(raw)

    rich = _try_rich(document, resolver, taxonomy)
    if rich is not None:
        return rich
    legacy = _try_legacy(document)
    if legacy is not None:
        return legacy
    raise MalformedPayloadError(f"unrecognized payload shape: {type(document).__name__}")


def _region_of(record: Mapping[str, Any], taxonomy: FieldTaxonomy) -> str:
    for key in taxonomy.region_keys:
        if key not in record:
            continue
        value = record[key]
        if value is None or isinstance(value, (dict, list)):
            continue
        text = str(value).strip()
        if text:
            return text
    return UNKNOWN_REGION


def _first_count(record: Mapping[str, Any], keys: tuple[str, ...]) -> int:
    for key in keys:
        if key in record:
            return parse_count(record[key])
    return 0


def latest_record_per_region(
    records: Sequence[Mapping[str, Any]],
    taxonomy: FieldTaxonomy = DEFAULT_TAXONOMY,
) -> dict[str, Mapping[str, Any]]:
    latest: dict[str, Mapping[str, Any]] = {}
    for record in records:
        latest[_region_of(record, taxonomy)] = record
    return latest


def _structured_breakdown(record: Mapping[str, Any], taxonomy: FieldTaxonomy) -> Mapping[str, Any] | None:
    for key in taxonomy.breakdown_keys:
        value = record.get(key)
        if isinstance(value, dict):
            return value
    return None


def _pick_count(counts: Mapping[str, Any], name: str) -> int:
    for key in (name, name.capitalize()):
        if key in counts:
            return parse_count(counts[key])
    return 0


class _NationalityAccumulator:
    def __init__(self) -> None:
        self._counts: dict[str, list[int]] = {}

    def add(self, country: str, same: int = 0, different: int = 0) -> None:
        if same == 0 and different == 0:
            return
        bucket = self._counts.setdefault(country, [0, 0])
        bucket[0] += same
        bucket[1] += different

    def add_structured(
        self,
        breakdown: Mapping[str, Any],
        resolver: CountryResolver,
        taxonomy: FieldTaxonomy,
    ) -> None:
        for name, counts in breakdown.items():
            if not isinstance(counts, dict):
                continue
            raw_name = str(name).strip()
            country = resolver.resolve(raw_name).strip()
            if not country or is_subtotal_token(raw_name, country, taxonomy=taxonomy):
                continue
            self.add(country, same=_pick_count(counts, "same"), different=_pick_count(counts, "different"))

    def add_fields(
        self,
        record: Mapping[str, Any],
        resolver: CountryResolver,
        taxonomy: FieldTaxonomy,
    ) -> None:
        for field_name, value in record.items():
            classified = classify_field(field_name, value, resolver, taxonomy)
            if classified is None:
                continue
            if classified.pairing == "same":
                self.add(classified.country, same=classified.value)
            else:
                self.add(classified.country, different=classified.value)

    def emit(self) -> dict[str, NationalityCount]:
        ordered = sorted(self._counts.items(), key=lambda item: item[1][0] + item[1][1], reverse=True)
        return {
            country: NationalityCount(same=same, different=different)
            for country, (same, different) in ordered
            if same or different
        }


def aggregate(
    records: Sequence[Mapping[str, Any]],
    source_id: str,
    *,
    resolver: CountryResolver | None = None,
    taxonomy: FieldTaxonomy = DEFAULT_TAXONOMY,
) -> NormalizedSummary:
    if not source_id or not source_id.strip():
        raise ValueError("source_id must be a non-empty string")
    resolver = default_resolver() if resolver is None else resolver

    regions: list[RegionStats] = []
    nationalities = _NationalityAccumulator()
    total = same_total = different_total = 0

    for region, record in latest_record_per_region(records, taxonomy).items():
        region_total = _first_count(record, taxonomy.overall_total_keys)
        region_same = _first_count(record, taxonomy.same_total_keys)
        region_different = _first_count(record, taxonomy.different_total_keys)
        regions.append(
            RegionStats(
                region=region,
                total=region_total,
                same_gender_pairing=region_same,
                different_gender_pairing=region_different,
            )
        )
        total += region_total
        same_total += region_same
        different_total += region_different

        breakdown = _structured_breakdown(record, taxonomy)
        if breakdown is not None:
            nationalities.add_structured(breakdown, resolver, taxonomy)
        else:
            nationalities.add_fields(record, resolver, taxonomy)
        logger.debug(
            "aggregate_region region=%s total=%s same=%s different=%s structured=%s",
            region,
            region_total,
            region_same,
            region_different,
            breakdown is not None,
        )

    regions.sort(key=lambda item: item.total, reverse=True)
    return NormalizedSummary(
        source=source_id,
        total=total,
        total_different_gender_pairing=different_total,
        total_same_gender_pairing=same_total,
        by_region=tuple(regions),
        nationality_breakdown=nationalities.emit(),
    )


def summarize_legacy(payload: LegacyPayload, source_id: str) -> NormalizedSummary:
    if not source_id or not source_id.strip():
        raise ValueError("source_id must be a non-empty string")
    latest: dict[str, int] = {}
    for row in payload.rows:
        latest[row.area] = row.total
    regions = sorted(
        (RegionStats(region=area, total=value) for area, value in latest.items()),
        key=lambda item: item.total,
        reverse=True,
    )
    return NormalizedSummary(source=source_id, total=sum(latest.values()), by_region=tuple(regions))


def summarize_payload(
    raw: Any,
    source_id: str,
    *,
    resolver: CountryResolver | None = None,
    taxonomy: FieldTaxonomy = DEFAULT_TAXONOMY,
) -> NormalizedSummary:
    resolver = default_resolver() if resolver is None else resolver
    parsed = parse_payload(raw, resolver=resolver, taxonomy=taxonomy)
    if isinstance(parsed, LegacyPayload):
        logger.info("summarize_payload shape=legacy source=%s rows=%s", source_id, len(parsed.rows))
        return summarize_legacy(parsed, source_id)
    logger.info("summarize_payload shape=rich source=%s records=%s", source_id, len(parsed.records))
    return aggregate(parsed.records, source_id, resolver=resolver, taxonomy=taxonomy)
