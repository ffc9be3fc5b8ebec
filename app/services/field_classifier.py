from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Literal, Mapping, NamedTuple

from app.services.country_resolver import CountryResolver

Pairing = Literal["same", "different"]

# A nationality field with no gender-pairing marker counts as a
# different-gender union.
UNMARKED_PAIRING_DEFAULT: Pairing = "different"

_NUMERIC_TEXT_RE = re.compile(r"^[+]?\d{1,3}(?:,\d{3})+$|^[+]?\d+$")
_INTEGRAL_FLOAT_TEXT_RE = re.compile(r"^[+]?\d+\.0*$")


@dataclass(frozen=True)
class FieldTaxonomy:
    """Marker vocabulary used to decode compound statistics field names.

    Markers are matched case-insensitively as substrings of the field name
    (or of the extracted country token, for ``subtotal_markers``).
    """

    separators: tuple[str, ...] = ("_", "/", "|")
    same_markers: tuple[str, ...] = ("same", "相同性別", "同性")
    different_markers: tuple[str, ...] = ("different", "opposite", "不同性別", "異性")
    nationality_markers: tuple[str, ...] = (
        "nationality",
        "foreign",
        "mainland",
        "國籍",
        "大陸地區",
        "港澳地區",
    )
    subtotal_markers: tuple[str, ...] = (
        "total",
        "subtotal",
        "registered",
        "總計",
        "合計",
        "小計",
        "登記",
    )
    region_keys: tuple[str, ...] = ("region", "區域別")
    overall_total_keys: tuple[str, ...] = ("total_all", "總計_總計")
    same_total_keys: tuple[str, ...] = ("same_total", "相同性別_總計")
    different_total_keys: tuple[str, ...] = ("different_total", "不同性別_總計")
    breakdown_keys: tuple[str, ...] = ("nationalityBreakdown", "nationality_breakdown")

    def split(self, field_name: str) -> list[str]:
        pattern = "|".join(re.escape(sep) for sep in self.separators)
        return [segment.strip() for segment in re.split(pattern, field_name) if segment.strip()]


DEFAULT_TAXONOMY = FieldTaxonomy()


class FieldClassification(NamedTuple):
    field_name: str
    country: str
    pairing: Pairing
    value: int


def _contains_any(text: str, markers: tuple[str, ...]) -> bool:
    lowered = text.lower()
    return any(marker.lower() in lowered for marker in markers)


def is_subtotal_token(*tokens: str, taxonomy: FieldTaxonomy = DEFAULT_TAXONOMY) -> bool:
    """True when any of ``tokens`` names a rollup row rather than a country."""
    return any(_contains_any(token, taxonomy.subtotal_markers) for token in tokens if token)


def parse_count(value: Any) -> int:
    """Coerce a raw statistics cell to a non-negative int; anything else is 0."""
    if isinstance(value, bool) or value is None:
        return 0
    if isinstance(value, int):
        return value if value > 0 else 0
    if isinstance(value, float):
        if value != value or not value.is_integer() or value <= 0:
            return 0
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if _NUMERIC_TEXT_RE.match(text):
            return int(text.replace(",", "").lstrip("+"))
        if _INTEGRAL_FLOAT_TEXT_RE.match(text):
            return int(text.lstrip("+").split(".", 1)[0])
    return 0


def classify_pairing(field_name: str, taxonomy: FieldTaxonomy = DEFAULT_TAXONOMY) -> Pairing:
    has_different = _contains_any(field_name, taxonomy.different_markers)
    if has_different:
        return "different"
    if _contains_any(field_name, taxonomy.same_markers):
        return "same"
    return UNMARKED_PAIRING_DEFAULT


def extract_country(
    segments: list[str],
    resolver: CountryResolver,
) -> tuple[str, str]:
    """Return ``(raw_token, canonical)`` for the nationality segment of a field."""
    if not segments:
        return "", ""
    last = segments[-1]
    match = resolver.try_resolve(last)
    if match.found:
        return last, match.canonical
    for segment in segments:
        match = resolver.try_resolve(segment)
        if match.found:
            return segment, match.canonical
    return last, last


def is_nationality_field(
    field_name: str,
    resolver: CountryResolver,
    taxonomy: FieldTaxonomy = DEFAULT_TAXONOMY,
    *,
    lenient: bool = False,
) -> bool:
    if _contains_any(field_name, taxonomy.nationality_markers):
        return True
    if not lenient:
        return False
    return any(resolver.try_resolve(segment).found for segment in taxonomy.split(field_name))


def classify_field(
    field_name: Any,
    value: Any,
    resolver: CountryResolver,
    taxonomy: FieldTaxonomy = DEFAULT_TAXONOMY,
    *,
    lenient: bool = False,
) -> FieldClassification | None:
    """Decode one compound field into a nationality count, or ``None`` to drop it."""
    if not isinstance(field_name, str) or not field_name.strip():
        return None
    if not is_nationality_field(field_name, resolver, taxonomy, lenient=lenient):
        return None

    raw_token, country = extract_country(taxonomy.split(field_name), resolver)
    if not country:
        return None
    if is_subtotal_token(raw_token, country, taxonomy=taxonomy):
        return None

    count = parse_count(value)
    if count == 0:
        return None
    return FieldClassification(
        field_name=field_name,
        country=country,
        pairing=classify_pairing(field_name, taxonomy),
        value=count,
    )


def record_carries_nationality_data(
    record: Mapping[str, Any],
    resolver: CountryResolver,
    taxonomy: FieldTaxonomy = DEFAULT_TAXONOMY,
) -> bool:
    return any(
        isinstance(name, str) and is_nationality_field(name, resolver, taxonomy, lenient=True)
        for name in record
    )
