from __future__ import annotations

import json
import logging
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping, NamedTuple

logger = logging.getLogger(__name__)

FALLBACK_COUNTRY_VARIANTS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Taiwan", ("Taiwan", "ROC", "TW", "臺灣", "台灣", "中華民國", "本國籍", "domestic")),
    ("Mainland China", ("Mainland China", "China", "PRC", "CN", "mainland", "中國", "大陸", "中國大陸", "大陸地區")),
    ("Hong Kong", ("Hong Kong", "HK", "香港", "港")),
    ("Macau", ("Macau", "Macao", "MO", "澳門", "澳")),
    ("Hong Kong & Macau", ("Hong Kong Macau", "Hong Kong & Macau", "港澳", "港澳地區")),
    ("Philippines", ("Philippines", "Philippine", "PH", "菲律賓")),
    ("Vietnam", ("Vietnam", "Viet Nam", "VN", "越南")),
    ("Myanmar", ("Myanmar", "Burma", "MM", "緬甸")),
    ("Thailand", ("Thailand", "TH", "泰國")),
    ("Indonesia", ("Indonesia", "ID", "印尼", "印度尼西亞")),
    ("Malaysia", ("Malaysia", "MY", "馬來西亞")),
    ("Singapore", ("Singapore", "SG", "新加坡")),
    ("Cambodia", ("Cambodia", "KH", "柬埔寨")),
    ("Laos", ("Laos", "Lao", "LA", "寮國")),
    ("Japan", ("Japan", "JP", "日本")),
    ("South Korea", ("South Korea", "Korea", "KR", "韓國", "南韓")),
    ("USA", ("USA", "US", "United States", "United States of America", "美國")),
    ("Canada", ("Canada", "CA", "加拿大")),
    ("UK", ("UK", "GB", "United Kingdom", "Great Britain", "英國")),
    ("Australia", ("Australia", "AU", "澳大利亞", "澳洲")),
    ("New Zealand", ("New Zealand", "NZ", "紐西蘭")),
    ("France", ("France", "FR", "法國")),
    ("Germany", ("Germany", "DE", "德國")),
    ("Eswatini", ("Eswatini", "Swaziland", "SZ", "史瓦帝尼")),
    ("South Africa", ("South Africa", "ZA", "南非")),
    ("Lesotho", ("Lesotho", "LS", "賴索托")),
    ("Mauritius", ("Mauritius", "MU", "模里西斯")),
)


class CountryMatch(NamedTuple):
    canonical: str
    found: bool


def normalize_country_token(raw: str | None) -> str:
    text = (raw or "").strip().lower()
    kept = "".join(ch for ch in text if ch.isalnum() or ch.isspace())
    return kept.strip()


def _register(table: dict[str, str], canonical: str, variants: Iterable[object]) -> None:
    for variant in variants:
        if not isinstance(variant, str):
            continue
        key = normalize_country_token(variant)
        if key and key not in table:
            table[key] = canonical


def load_mapping_file(path: str | Path) -> dict[str, str]:
    """Read a ``{"mappings": {canonical: [variants]}}`` document.

    Returns an empty table when the file is missing or malformed; callers
    fall back to the built-in variants in that case.
    """
    file_path = Path(path)
    if not file_path.is_file():
        logger.info("country_mapping_file_missing path=%s", file_path)
        return {}
    try:
        document = json.loads(file_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("country_mapping_file_unreadable path=%s error=%s", file_path, exc)
        return {}

    mappings = document.get("mappings") if isinstance(document, dict) else None
    if not isinstance(mappings, dict):
        logger.warning("country_mapping_file_malformed path=%s reason=missing_mappings_object", file_path)
        return {}

    table: dict[str, str] = {}
    for canonical, variants in mappings.items():
        name = str(canonical).strip()
        if not name or not isinstance(variants, list):
            continue
        _register(table, name, variants)
    return table


def build_fallback_table() -> dict[str, str]:
    table: dict[str, str] = {}
    for canonical, variants in FALLBACK_COUNTRY_VARIANTS:
        _register(table, canonical, variants)
    return table


class CountryResolver:
    """Maps free-text nationality tokens onto canonical country labels.

    The lookup table is built once at construction and never mutated, so a
    single instance can be shared across threads.
    """

    def __init__(self, mappings: Mapping[str, str]):
        self._table = MappingProxyType(dict(mappings))

    @classmethod
    def from_file(cls, path: str | Path | None = None) -> "CountryResolver":
        table = load_mapping_file(path) if path else {}
        if not table:
            if path is None:
                logger.info("country_mapping_file_not_configured using=fallback")
            table = build_fallback_table()
        return cls(table)

    @classmethod
    def with_fallback(cls) -> "CountryResolver":
        return cls(build_fallback_table())

    def __len__(self) -> int:
        return len(self._table)

    def try_resolve(self, raw: str | None) -> CountryMatch:
        key = normalize_country_token(raw)
        if not key:
            return CountryMatch("", False)
        canonical = self._table.get(key)
        if canonical is None:
            return CountryMatch("", False)
        return CountryMatch(canonical, True)

    def resolve(self, raw: str | None) -> str:
        match = self.try_resolve(raw)
        if match.found:
            return match.canonical
        if not normalize_country_token(raw):
            return raw or ""
        return raw.strip()


@lru_cache(maxsize=1)
def default_resolver() -> CountryResolver:
    """Process-wide resolver over the built-in table, built on first use."""
    return CountryResolver.with_fallback()
