from datetime import datetime
from types import MappingProxyType
from typing import Mapping

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FrozenCamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class RegionStats(FrozenCamelModel):
    region: str
    total: int = Field(default=0, ge=0)
    same_gender_pairing: int = Field(default=0, ge=0)
    different_gender_pairing: int = Field(default=0, ge=0)


class NationalityCount(FrozenCamelModel):
    same: int = Field(default=0, ge=0)
    different: int = Field(default=0, ge=0)

    @property
    def total(self) -> int:
        return self.same + self.different


class NormalizedSummary(FrozenCamelModel):
    """One immutable aggregated snapshot, produced once per ingestion.

    ``nationality_breakdown`` is exposed as a read-only mapping.
    """

    source: str = Field(min_length=1)
    total: int = Field(default=0, ge=0)
    total_different_gender_pairing: int = Field(default=0, ge=0)
    total_same_gender_pairing: int = Field(default=0, ge=0)
    by_region: tuple[RegionStats, ...] = ()
    nationality_breakdown: Mapping[str, NationalityCount] = Field(default_factory=dict, validate_default=True)

    @field_validator("nationality_breakdown", mode="after")
    @classmethod
    def _freeze_breakdown(cls, value: Mapping[str, NationalityCount]) -> Mapping[str, NationalityCount]:
        return MappingProxyType(dict(value))

    @field_serializer("nationality_breakdown")
    def _serialize_breakdown(self, value: Mapping[str, NationalityCount]) -> dict[str, NationalityCount]:
        return dict(value)

    def to_document(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class StoredSummary(FrozenCamelModel):
    summary: NormalizedSummary
    created_at: datetime
    summary_id: int | None = None


class TrendPointOut(CamelModel):
    timestamp: datetime
    total: int


class AreaPointOut(CamelModel):
    name: str
    value: int


class GenderTotalsOut(CamelModel):
    same_gender: int = 0
    different_gender: int = 0


class SnapshotOut(CamelModel):
    created_at: datetime | None = None
    source: str | None = None
    by_region: list[RegionStats] = Field(default_factory=list)
    gender: GenderTotalsOut = Field(default_factory=GenderTotalsOut)


class NationalitySnapshotOut(CamelModel):
    nationality_data: dict[str, int] = Field(default_factory=dict)
    nationality_breakdown: dict[str, NationalityCount] = Field(default_factory=dict)


class ChartDataOut(CamelModel):
    trend_data: list[TrendPointOut] = Field(default_factory=list)
    area_data: list[AreaPointOut] = Field(default_factory=list)
    gender_data: GenderTotalsOut = Field(default_factory=GenderTotalsOut)
    nationality_data: dict[str, int] = Field(default_factory=dict)
    nationality_breakdown: dict[str, NationalityCount] = Field(default_factory=dict)


class DashboardStatsOut(CamelModel):
    last_update: datetime | None = None
    total_marriages: int = 0
    monthly_change: float = 0.0


class EntryOut(CamelModel):
    id: int
    source: str
    timestamp: datetime | None = None


class EntryDetailOut(EntryOut):
    file_name: str
    summary: str


class IngestJobOut(CamelModel):
    raw_payload_id: int
    summary_id: int
    source: str
    total: int
    region_count: int
    nationality_count: int
    created_at: datetime
