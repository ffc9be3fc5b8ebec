import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Any
from urllib.parse import urlparse

from app.models.schemas import NormalizedSummary
from app.services.aggregator import summarize_payload
from app.services.country_resolver import CountryResolver

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    raw_payload_id: int
    summary_id: int
    summary: NormalizedSummary
    created_at: datetime


def derive_source_id(source_url: str) -> str:
    text = (source_url or "").strip()
    name = PurePosixPath(urlparse(text).path).name
    return name or text or "unknown-source"


def _raw_text(raw: Any) -> str:
    if isinstance(raw, (bytes, bytearray)):
        return raw.decode("utf-8-sig")
    if isinstance(raw, str):
        return raw
    return json.dumps(raw, ensure_ascii=False)


def ingest_payload(
    raw: Any,
    source_url: str,
    repo,
    *,
    resolver: CountryResolver,
    source_id: str | None = None,
    retrieved_at: datetime | None = None,
) -> IngestResult:
    """Summarize one raw payload and store it with its summary in a single commit.

    Raises MalformedPayloadError before anything is written when the payload
    has no recognizable shape.
    """
    created_at = retrieved_at or datetime.now(timezone.utc)
    summary = summarize_payload(raw, source_id or derive_source_id(source_url), resolver=resolver)

    try:
        raw_payload_id = repo.insert_raw_payload(source_url, _raw_text(raw), created_at)
        summary_id = repo.append_summary(summary, raw_payload_id, created_at)
        repo.commit()
    except Exception:
        rollback = getattr(repo, "rollback", None)
        if callable(rollback):
            rollback()
        raise

    logger.info(
        "ingest_payload_stored source=%s raw_payload_id=%s summary_id=%s total=%s regions=%s nationalities=%s",
        summary.source,
        raw_payload_id,
        summary_id,
        summary.total,
        len(summary.by_region),
        len(summary.nationality_breakdown),
    )
    return IngestResult(
        raw_payload_id=raw_payload_id,
        summary_id=summary_id,
        summary=summary,
        created_at=created_at,
    )
